"""SSH access to freshly launched fleet hosts and the EC2 key pair behind it."""

import hashlib
import logging
import time
from pathlib import Path

import boto3
import paramiko
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from gsfleet.config import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

DEFAULT_KEY_DIR = DEFAULT_STATE_DIR / "keys"
KEY_NAME = "gsfleet-key"
HOST_USER = "ec2-user"


class RemoteShell:
    """Runs commands on one host over an established paramiko connection."""

    def __init__(self, client: paramiko.SSHClient, host: str):
        self._client = client
        self.host = host

    def run(self, command: str) -> tuple[int, str]:
        """Run ``command``; returns the exit code and stdout followed by stderr."""
        logger.debug("%s$ %s", self.host, command)
        _, stdout, stderr = self._client.exec_command(command)
        output = stdout.read().decode() + stderr.read().decode()
        exit_code = stdout.channel.recv_exit_status()
        logger.debug("exit=%d %s", exit_code, output.strip())
        return exit_code, output

    def close(self) -> None:
        self._client.close()


def open_shell(host: str, key_path: Path, attempts: int = 12, delay: float = 10) -> RemoteShell:
    """Connect to a booting host, retrying while its sshd comes up."""
    for attempt in range(1, attempts + 1):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host, username=HOST_USER, key_filename=str(key_path),
                timeout=10, banner_timeout=30,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            if attempt == attempts:
                raise
            logger.debug("SSH attempt %d/%d to %s failed: %s", attempt, attempts, host, e)
            time.sleep(delay)
            continue
        logger.debug("SSH connected to %s", host)
        return RemoteShell(client, host)
    raise ValueError("attempts must be at least 1")


def aws_fingerprint(key: paramiko.RSAKey) -> str:
    """MD5 of the DER public key, which is what EC2 reports for imported key pairs."""
    der = key.key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    digest = hashlib.md5(der).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def _load_or_create_key(key_path: Path) -> paramiko.RSAKey:
    if key_path.exists():
        return paramiko.RSAKey.from_private_key_file(str(key_path))
    logger.info("Generating SSH key %s", key_path)
    key = paramiko.RSAKey.generate(4096)
    key.write_private_key_file(str(key_path))
    key_path.chmod(0o600)
    return key


def ensure_key_pair(region: str, key_dir: Path = DEFAULT_KEY_DIR) -> Path:
    """Make sure the region's EC2 key pair matches the local private key; returns the key path."""
    key_dir.mkdir(parents=True, exist_ok=True)
    key_path = key_dir / f"{KEY_NAME}.pem"
    key = _load_or_create_key(key_path)

    ec2 = boto3.client("ec2", region_name=region)
    try:
        remote = ec2.describe_key_pairs(KeyNames=[KEY_NAME])["KeyPairs"][0]["KeyFingerprint"]
    except ClientError as e:
        if e.response["Error"]["Code"] != "InvalidKeyPair.NotFound":
            raise
        remote = None

    if remote == aws_fingerprint(key):
        return key_path
    if remote is not None:
        logger.info("EC2 key pair %s in %s does not match the local key, re-importing", KEY_NAME, region)
        ec2.delete_key_pair(KeyName=KEY_NAME)
    ec2.import_key_pair(KeyName=KEY_NAME, PublicKeyMaterial=f"{key.get_name()} {key.get_base64()}".encode())
    logger.info("Imported EC2 key pair %s into %s", KEY_NAME, region)
    return key_path
