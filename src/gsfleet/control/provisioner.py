import logging
import secrets
from pathlib import Path

from botocore.exceptions import ClientError

from gsfleet.aws.ec2 import (
    find_fleet_instances,
    get_default_vpc_and_subnet,
    get_instance_public_ip,
    get_latest_al2023_ami,
    launch_instance,
    terminate_instance,
    wait_for_instance_running,
)
from gsfleet.aws.security_groups import get_or_create_security_group
from gsfleet.control.docker import RemoteDocker
from gsfleet.control.interfaces import DeployedServer
from gsfleet.control.ssh import DEFAULT_KEY_DIR, KEY_NAME, ensure_key_pair, open_shell
from gsfleet.errors import InsufficientCapacityError, UserError
from gsfleet.games.registry import VariantDefinition, get_variant

logger = logging.getLogger(__name__)


def _is_client_error(exc: ClientError, code: str) -> bool:
    return exc.response["Error"]["Code"] == code


def build_environment(
    instance_id: str, variant: VariantDefinition, owner_identity: str,
    rcon_password: str, server_password: str, tv_password: str,
    overrides: dict[str, str] | None = None,
) -> dict[str, str]:
    """Container environment for a game server. Guild overrides win over everything else."""
    env = {
        "SERVER_HOSTNAME": f"#{instance_id[:8]} {variant.display_name}",
        "SERVER_PASSWORD": server_password,
        "RCON_PASSWORD": rcon_password,
        "STV_NAME": f"{variant.display_name} TV",
        "STV_PASSWORD": tv_password,
        "ADMIN_LIST": owner_identity,
    }
    env.update(variant.environment)
    if overrides:
        env.update(overrides)
    return env


class Ec2Provisioner:
    """Runs each game server as a Docker container on its own EC2 instance."""

    def __init__(self, key_dir: Path = DEFAULT_KEY_DIR, ssh_cidr: str = "0.0.0.0/0", on_status=None):
        self.key_dir = key_dir
        self.ssh_cidr = ssh_cidr
        self.on_status = on_status

    def _notify(self, message: str) -> None:
        logger.debug(message)
        if self.on_status:
            self.on_status(message)

    def deploy(
        self, *, instance_id: str, region: str, variant: str, owner_id: str,
        owner_identity: str, overrides: dict[str, str] | None = None,
    ) -> DeployedServer:
        definition = get_variant(variant)
        if definition is None:
            raise UserError(f"Unknown variant: {variant}")

        rcon_password = secrets.token_urlsafe(16)
        server_password = secrets.token_urlsafe(8)
        tv_password = secrets.token_urlsafe(8)
        env = build_environment(
            instance_id, definition, owner_identity,
            rcon_password, server_password, tv_password, overrides,
        )

        self._notify("Finding default VPC")
        vpc_id, subnet_id = get_default_vpc_and_subnet(region)
        self._notify("Ensuring SSH key pair")
        key_path = ensure_key_pair(region, self.key_dir)
        self._notify("Getting AMI")
        ami_id = get_latest_al2023_ami(region)
        self._notify("Creating security group")
        sg_id = get_or_create_security_group(
            region=region, variant=definition.name, ports=definition.ports,
            ssh_cidr=self.ssh_cidr, vpc_id=vpc_id,
        )

        self._notify("Launching instance")
        try:
            ec2_instance_id = launch_instance(
                region=region, ami_id=ami_id, instance_type=definition.default_instance_type,
                key_name=KEY_NAME, security_group_id=sg_id, subnet_id=subnet_id,
                instance_id=instance_id, owner_id=owner_id, variant=definition.name,
                disk_gb=definition.disk_gb,
            )
        except ClientError as e:
            if _is_client_error(e, "InsufficientInstanceCapacity"):
                raise InsufficientCapacityError(
                    f"AWS does not have enough {definition.default_instance_type} capacity in {region} "
                    "right now. Please try again in a few minutes or pick another region.",
                    region=region, instance_type=definition.default_instance_type,
                ) from e
            raise

        # Everything after this point must clean up the instance on failure
        ssh = None
        try:
            self._notify("Waiting for instance to start")
            wait_for_instance_running(region, ec2_instance_id)
            public_ip = get_instance_public_ip(region, ec2_instance_id)
            if not public_ip:
                raise RuntimeError(f"Instance {ec2_instance_id} has no public IP")

            self._notify("Connecting via SSH")
            ssh = open_shell(public_ip, key_path)
            docker = RemoteDocker(ssh)
            self._notify("Waiting for Docker")
            docker.wait_for_docker()
            self._notify(f"Pulling image {definition.image}")
            docker.pull(definition.image)
            self._notify("Starting game server")
            docker.run(
                container_name=f"gsfleet-{instance_id}",
                image=definition.image,
                ports=definition.ports,
                env=env,
                command=[
                    "-enablefakeip",
                    "+maxplayers", str(definition.max_players),
                    "+map", definition.default_map,
                ],
            )
        except Exception:
            logger.exception("Deploy of %s failed, terminating EC2 instance %s", instance_id, ec2_instance_id)
            try:
                terminate_instance(region, ec2_instance_id)
            except Exception as cleanup_error:
                logger.error("Could not terminate EC2 instance %s: %s", ec2_instance_id, cleanup_error)
            raise
        finally:
            if ssh:
                ssh.close()

        logger.info("Deployed %s on %s (%s)", instance_id, ec2_instance_id, public_ip)
        return DeployedServer(
            instance_id=instance_id,
            region=region,
            variant=definition.name,
            host=public_ip,
            port=definition.game_port,
            tv_host=public_ip if definition.tv_port else "",
            tv_port=definition.tv_port,
            rcon_password=rcon_password,
            server_password=server_password,
            extra={"ec2_instance_id": ec2_instance_id, "tv_password": tv_password},
        )

    def destroy(self, *, instance_id: str, region: str) -> None:
        """Terminate every EC2 instance tagged with ``instance_id``. Nothing found is a no-op."""
        instances = find_fleet_instances(region, instance_id)
        if not instances:
            logger.info("No EC2 instance found for %s in %s", instance_id, region)
            return
        for instance in instances:
            try:
                terminate_instance(region, instance["ec2_instance_id"])
            except ClientError as e:
                if not _is_client_error(e, "InvalidInstanceID.NotFound"):
                    raise
            logger.info("Terminated EC2 instance %s for %s", instance["ec2_instance_id"], instance_id)
