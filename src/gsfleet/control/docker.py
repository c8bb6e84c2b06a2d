import shlex
import time

from gsfleet.control.ssh import RemoteShell
from gsfleet.games.registry import GamePort

DOCKER = "sudo docker"


class RemoteDocker:
    """Runs game containers on a fleet host over SSH."""

    def __init__(self, ssh: RemoteShell):
        self.ssh = ssh

    def wait_for_docker(self, retries: int = 30, delay: int = 5) -> None:
        for attempt in range(retries):
            exit_code, _ = self.ssh.run(f"{DOCKER} info > /dev/null 2>&1")
            if exit_code == 0:
                return
            if attempt == retries - 1:
                raise RuntimeError("Docker did not become available")
            time.sleep(delay)

    def pull(self, image: str) -> None:
        exit_code, output = self.ssh.run(f"{DOCKER} pull {shlex.quote(image)}")
        if exit_code != 0:
            raise RuntimeError(f"Failed to pull image {image}: {output}")

    def run(
        self, container_name: str, image: str, ports: list[GamePort],
        env: dict[str, str], command: list[str] | None = None,
    ) -> None:
        parts = [f"--name {shlex.quote(container_name)}", "--restart unless-stopped"]
        published = set()
        for port in ports:
            if port.docker_publish() not in published:
                published.add(port.docker_publish())
                parts.append(f"-p {port.docker_publish()}")
        for key, value in env.items():
            parts.append(f"-e {shlex.quote(f'{key}={value}')}")
        parts.append(shlex.quote(image))
        parts.extend(shlex.quote(arg) for arg in command or [])

        exit_code, output = self.ssh.run(f"{DOCKER} run -d {' '.join(parts)}")
        if exit_code != 0:
            raise RuntimeError(f"Failed to start container: {output}")
