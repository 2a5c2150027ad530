"""Docker CLI wrappers for coding agent containers."""

import json
import logging
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class DockerError(Exception):
    """Raised when a docker command fails."""


@dataclass
class ContainerInfo:
    id: str
    name: str
    state: str
    status: str = ""

    @property
    def running(self) -> bool:
        return self.state == "running"


def run_docker(args: list[str], timeout: float | None = 120) -> str:
    """Run a docker command and return stdout. Raises DockerError on failure."""
    cmd = ["docker"] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise DockerError(f"docker {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise DockerError(f"docker {' '.join(args)} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise DockerError("docker executable not found") from e


def _parse_ps_line(line: str) -> ContainerInfo:
    data = json.loads(line)
    return ContainerInfo(
        id=data.get("ID", ""),
        name=data.get("Names", "").split(",")[0].lstrip("/"),
        state=data.get("State", "").lower(),
        status=data.get("Status", ""),
    )


class DockerRuntime:
    """Container runtime backed by the local docker CLI.

    Containers are named after their coding agent, so the agent name is the
    join key between persisted rows and live containers.
    """

    def __init__(
        self,
        image: str,
        network: str | None = None,
        name_prefix: str = "hra_",
        agent_port: int = 4096,
    ):
        self.image = image
        self.network = network
        self.name_prefix = name_prefix
        self.agent_port = agent_port

    @classmethod
    def from_config(cls, config) -> "DockerRuntime":
        return cls(
            image=config.docker_image,
            network=config.docker_network,
            name_prefix=config.ca_name_prefix,
            agent_port=config.agent_port,
        )

    def list_containers(self) -> list[ContainerInfo]:
        """All containers (running or not) carrying the agent name prefix."""
        output = run_docker(
            ["ps", "-a", "--filter", f"name={self.name_prefix}", "--format", "{{json .}}"]
        )
        containers = [_parse_ps_line(line) for line in output.splitlines() if line.strip()]
        return [c for c in containers if c.name.startswith(self.name_prefix)]

    def create_container(self, name: str, source_ref: str | None = None) -> str:
        """Start a detached agent container and return its id."""
        args = ["run", "-d", "--name", name, "--label", "hr-agent=1"]
        if self.network:
            args += ["--network", self.network]
        args += ["-e", f"AGENT_PORT={self.agent_port}"]
        if source_ref:
            args += ["-e", f"SOURCE_REF={source_ref}"]
        args.append(self.image)
        container_id = run_docker(args, timeout=300)
        logger.info("Created container %s (%s)", name, container_id[:12])
        return container_id

    def inspect_container(self, name_or_id: str) -> ContainerInfo | None:
        try:
            output = run_docker(["inspect", "--type", "container", name_or_id])
        except DockerError:
            return None
        data = json.loads(output)
        if not data:
            return None
        info = data[0]
        return ContainerInfo(
            id=info.get("Id", ""),
            name=info.get("Name", "").lstrip("/"),
            state=info.get("State", {}).get("Status", "").lower(),
            status=info.get("State", {}).get("Status", ""),
        )

    def start_container(self, name_or_id: str) -> None:
        run_docker(["start", name_or_id])

    def stop_container(self, name_or_id: str) -> None:
        run_docker(["stop", name_or_id])

    def delete_container(self, name_or_id: str) -> None:
        """Force-remove a container and its anonymous volumes."""
        try:
            run_docker(["rm", "-f", "-v", name_or_id])
        except DockerError as e:
            if "No such container" in str(e):
                logger.info("Container %s already gone", name_or_id)
                return
            raise
