"""
Container runtime adapter.

Compose projects are driven through the docker compose CLI (v2 plugin or
the v1 standalone binary); container state, logs, networks and the proxy
container are handled with the docker SDK.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import Slot

logger = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
APP_LABEL = "bgd.app"
SLOT_LABEL = "bgd.slot"
VERSION_LABEL = "bgd.version"

# Services that belong to the proxy tier and never count toward slot health
PROXY_SERVICES = frozenset({"nginx", "proxy"})

_compose_command: Optional[List[str]] = None


def reset_compose_command_cache() -> None:
    """Forget the detected compose command."""
    global _compose_command
    _compose_command = None


def get_compose_command() -> List[str]:
    """
    Detect the compose command, preferring the v2 plugin.

    Returns:
        ["docker", "compose"] or ["docker-compose"]

    Raises:
        BGDError: docker_error if neither is installed
    """
    global _compose_command

    if _compose_command is not None:
        return _compose_command

    v2_error: Optional[str] = None
    try:
        result = subprocess.run(["docker", "compose", "version"], capture_output=True, timeout=5)
        if result.returncode == 0:
            _compose_command = ["docker", "compose"]
            logger.debug("Using Docker Compose v2 (docker compose)")
            return _compose_command
        v2_error = f"exit code {result.returncode}"
    except subprocess.TimeoutExpired:
        v2_error = "timed out after 5 seconds"
    except FileNotFoundError:
        v2_error = "docker binary not found in PATH"

    if shutil.which("docker-compose"):
        _compose_command = ["docker-compose"]
        logger.debug("Using Docker Compose v1 (docker-compose)")
        return _compose_command

    raise BGDError(
        ErrorCode.DOCKER_ERROR,
        f"Docker Compose is not available (docker compose: {v2_error}; docker-compose: not found)",
        suggestion=(
            "Install the compose plugin (apt install docker-compose-plugin) or the "
            "standalone docker-compose binary, then check: docker compose version"
        ),
    )


def project_name(app_name: str, slot: Slot) -> str:
    """Compose project name of a slot."""
    return f"{app_name}-{slot.value}"


@dataclass
class ContainerInfo:
    """Snapshot of one container."""

    name: str
    service: str
    state: str
    health: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"


class DockerRuntime:
    """Runs compose projects and inspects containers for blue/green slots."""

    def __init__(self, client: Optional[Any] = None, workdir: Optional[Path] = None):
        """
        Initialize runtime adapter.

        Args:
            client: Docker SDK client; created from the environment on first use
            workdir: Directory compose commands run in
        """
        self._client = client
        self.workdir = workdir

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise BGDError(ErrorCode.DOCKER_ERROR, f"Cannot connect to Docker: {e}")
        return self._client

    # Compose operations

    def _compose(
        self,
        app_name: str,
        slot: Slot,
        compose_files: Sequence[Path],
        args: Sequence[str],
        env_file: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd = get_compose_command() + ["-p", project_name(app_name, slot)]
        if env_file is not None:
            cmd += ["--env-file", str(env_file)]
        for compose_file in compose_files:
            cmd += ["-f", str(compose_file)]
        cmd += list(args)

        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(self.workdir) if self.workdir else None,
            )
        except FileNotFoundError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Compose binary not found: {e}")

    def compose_up(
        self,
        app_name: str,
        slot: Slot,
        compose_files: Sequence[Path],
        env_file: Path,
        timeout: float = 300,
    ) -> None:
        """
        Start a slot's services in the background.

        Raises:
            BGDError: environment_start_failed if compose fails or times out
        """
        for compose_file in compose_files:
            if not Path(compose_file).exists():
                raise BGDError(ErrorCode.FILE_NOT_FOUND, f"Compose file not found: {compose_file}")

        try:
            result = self._compose(
                app_name, slot, compose_files, ["up", "-d"], env_file=env_file, timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise BGDError(
                ErrorCode.ENVIRONMENT_START_FAILED,
                f"Starting {slot.value} slot timed out after {timeout}s",
            )
        if result.returncode != 0:
            raise BGDError(
                ErrorCode.ENVIRONMENT_START_FAILED,
                f"Failed to start {slot.value} slot: {result.stderr.strip()}",
                details={"stdout": result.stdout[-2000:], "stderr": result.stderr[-2000:]},
            )
        logger.info(f"Started {project_name(app_name, slot)}")

    def compose_down(
        self,
        app_name: str,
        slot: Slot,
        compose_files: Sequence[Path] = (),
        env_file: Optional[Path] = None,
        remove_volumes: bool = False,
    ) -> None:
        """
        Stop and remove a slot's containers.

        Raises:
            BGDError: docker_error if compose fails
        """
        files = [f for f in compose_files if Path(f).exists()]
        if env_file is not None and not env_file.exists():
            env_file = None
        args = ["down", "--remove-orphans"]
        if remove_volumes:
            args.append("--volumes")
        result = self._compose(app_name, slot, files, args, env_file=env_file, timeout=120)
        if result.returncode != 0:
            raise BGDError(
                ErrorCode.DOCKER_ERROR,
                f"Failed to stop {slot.value} slot: {result.stderr.strip()}",
            )
        logger.info(f"Stopped {project_name(app_name, slot)}")

    def compose_exec(
        self,
        app_name: str,
        slot: Slot,
        compose_files: Sequence[Path],
        env_file: Path,
        service: str,
        command: str,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a shell command inside a slot service.

        Raises:
            subprocess.TimeoutExpired: If the command outlives the timeout
        """
        return self._compose(
            app_name,
            slot,
            compose_files,
            ["exec", "-T", service, "sh", "-c", command],
            env_file=env_file,
            timeout=timeout,
        )

    # Container inspection

    def slot_containers(self, app_name: str, slot: Slot) -> List[ContainerInfo]:
        """All containers of a slot, running or not."""
        try:
            containers = self.client.containers.list(
                all=True, filters={"label": f"{PROJECT_LABEL}={project_name(app_name, slot)}"}
            )
        except DockerException as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Failed to list containers: {e}")

        infos = []
        for container in containers:
            labels = container.labels or {}
            state = container.attrs.get("State", {})
            health = (state.get("Health") or {}).get("Status")
            infos.append(
                ContainerInfo(
                    name=container.name,
                    service=labels.get(SERVICE_LABEL, container.name),
                    state=container.status,
                    health=health,
                    labels=labels,
                )
            )
        return infos

    def is_slot_running(self, app_name: str, slot: Slot) -> bool:
        return any(c.running for c in self.slot_containers(app_name, slot))

    def slot_version(self, app_name: str, slot: Slot) -> Optional[str]:
        for info in self.slot_containers(app_name, slot):
            if VERSION_LABEL in info.labels:
                return info.labels[VERSION_LABEL]
        return None

    def container_logs(self, app_name: str, slot: Slot, tail: int = 100) -> str:
        """Trailing log lines of every container in a slot."""
        chunks = []
        for info in self.slot_containers(app_name, slot):
            try:
                container = self.client.containers.get(info.name)
                output = container.logs(tail=tail, timestamps=True)
            except (NotFound, APIError) as e:
                logger.debug(f"Could not read logs of {info.name}: {e}")
                continue
            text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
            chunks.append(f"==> {info.name} <==\n{text.rstrip()}")
        return "\n".join(chunks)

    def remove_container(self, name: str) -> bool:
        """Force-remove a container. Already absent counts as success."""
        try:
            self.client.containers.get(name).remove(force=True)
            logger.info(f"Removed container {name}")
        except NotFound:
            logger.debug(f"Container {name} already removed")
        except APIError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Failed to remove {name}: {e}")
        return True

    # Networks and pruning

    def ensure_network(self, name: str, app_name: str) -> None:
        """Create a bridge network. An existing network counts as success."""
        try:
            if self.client.networks.list(names=[name]):
                logger.debug(f"Network {name} already exists")
                return
            self.client.networks.create(name, driver="bridge", labels={APP_LABEL: app_name})
            logger.info(f"Created network {name}")
        except APIError as e:
            if "already exists" in str(e):
                logger.debug(f"Network {name} already exists")
                return
            raise BGDError(ErrorCode.NETWORK_ERROR, f"Failed to create network {name}: {e}")

    def prune(self, app_name: str, image_age_hours: int = 24) -> Dict[str, Any]:
        """
        Remove dangling images older than image_age_hours plus unused
        volumes and networks labelled for the application.
        """
        summary: Dict[str, Any] = {}
        try:
            images = self.client.images.prune(
                filters={"dangling": True, "until": f"{image_age_hours}h"}
            )
            summary["images"] = len(images.get("ImagesDeleted") or [])
            volumes = self.client.volumes.prune(filters={"label": f"{APP_LABEL}={app_name}"})
            summary["volumes"] = len(volumes.get("VolumesDeleted") or [])
            networks = self.client.networks.prune(filters={"label": f"{APP_LABEL}={app_name}"})
            summary["networks"] = len(networks.get("NetworksDeleted") or [])
        except APIError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Prune failed: {e}")
        logger.info(f"Pruned resources for {app_name}: {summary}")
        return summary

    # Proxy container

    def proxy_state(self, name: str) -> Optional[str]:
        """Status of the proxy container, or None if it does not exist."""
        try:
            return self.client.containers.get(name).status
        except NotFound:
            return None
        except APIError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Failed to inspect {name}: {e}")

    def start_proxy(
        self,
        name: str,
        image: str,
        config_dir: Path,
        config_file: str,
        app_name: str,
        extra_mounts: Sequence[str] = (),
    ) -> None:
        """
        Run the proxy container with host networking.

        The whole config directory is mounted so atomic renames of the
        config file stay visible inside the container.
        """
        volumes = {str(config_dir): {"bind": "/etc/bgd", "mode": "ro"}}
        for mount in extra_mounts:
            volumes[mount] = {"bind": mount, "mode": "ro"}

        existing = self.proxy_state(name)
        try:
            if existing is not None:
                container = self.client.containers.get(name)
                if existing != "running":
                    container.start()
                    logger.info(f"Started existing proxy container {name}")
                return
            self.client.containers.run(
                image,
                command=["nginx", "-c", f"/etc/bgd/{config_file}", "-g", "daemon off;"],
                name=name,
                detach=True,
                network_mode="host",
                volumes=volumes,
                labels={APP_LABEL: app_name},
                restart_policy={"Name": "unless-stopped"},
            )
            logger.info(f"Started proxy container {name}")
        except APIError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Failed to start proxy {name}: {e}")

    def proxy_exec(self, name: str, command: List[str]) -> Tuple[int, str]:
        """Run a command in the proxy container; returns (exit code, output)."""
        try:
            result = self.client.containers.get(name).exec_run(command)
        except NotFound:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Proxy container {name} not found")
        except APIError as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Exec in {name} failed: {e}")
        output = result.output
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return result.exit_code, output or ""

    def restart_container(self, name: str) -> None:
        try:
            self.client.containers.get(name).restart(timeout=10)
        except (NotFound, APIError) as e:
            raise BGDError(ErrorCode.DOCKER_ERROR, f"Failed to restart {name}: {e}")
