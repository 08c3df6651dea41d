"""
Per-application wiring of the orchestration components.

One DeploymentContext is built per CLI invocation and shared by the
controller, the cutover/rollback coordinator and cleanup.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from bgd_manager.compose_generator import (
    ComposeGenerator,
    env_file_path,
    override_file_path,
)
from bgd_manager.config import BGDConfig
from bgd_manager.deployment.state import DeploymentState
from bgd_manager.docker_runtime import DockerRuntime
from bgd_manager.environment_registry import EnvironmentRegistry
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.health_checker import HealthChecker
from bgd_manager.models import HealthResult, RoutingSpec, Slot, SlotHealthReport
from bgd_manager.nginx_manager import NginxManager
from bgd_manager.plugins import PluginRegistry
from bgd_manager.port_manager import PortManager

logger = logging.getLogger(__name__)


@dataclass
class DeploymentContext:
    """Everything an operation on one application needs."""

    app_name: str
    config: BGDConfig
    app_dir: Path
    plugins: PluginRegistry
    runtime: DockerRuntime
    nginx: NginxManager
    health: HealthChecker
    registry: EnvironmentRegistry
    state: DeploymentState
    compose: ComposeGenerator
    ports: PortManager
    sleep: Callable[[float], None] = field(default=time.sleep)

    @classmethod
    def create(
        cls,
        app_name: str,
        config: BGDConfig,
        plugins: PluginRegistry,
        runtime: Optional[DockerRuntime] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "DeploymentContext":
        app_dir = config.manager.app_dir(app_name)
        runtime = runtime or DockerRuntime(workdir=app_dir)
        nginx = NginxManager(
            app_name=app_name,
            config_dir=app_dir / "proxy",
            container_name=config.nginx.proxy_container(app_name),
            runtime=runtime,
            upstream_host=config.nginx.upstream_host,
            image=config.nginx.image,
            settle_seconds=config.nginx.reload_settle_seconds,
            sleep=sleep,
        )
        return cls(
            app_name=app_name,
            config=config,
            app_dir=app_dir,
            plugins=plugins,
            runtime=runtime,
            nginx=nginx,
            health=HealthChecker(
                runtime=runtime, sleep=sleep, max_log_lines=config.health.max_log_lines
            ),
            registry=EnvironmentRegistry(app_name, app_dir, runtime=runtime, routing=nginx),
            state=DeploymentState(app_name, app_dir),
            compose=ComposeGenerator(
                app_name, app_dir, config.docker.network_name(app_name)
            ),
            ports=PortManager(
                host=config.nginx.upstream_host, max_attempts=config.ports.max_attempts
            ),
            sleep=sleep,
        )

    # Slot files

    def compose_files(self, slot: Slot) -> List[Path]:
        """Base compose file plus the slot's override."""
        recorded = self.registry.slot_metadata(slot).get("compose_file")
        base = Path(recorded) if recorded else Path(self.config.manager.compose_file).resolve()
        files = [base]
        override = override_file_path(self.app_dir, slot)
        if override.exists():
            files.append(override)
        return files

    def env_file(self, slot: Slot) -> Path:
        return env_file_path(self.app_dir, slot)

    def proxy_mounts(self) -> Tuple[str, ...]:
        nginx = self.config.nginx
        if not nginx.ssl:
            return ()
        dirs = {str(Path(p).parent) for p in (nginx.ssl_certificate, nginx.ssl_certificate_key) if p}
        return tuple(sorted(dirs))

    # Routing

    def require_routing(self) -> RoutingSpec:
        spec = self.state.load_routing()
        if spec is None:
            raise BGDError(
                ErrorCode.FILE_NOT_FOUND,
                f"No routing state for {self.app_name}",
                suggestion="Run a deploy for this application first.",
            )
        return spec

    def apply_routing(self, spec: RoutingSpec) -> None:
        """Render and reload the proxy, then persist the routing that is now live."""
        self.nginx.apply(spec, extra_mounts=self.proxy_mounts())
        self.state.save_routing(spec)

    # Health

    def slot_url(self, spec: RoutingSpec, slot: Slot) -> str:
        endpoint = self.config.health.endpoint
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        return f"http://{self.config.nginx.upstream_host}:{spec.ports.slot_port(slot)}{endpoint}"

    def check_slot(self, spec: RoutingSpec, slot: Slot) -> Tuple[HealthResult, SlotHealthReport]:
        """Primary endpoint check followed by every-service check."""
        settings = self.config.health
        result = self.health.check_policy(
            self.slot_url(spec, slot),
            settings.policy(),
            app_name=self.app_name if settings.collect_logs else None,
            slot=slot,
        )
        if not result.healthy:
            return result, SlotHealthReport(slot=slot.value)
        report = self.health.verify_all_services(
            self.app_name, slot, retries=settings.retries, delay=settings.delay
        )
        return result, report
