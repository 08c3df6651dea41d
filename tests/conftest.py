"""
Pytest configuration and fixtures for bgd-manager tests.
"""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import Mock, patch

import httpx
import pytest

from bgd_manager.config import BGDConfig
from bgd_manager.deployment import DeploymentContext
from bgd_manager.docker_runtime import ContainerInfo
from bgd_manager.models import PortAssignment, RoutingSpec, Slot
from bgd_manager.plugins import HookName, Plugin, PluginContext, PluginRegistry


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self) -> None:
        self.running = set()
        self.unhealthy = set()
        self.exited = set()
        self.proxy: Optional[str] = None
        self.calls: List[Tuple] = []
        self.exec_result = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
        self.exec_error: Optional[Exception] = None
        self.up_error: Optional[Exception] = None
        self.proxy_results: Dict[str, Tuple[int, str]] = {}
        self.versions: Dict[Slot, str] = {}

    # compose

    def compose_up(self, app_name, slot, compose_files, env_file, timeout=300):
        self.calls.append(("up", slot))
        if self.up_error is not None:
            raise self.up_error
        self.running.add(slot)
        self.exited.discard(slot)

    def compose_down(self, app_name, slot, compose_files=(), env_file=None, remove_volumes=False):
        self.calls.append(("down", slot))
        self.running.discard(slot)
        self.exited.discard(slot)

    def compose_exec(self, app_name, slot, compose_files, env_file, service, command, timeout=None):
        self.calls.append(("exec", slot, service, command, timeout))
        if self.exec_error is not None:
            raise self.exec_error
        return self.exec_result

    # inspection

    def slot_containers(self, app_name, slot) -> List[ContainerInfo]:
        if slot in self.exited:
            return [ContainerInfo(name=f"{app_name}-{slot.value}-app-1", service="app", state="exited")]
        if slot not in self.running:
            return []
        health = "unhealthy" if slot in self.unhealthy else "healthy"
        return [
            ContainerInfo(
                name=f"{app_name}-{slot.value}-app-1", service="app", state="running", health=health
            ),
            ContainerInfo(name=f"{app_name}-{slot.value}-worker-1", service="worker", state="running"),
        ]

    def is_slot_running(self, app_name, slot) -> bool:
        return slot in self.running

    def slot_version(self, app_name, slot) -> Optional[str]:
        return self.versions.get(slot) if slot in self.running else None

    def container_logs(self, app_name, slot, tail=100) -> str:
        return f"==> {app_name}-{slot.value}-app-1 <==\nboom"

    def ensure_network(self, name, app_name):
        self.calls.append(("network", name))

    def prune(self, app_name, image_age_hours=24):
        self.calls.append(("prune", image_age_hours))
        return {"images": 0, "volumes": 0, "networks": 0}

    def remove_container(self, name):
        self.calls.append(("remove", name))
        self.proxy = None
        return True

    # proxy

    def proxy_state(self, name):
        return self.proxy

    def start_proxy(self, name, image, config_dir, config_file, app_name, extra_mounts=()):
        self.calls.append(("start_proxy", name))
        self.proxy = "running"

    def proxy_exec(self, name, command):
        self.calls.append(("proxy_exec", tuple(command)))
        key = "reload" if "reload" in command else "test"
        return self.proxy_results.get(key, (0, ""))

    def restart_container(self, name):
        self.calls.append(("restart", name))


def health_transport(healthy_ports=None):
    """MockTransport answering 200 for healthy ports and 503 otherwise."""
    healthy_ports = set(healthy_ports or [])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.port in healthy_ports:
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(503, text="starting")

    return httpx.MockTransport(handler)


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for tests."""
    with patch("docker.from_env") as mock_docker:
        client = Mock()
        mock_docker.return_value = client
        yield client


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def sleeps():
    """Injected sleep that records instead of waiting."""
    calls: List[float] = []
    calls_sleep = calls.append
    return calls, calls_sleep


@pytest.fixture
def config(tmp_path) -> BGDConfig:
    compose_file = tmp_path / "docker-compose.yml"
    compose_file.write_text("services:\n  app:\n    image: ${IMAGE_REPO}:${VERSION}\n")
    cfg = BGDConfig()
    return cfg.merged(
        {
            "manager": {
                "base_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "compose_file": str(compose_file),
            },
            "docker": {"image_repo": "registry.example.com/shop"},
            "health": {"retries": 3, "delay": 2, "timeout": 1},
            "deployment": {"shift_step_delay": 10, "drain_seconds": 5},
            "plugins": {"builtin": [], "load_entry_points": False},
        }
    )


@pytest.fixture
def plugin_registry(config) -> PluginRegistry:
    context = PluginContext(app_name="shop", app_dir=config.manager.app_dir("shop"))
    return PluginRegistry(context)


@pytest.fixture
def context(config, plugin_registry, fake_runtime, sleeps) -> DeploymentContext:
    """Deployment context for the 'shop' app with a fake runtime and HTTP."""
    _, sleep = sleeps
    ctx = DeploymentContext.create("shop", config, plugin_registry, runtime=fake_runtime, sleep=sleep)
    ctx.health.http_client = httpx.Client(transport=health_transport([8081, 8082]))
    return ctx


@pytest.fixture
def ports() -> PortAssignment:
    return PortAssignment(ports={"proxy_http": 80, "proxy_tls": 443, "blue": 8081, "green": 8082})


@pytest.fixture
def routing_spec(ports) -> RoutingSpec:
    return RoutingSpec(target_slot=Slot.BLUE, domain="shop.example.com", ports=ports)


@pytest.fixture
def app_dir(tmp_path) -> Path:
    path = tmp_path / "apps" / "shop"
    path.mkdir(parents=True)
    return path


class HookRecorder(Plugin):
    """Plugin recording every hook call as (hook, args)."""

    def __init__(self, calls, block=(), name="hook_recorder"):
        super().__init__()
        self.name = name
        self.calls = calls
        self.block = set(block)

    def hooks(self):
        return {hook: self._handler(hook) for hook in HookName}

    def _handler(self, hook):
        def handler(*args):
            self.calls.append((hook.value, args))
            return hook not in self.block

        return handler


@pytest.fixture
def hook_calls(plugin_registry) -> List[Tuple[str, tuple]]:
    """Hooks dispatched through the context's plugin registry."""
    calls: List[Tuple[str, tuple]] = []
    plugin_registry.register(HookRecorder(calls))
    return calls


@pytest.fixture
def blue_live(context, fake_runtime, routing_spec, sleeps):
    """Blue running, active and routed, as after a completed first deploy."""
    fake_runtime.running.add(Slot.BLUE)
    context.apply_routing(routing_spec)
    context.registry.set_active(Slot.BLUE)
    context.registry.record_slot(Slot.BLUE, version="1.1.0", port=8081)
    context.env_file(Slot.BLUE).write_text("VERSION=1.1.0\n")
    fake_runtime.calls.clear()
    sleeps[0].clear()
    return context


@pytest.fixture
def block_hook(plugin_registry):
    """Register a plugin whose implementation of the given hooks fails."""

    def block(*hooks: str) -> None:
        plugin_registry.register(HookRecorder([], block=[HookName(h) for h in hooks], name="blocker"))

    return block


@pytest.fixture
def healthy_ports(context):
    """Replace which slot ports answer the health endpoint."""

    def set_ports(*ports: int) -> None:
        context.health.http_client = httpx.Client(transport=health_transport(ports))

    return set_ports
