"""
Per-slot runtime files.

Each slot gets an environment file (mode 600, may hold secrets) and a
compose override that publishes the slot's host ports, pins the image
version and labels every container with its application and slot.
"""

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from bgd_manager.docker_runtime import APP_LABEL, SLOT_LABEL, VERSION_LABEL
from bgd_manager.environment_registry import atomic_write_text
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import PortAssignment, RoutingSpec, Slot

logger = logging.getLogger(__name__)

SHARED_NETWORK_KEY = "bgd_shared"


def env_file_path(app_dir: Path, slot: Slot) -> Path:
    return Path(app_dir) / f".env.{slot.value}"


def override_file_path(app_dir: Path, slot: Slot) -> Path:
    return Path(app_dir) / f"docker-compose.{slot.value}.yml"


def _env_line(key: str, value: str) -> str:
    value = str(value)
    if value and not any(c in value for c in " \t#'\"$\\"):
        return f"{key}={value}"
    if "'" not in value:
        return f"{key}='{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'{key}="{escaped}"'


def parse_env_file(path: Path) -> Dict[str, str]:
    """Read KEY=VALUE lines, ignoring comments and blank lines."""
    values: Dict[str, str] = {}
    with open(path, "r") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] == "'":
                value = value[1:-1]
            elif len(value) >= 2 and value[0] == value[-1] == '"':
                value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
            values[key.strip()] = value
    return values


class ComposeGenerator:
    """Generates environment files and compose overrides for slots."""

    def __init__(self, app_name: str, app_dir: Path, network_name: str):
        """
        Initialize compose generator.

        Args:
            app_name: Application name
            app_dir: Directory the files are written to
            network_name: External network shared by both slots
        """
        self.app_name = app_name
        self.app_dir = Path(app_dir)
        self.network_name = network_name

    def generate_env(
        self,
        slot: Slot,
        version: str,
        image_repo: str,
        ports: PortAssignment,
        domain: str,
        extra: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """
        Resolved runtime configuration of a slot.

        Args:
            slot: Target slot
            version: Image tag
            image_repo: Image repository
            ports: Port assignment
            domain: Public domain name
            extra: Plugin and operator entries (already prefix filtered)

        Returns:
            Ordered key -> value mapping
        """
        env: Dict[str, str] = {
            "APP_NAME": self.app_name,
            "IMAGE_REPO": image_repo,
            "VERSION": version,
            "ENV_NAME": slot.value,
            "PORT": str(ports.slot_port(slot)),
            "NGINX_PORT": str(ports.proxy_http),
            "NGINX_SSL_PORT": str(ports.proxy_tls),
            "DOMAIN_NAME": domain,
        }
        for key, value in (extra or {}).items():
            env.setdefault(key, str(value))
        return env

    def write_env_file(self, slot: Slot, env: Mapping[str, str]) -> Path:
        """Write .env.<slot> with mode 600."""
        path = env_file_path(self.app_dir, slot)
        lines = [f"# bgd-manager: {self.app_name} {slot.value} slot"]
        lines += [_env_line(k, v) for k, v in env.items()]
        try:
            atomic_write_text(path, "\n".join(lines) + "\n", mode=0o600)
        except PermissionError as e:
            raise BGDError(ErrorCode.PERMISSION_DENIED, f"Cannot write {path}: {e}")
        logger.debug(f"Wrote {path} ({len(env)} entries)")
        return path

    def generate_override(
        self,
        slot: Slot,
        version: str,
        image_repo: str,
        routing: RoutingSpec,
        app_port: int,
    ) -> Dict:
        """
        Compose override publishing a slot's host ports.

        The default route's service publishes the slot port; every other
        routed service publishes its per-slot port.
        """
        labels = {APP_LABEL: self.app_name, SLOT_LABEL: slot.value, VERSION_LABEL: version}
        default_service = routing.default_route.service
        services: Dict[str, Dict] = {
            default_service: {
                "image": f"{image_repo}:{version}",
                "ports": [f"{routing.ports.slot_port(slot)}:{app_port}"],
                "labels": dict(labels),
                "environment": {"ENV_NAME": slot.value, "VERSION": version},
                "networks": ["default", SHARED_NETWORK_KEY],
            }
        }

        published: Dict[str, List[str]] = {}
        for route in routing.routes():
            if route.kind == "default" or route.target == routing.default_route:
                continue
            _, host_port = routing.backend(slot, route)
            mapping = f"{host_port}:{route.target.port}"
            published.setdefault(route.target.service, [])
            if mapping not in published[route.target.service]:
                published[route.target.service].append(mapping)

        for service, mappings in published.items():
            entry = services.setdefault(
                service,
                {"labels": dict(labels), "networks": ["default", SHARED_NETWORK_KEY]},
            )
            ports = entry.setdefault("ports", [])
            for mapping in mappings:
                if mapping not in ports:
                    ports.append(mapping)

        return {
            "services": services,
            "networks": {SHARED_NETWORK_KEY: {"external": True, "name": self.network_name}},
        }

    def write_override(self, slot: Slot, override: Dict) -> Path:
        path = override_file_path(self.app_dir, slot)
        content = yaml.safe_dump(override, default_flow_style=False, sort_keys=False)
        try:
            atomic_write_text(path, f"# Generated by bgd-manager for {self.app_name}\n{content}")
        except PermissionError as e:
            raise BGDError(ErrorCode.PERMISSION_DENIED, f"Cannot write {path}: {e}")
        logger.debug(f"Wrote {path}")
        return path

    def remove_slot_files(self, slot: Slot) -> List[Path]:
        """Delete a slot's env file and override. Missing files are fine."""
        removed = []
        for path in (env_file_path(self.app_dir, slot), override_file_path(self.app_dir, slot)):
            if path.exists():
                path.unlink()
                removed.append(path)
                logger.debug(f"Removed {path}")
        return removed
