"""
Configuration settings for bgd-manager.

Values come from (later wins) built-in defaults, an optional YAML file,
BGD_* environment variables, and finally command-line flags.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import HealthCheckPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/bgd-manager/config.yml"


class ManagerSettings(BaseModel):
    """Filesystem locations."""

    base_dir: str = Field(default="/var/lib/bgd-manager", description="State root")
    logs_dir: str = Field(default="/var/log/bgd-manager", description="Log directory")
    compose_file: str = Field(
        default="docker-compose.yml", description="Base compose file shared by both slots"
    )

    def app_dir(self, app_name: str) -> Path:
        return Path(self.base_dir) / "apps" / app_name


class PortSettings(BaseModel):
    """Host port defaults."""

    nginx: int = Field(default=80, ge=1, le=65535)
    nginx_ssl: int = Field(default=443, ge=1, le=65535)
    blue: int = Field(default=8081, ge=1, le=65535)
    green: int = Field(default=8082, ge=1, le=65535)
    app_port: int = Field(default=3000, ge=1, le=65535, description="Container port of 'app'")
    green_service_offset: int = Field(
        default=100, ge=1, description="Offset added to extra service ports in the green slot"
    )
    auto_assign: bool = Field(default=False, description="Skip forward past busy ports")
    max_attempts: int = Field(default=100, ge=1, description="Ports probed per role")


class NginxSettings(BaseModel):
    """Reverse proxy settings."""

    container_name: str = Field(default="{app}-nginx", description="Proxy container template")
    image: str = Field(default="nginx:stable-alpine")
    upstream_host: str = Field(default="127.0.0.1", description="Host the slot ports live on")
    domain: str = Field(default="localhost")
    aliases: List[str] = Field(default_factory=list)
    ssl: bool = False
    ssl_certificate: Optional[str] = None
    ssl_certificate_key: Optional[str] = None
    reload_settle_seconds: float = Field(default=2.0, ge=0)

    def proxy_container(self, app_name: str) -> str:
        return self.container_name.format(app=app_name)


class DockerSettings(BaseModel):
    """Container runtime settings."""

    image_repo: Optional[str] = Field(None, description="Image repository for the app service")
    network: str = Field(default="{app}-network", description="Shared network template")
    compose_timeout: int = Field(default=300, ge=1, description="Seconds allowed for compose up")
    image_prune_hours: int = Field(default=24, ge=0)

    def network_name(self, app_name: str) -> str:
        return self.network.format(app=app_name)


class HealthSettings(BaseModel):
    """Health verifier defaults."""

    endpoint: str = "/health"
    retries: int = Field(default=12, ge=1)
    delay: float = Field(default=5.0, ge=0)
    timeout: float = Field(default=5.0, ge=0)
    backoff: bool = False
    collect_logs: bool = True
    max_log_lines: int = Field(default=100, ge=1)

    def policy(self) -> HealthCheckPolicy:
        return HealthCheckPolicy(
            endpoint_path=self.endpoint,
            retries=self.retries,
            delay=self.delay,
            timeout=self.timeout,
            backoff=self.backoff,
        )


class DeploymentSettings(BaseModel):
    """Deployment controller behaviour."""

    shift_traffic: bool = True
    shift_step_delay: float = Field(default=10.0, ge=0, description="Seconds between steps")
    drain_seconds: float = Field(default=5.0, ge=0)
    auto_rollback: bool = False
    auto_cutover: bool = False
    skip_migrations: bool = False
    migrations_cmd: str = "npm run migrate"
    migrations_service: str = "app"
    migrations_timeout: int = Field(default=600, ge=0, description="0 disables the deadline")
    keep_old: bool = False


class PluginSettings(BaseModel):
    """Plugin selection and operator-supplied plugin arguments."""

    builtin: List[str] = Field(
        default_factory=lambda: [
            "audit_logging",
            "db_migrations",
            "notifications",
            "service_discovery",
        ]
    )
    disabled: List[str] = Field(default_factory=list)
    load_entry_points: bool = True
    arguments: Dict[str, str] = Field(default_factory=dict)


class BGDConfig(BaseModel):
    """Complete bgd-manager configuration."""

    manager: ManagerSettings = Field(default_factory=ManagerSettings)
    ports: PortSettings = Field(default_factory=PortSettings)
    nginx: NginxSettings = Field(default_factory=NginxSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    plugins: PluginSettings = Field(default_factory=PluginSettings)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "BGDConfig":
        """
        Load configuration from a YAML file.

        A missing file yields the defaults.

        Raises:
            BGDError: invalid_parameter if the file does not validate
        """
        config_path = Path(path)
        if not config_path.exists():
            logger.debug(f"No configuration at {config_path}, using defaults")
            return cls()

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise BGDError(
                ErrorCode.INVALID_PARAMETER, f"Malformed configuration file {config_path}: {e}"
            )
        except PermissionError as e:
            raise BGDError(ErrorCode.PERMISSION_DENIED, f"Cannot read {config_path}: {e}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid configuration: {e}")

    def save(self, path: Union[str, Path]) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "BGDConfig":
        """
        Return a copy with BGD_<SECTION>_<FIELD> environment overrides applied.

        Example: BGD_PORTS_BLUE=9081, BGD_DEPLOYMENT_AUTO_ROLLBACK=true
        """
        env = os.environ if environ is None else environ
        data = self.model_dump()
        for section, fields in data.items():
            for field in list(fields):
                key = f"BGD_{section}_{field}".upper()
                if key in env and not isinstance(fields[field], dict):
                    fields[field] = _coerce_env(env[key], fields[field])
        try:
            return BGDConfig.model_validate(data)
        except ValidationError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid environment override: {e}")

    def merged(self, overrides: Dict[str, Dict[str, Any]]) -> "BGDConfig":
        """Return a copy with non-None values from {section: {field: value}} applied."""
        data = self.model_dump()
        for section, values in overrides.items():
            for field, value in values.items():
                if value is not None:
                    data[section][field] = value
        try:
            return BGDConfig.model_validate(data)
        except ValidationError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid parameter: {e}")


def _coerce_env(raw: str, current: Any) -> Any:
    """Coerce an environment string to the shape of the current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw
