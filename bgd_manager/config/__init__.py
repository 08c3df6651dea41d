"""Configuration for bgd-manager."""

from bgd_manager.config.settings import (
    DEFAULT_CONFIG_PATH,
    BGDConfig,
    DeploymentSettings,
    DockerSettings,
    HealthSettings,
    ManagerSettings,
    NginxSettings,
    PluginSettings,
    PortSettings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "BGDConfig",
    "DeploymentSettings",
    "DockerSettings",
    "HealthSettings",
    "ManagerSettings",
    "NginxSettings",
    "PluginSettings",
    "PortSettings",
]
