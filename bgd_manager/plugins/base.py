"""
Plugin capability interface.

A plugin declares the configuration arguments it needs and the subset of
lifecycle hooks it implements. Hooks receive positional arguments describing
the lifecycle point and return True on success.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

if TYPE_CHECKING:
    from bgd_manager.plugins.registry import PluginRegistry


class HookName(str, Enum):
    """Closed set of lifecycle hooks.

    Positional arguments per hook:
        pre_deploy, post_env_start, post_health: (version, target_slot)
        post_traffic_shift: (version, target_slot, weight_blue, weight_green)
        pre_cutover, post_cutover: (target_slot, old_slot)
        pre_rollback, post_rollback: (rollback_slot, abandoned_slot)
        cleanup: (mode,)
        error: (error_code, message)
    """

    PRE_DEPLOY = "pre_deploy"
    POST_ENV_START = "post_env_start"
    POST_HEALTH = "post_health"
    PRE_CUTOVER = "pre_cutover"
    POST_CUTOVER = "post_cutover"
    PRE_ROLLBACK = "pre_rollback"
    POST_ROLLBACK = "post_rollback"
    POST_TRAFFIC_SHIFT = "post_traffic_shift"
    CLEANUP = "cleanup"
    ERROR = "error"

    @property
    def is_pre_hook(self) -> bool:
        return self in PRE_HOOKS


PRE_HOOKS = frozenset({HookName.PRE_DEPLOY, HookName.PRE_CUTOVER, HookName.PRE_ROLLBACK})

HookCallable = Callable[..., bool]


@dataclass
class PluginContext:
    """What a plugin may know about the invocation it runs in."""

    app_name: str
    app_dir: Path
    logs_dir: Optional[Path] = None
    domain: Optional[str] = None
    ssl: bool = False
    skip_migrations: bool = False


class Plugin(ABC):
    """Base class for bgd-manager plugins."""

    name: str = ""
    description: str = ""

    def __init__(self) -> None:
        self._registry: Optional["PluginRegistry"] = None

    def arguments(self) -> Dict[str, str]:
        """Argument name -> default value. Names are upper snake case."""
        return {}

    @abstractmethod
    def hooks(self) -> Mapping[HookName, HookCallable]:
        """The hooks this plugin implements."""

    def bind(self, registry: "PluginRegistry") -> None:
        self._registry = registry

    @property
    def context(self) -> PluginContext:
        if self._registry is None:
            raise RuntimeError(f"Plugin {self.name} is not registered")
        return self._registry.context

    def arg(self, name: str, default: str = "") -> str:
        if self._registry is None:
            return self.arguments().get(name, default)
        return self._registry.get_argument(name, default)

    def flag(self, name: str) -> bool:
        return self.arg(name).strip().lower() in ("1", "true", "yes", "on")
