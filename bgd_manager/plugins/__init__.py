"""
Plugin system for bgd-manager.

Usage:
    from bgd_manager.plugins import PluginRegistry, HookName

    registry = PluginRegistry.from_settings(config.plugins, context)
    if not registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green"):
        ...
"""

from bgd_manager.plugins.base import (
    PRE_HOOKS,
    HookCallable,
    HookName,
    Plugin,
    PluginContext,
)
from bgd_manager.plugins.registry import (
    ENTRY_POINT_GROUP,
    PROPAGATED_PREFIXES,
    PluginRegistry,
    argument_flag,
)

__all__ = [
    "PRE_HOOKS",
    "HookCallable",
    "HookName",
    "Plugin",
    "PluginContext",
    "ENTRY_POINT_GROUP",
    "PROPAGATED_PREFIXES",
    "PluginRegistry",
    "argument_flag",
]
