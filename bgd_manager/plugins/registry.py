"""
Plugin registry and hook dispatcher.

An explicit registry object, constructed per invocation and handed to the
controller, owns the loaded plugins, their argument values and hook dispatch.
"""

import logging
from importlib.metadata import entry_points
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.plugins.base import HookName, Plugin, PluginContext

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "bgd_manager.plugins"

# Arguments with these prefixes are written into slot environment files
PROPAGATED_PREFIXES = ("DB_", "APP_", "SERVICE_", "SSL_", "METRICS_", "AUTH_")


def _builtin_plugins() -> Dict[str, Callable[[], Plugin]]:
    from bgd_manager.plugins.audit_logging import AuditLoggingPlugin
    from bgd_manager.plugins.db_migrations import DBMigrationsPlugin
    from bgd_manager.plugins.notifications import NotificationsPlugin
    from bgd_manager.plugins.service_discovery import ServiceDiscoveryPlugin

    return {
        AuditLoggingPlugin.name: AuditLoggingPlugin,
        DBMigrationsPlugin.name: DBMigrationsPlugin,
        NotificationsPlugin.name: NotificationsPlugin,
        ServiceDiscoveryPlugin.name: ServiceDiscoveryPlugin,
    }


def argument_flag(name: str) -> str:
    """CLI flag for a plugin argument: SERVICE_REGISTRY_URL -> --service-registry-url."""
    return "--" + name.lower().replace("_", "-")


class PluginRegistry:
    """Loaded plugins, their argument values and hook dispatch."""

    def __init__(
        self,
        context: PluginContext,
        operator_values: Optional[Mapping[str, str]] = None,
        disabled: Iterable[str] = (),
    ):
        """
        Initialize registry.

        Args:
            context: Invocation context exposed to plugins
            operator_values: Argument values set by the operator; these always
                win over plugin defaults
            disabled: Plugin names excluded from loading
        """
        self.context = context
        self.disabled: Set[str] = set(disabled)
        self._plugins: List[Plugin] = []
        self._values: Dict[str, str] = {}
        self._owners: Dict[str, str] = {}
        for name, value in (operator_values or {}).items():
            self.set_argument(name, value)

    @property
    def plugins(self) -> List[Plugin]:
        return list(self._plugins)

    def plugin_names(self) -> List[str]:
        return [p.name for p in self._plugins]

    def register(self, plugin: Plugin) -> bool:
        """
        Add a plugin in discovery order and seed its argument defaults.

        Returns:
            False if the plugin is disabled or already registered
        """
        if not plugin.name:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Plugin {plugin!r} has no name")
        if plugin.name in self.disabled:
            logger.info(f"Plugin {plugin.name} is disabled, skipping")
            return False
        if plugin.name in self.plugin_names():
            logger.debug(f"Plugin {plugin.name} already registered")
            return False

        plugin.bind(self)
        for arg_name, default in plugin.arguments().items():
            self.register_argument(plugin.name, arg_name, default)
        self._plugins.append(plugin)
        hooks = ", ".join(h.value for h in plugin.hooks())
        logger.debug(f"Registered plugin {plugin.name} (hooks: {hooks or 'none'})")
        return True

    def register_argument(self, plugin_name: str, arg_name: str, default: str) -> str:
        """
        Seed an argument's default unless a value is already set.

        Idempotent: repeated registration never overwrites an operator value
        or an earlier default.

        Returns:
            The argument's effective value
        """
        self._owners.setdefault(arg_name, plugin_name)
        if arg_name not in self._values:
            self._values[arg_name] = str(default)
        return self._values[arg_name]

    def set_argument(self, name: str, value: str) -> None:
        """Set an argument value on behalf of the operator."""
        self._values[name] = str(value)

    def get_argument(self, name: str, default: str = "") -> str:
        return self._values.get(name, default)

    def arguments(self) -> Dict[str, str]:
        return dict(self._values)

    def owned_arguments(self) -> Dict[str, str]:
        """Argument name -> owning plugin, for arguments registered by plugins."""
        return dict(self._owners)

    def env_entries(self) -> Dict[str, str]:
        """Arguments auto-propagated into slot environment files by prefix."""
        return {
            name: value
            for name, value in sorted(self._values.items())
            if name.startswith(PROPAGATED_PREFIXES)
        }

    def dispatch(self, hook: HookName, *args: object) -> bool:
        """
        Invoke every plugin's implementation of a hook in discovery order.

        A failing pre-hook stops dispatch and returns False; failures of other
        hooks are logged as warnings and dispatch continues.

        Returns:
            False only if a pre-hook failed
        """
        for plugin in self._plugins:
            handler = plugin.hooks().get(hook)
            if handler is None:
                continue

            logger.debug(f"Running {hook.value} hook of {plugin.name}")
            try:
                ok = bool(handler(*args))
            except Exception as e:
                logger.error(f"Plugin {plugin.name} {hook.value} hook raised: {e}", exc_info=True)
                ok = False

            if ok:
                continue
            if hook.is_pre_hook:
                logger.error(f"Plugin {plugin.name} blocked {hook.value}")
                return False
            logger.warning(f"Plugin {plugin.name} {hook.value} hook failed, continuing")
        return True

    # Loading

    def load_builtin(self, names: Iterable[str]) -> None:
        """Register built-in plugins by name, in the given order."""
        available = _builtin_plugins()
        for name in names:
            factory = available.get(name)
            if factory is None:
                raise BGDError(
                    ErrorCode.INVALID_PARAMETER,
                    f"Unknown built-in plugin '{name}'",
                    suggestion=f"Available plugins: {', '.join(sorted(available))}",
                )
            self.register(factory())

    def load_entry_points(self) -> None:
        """Register third-party plugins from the bgd_manager.plugins entry-point group."""
        for ep in sorted(entry_points(group=ENTRY_POINT_GROUP), key=lambda e: e.name):
            if ep.name in self.disabled:
                logger.info(f"Plugin {ep.name} is disabled, skipping")
                continue
            try:
                factory = ep.load()
            except (ImportError, AttributeError) as e:
                logger.warning(f"Failed to load plugin {ep.name}: {e}")
                continue
            plugin = factory()
            if not isinstance(plugin, Plugin):
                logger.warning(f"Entry point {ep.name} did not produce a Plugin, ignoring")
                continue
            self.register(plugin)

    @classmethod
    def from_settings(
        cls,
        settings,
        context: PluginContext,
        extra_disabled: Iterable[str] = (),
    ) -> "PluginRegistry":
        """
        Build a registry from PluginSettings.

        Args:
            settings: PluginSettings section of the configuration
            context: Invocation context
            extra_disabled: Plugins disabled on the command line
        """
        registry = cls(
            context,
            operator_values=settings.arguments,
            disabled=set(settings.disabled) | set(extra_disabled),
        )
        registry.load_builtin(settings.builtin)
        if settings.load_entry_points:
            registry.load_entry_points()
        return registry
