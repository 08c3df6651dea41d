"""
bgd command line interface.

Each verb performs one full operation and returns; the exit code is 0 on
success, 1 on an operational error and 2 on an unexpected failure.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tabulate import tabulate

from bgd_manager import __version__
from bgd_manager.config import DEFAULT_CONFIG_PATH, BGDConfig
from bgd_manager.deployment import (
    AppLock,
    CleanupManager,
    CutoverCoordinator,
    DeploymentContext,
    DeploymentController,
)
from bgd_manager.deployment.helpers import parse_routes, validate_app_name
from bgd_manager.docker_runtime import DockerRuntime
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.health_checker import HealthChecker
from bgd_manager.logging_config import setup_console_logging, setup_logging
from bgd_manager.models import Slot
from bgd_manager.plugins import PluginContext, PluginRegistry, argument_flag

logger = logging.getLogger(__name__)

MUTATING_COMMANDS = ("deploy", "cutover", "rollback", "cleanup")


def configure_logging(config: BGDConfig, verbose: bool = False) -> None:
    """File and console logging, console only if the log directory is not writable."""
    console_level = "DEBUG" if verbose else "INFO"
    try:
        setup_logging(
            log_dir=config.manager.logs_dir,
            console_level=console_level,
            file_level="DEBUG",
            use_json=False,
        )
    except PermissionError:
        setup_console_logging(verbose)
        logger.warning(f"Cannot write to {config.manager.logs_dir}, logging to console only")


def load_plugins(config: BGDConfig, app_name: str, disabled: Sequence[str] = ()) -> PluginRegistry:
    context = PluginContext(
        app_name=app_name,
        app_dir=config.manager.app_dir(app_name),
        logs_dir=Path(config.manager.logs_dir),
    )
    return PluginRegistry.from_settings(config.plugins, context, extra_disabled=disabled)


def _pre_parser() -> argparse.ArgumentParser:
    """Options needed before the full parser can be built."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--config", "-c", default=os.environ.get("BGD_CONFIG", DEFAULT_CONFIG_PATH))
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--disable-plugin", action="append", default=[])
    parser.add_argument("--app-name")
    return parser


def build_parser(plugins: Optional[PluginRegistry] = None) -> argparse.ArgumentParser:
    """
    Full parser. Plugin arguments become --name=value flags on the verbs
    that dispatch hooks.
    """
    parser = argparse.ArgumentParser(
        prog="bgd", description="Blue/green deployment manager for docker compose applications"
    )
    parser.add_argument("--version", action="version", version=f"bgd-manager {__version__}")
    parser.add_argument(
        "--config", "-c", default=DEFAULT_CONFIG_PATH, help="Path to configuration file"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--disable-plugin",
        action="append",
        default=[],
        metavar="NAME",
        help="Do not load a plugin (repeatable)",
    )

    plugin_args = argparse.ArgumentParser(add_help=False)
    if plugins is not None:
        group = plugin_args.add_argument_group("plugin arguments")
        owners = plugins.owned_arguments()
        for name, value in sorted(plugins.arguments().items()):
            owner = owners.get(name, "operator")
            group.add_argument(
                argument_flag(name),
                dest=f"plugin_arg_{name}",
                metavar="VALUE",
                default=None,
                help=f"[{owner}] default: {value or '(empty)'}",
            )

    app_args = argparse.ArgumentParser(add_help=False)
    app_args.add_argument("--app-name", help="Application name")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    # deploy
    deploy = sub.add_parser(
        "deploy", parents=[app_args, plugin_args], help="Deploy a version to the standby slot"
    )
    deploy.add_argument("version", help="Image tag to deploy")
    deploy.add_argument("--image-repo", help="Image repository of the app service")
    deploy.add_argument("--compose-file", help="Base docker compose file")
    deploy.add_argument("--nginx-port", type=int, help="Proxy HTTP port")
    deploy.add_argument("--nginx-ssl-port", type=int, help="Proxy HTTPS port")
    deploy.add_argument("--blue-port", type=int, help="Host port of the blue slot")
    deploy.add_argument("--green-port", type=int, help="Host port of the green slot")
    deploy.add_argument("--app-port", type=int, help="Container port of the app service")
    deploy.add_argument("--health-endpoint", help="Health check path")
    deploy.add_argument("--health-retries", type=int, help="Health check attempts")
    deploy.add_argument("--health-delay", type=float, help="Seconds between health checks")
    deploy.add_argument("--health-timeout", type=float, help="Per-request timeout")
    deploy.add_argument(
        "--auto-port-assignment", action="store_true", default=None, help="Skip busy ports"
    )
    deploy.add_argument(
        "--no-shift",
        dest="shift_traffic",
        action="store_false",
        default=None,
        help="Leave the new slot without traffic until cutover",
    )
    deploy.add_argument(
        "--auto-cutover", action="store_true", default=None, help="Cut over after shifting"
    )
    deploy.add_argument(
        "--auto-rollback", action="store_true", default=None, help="Roll back on failure"
    )
    deploy.add_argument(
        "--force", action="store_true", help="Replace the standby slot even if it is running"
    )
    deploy.add_argument(
        "--skip-migrations", action="store_true", default=None, help="Do not run migrations"
    )
    deploy.add_argument("--migrations-cmd", help="Migration command run in the new slot")
    deploy.add_argument(
        "--migrations-timeout", type=int, help="Seconds allowed for migrations (0: no limit)"
    )
    deploy.add_argument("--domain-name", help="Primary server name")
    deploy.add_argument("--paths", default="", help="Path routes, e.g. api:api:8080,admin:admin:3001")
    deploy.add_argument("--subdomains", default="", help="Subdomain routes, e.g. api:api:8080")
    deploy.add_argument("--ssl", action="store_true", default=None, help="Terminate TLS on the proxy")
    deploy.add_argument("--ssl-certificate", help="Certificate path")
    deploy.add_argument("--ssl-certificate-key", help="Certificate key path")

    # cutover
    cutover = sub.add_parser(
        "cutover", parents=[app_args, plugin_args], help="Send all traffic to a slot"
    )
    cutover.add_argument("slot", help="blue or green")
    cutover.add_argument(
        "--keep-old", action="store_true", default=None, help="Do not stop the old slot"
    )

    # rollback
    rollback = sub.add_parser(
        "rollback", parents=[app_args, plugin_args], help="Return traffic to the previous slot"
    )
    rollback.add_argument(
        "--force", action="store_true", help="Roll back even if the previous slot is unhealthy"
    )

    # cleanup
    cleanup = sub.add_parser(
        "cleanup", parents=[app_args, plugin_args], help="Remove unused slot environments"
    )
    mode = cleanup.add_mutually_exclusive_group()
    mode.add_argument("--all", dest="mode", action="store_const", const="all")
    mode.add_argument("--failed-only", dest="mode", action="store_const", const="failed")
    mode.add_argument("--old-only", dest="mode", action="store_const", const="old")
    cleanup.add_argument("--dry-run", action="store_true", help="Only report what would be done")
    cleanup.set_defaults(mode="default")

    # health-check
    health = sub.add_parser("health-check", help="Poll an HTTP endpoint until healthy")
    health.add_argument("endpoint", help="URL to probe")
    health.add_argument("--retries", type=int, default=12)
    health.add_argument("--delay", type=float, default=5.0)
    health.add_argument("--timeout", type=float, default=5.0)
    health.add_argument("--retry-backoff", action="store_true", help="Double the delay each time")
    health.add_argument("--app-name", help="Application whose logs are shown on failure")
    health.add_argument("--slot", help="Slot whose logs are shown on failure")

    # status
    sub.add_parser("status", parents=[app_args], help="Show slot and deployment status")

    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Map deploy/cutover flags onto configuration sections."""
    get = lambda name: getattr(args, name, None)  # noqa: E731
    return {
        "manager": {"compose_file": get("compose_file")},
        "ports": {
            "nginx": get("nginx_port"),
            "nginx_ssl": get("nginx_ssl_port"),
            "blue": get("blue_port"),
            "green": get("green_port"),
            "app_port": get("app_port"),
            "auto_assign": get("auto_port_assignment"),
        },
        "nginx": {
            "domain": get("domain_name"),
            "ssl": get("ssl"),
            "ssl_certificate": get("ssl_certificate"),
            "ssl_certificate_key": get("ssl_certificate_key"),
        },
        "docker": {"image_repo": get("image_repo")},
        "health": {
            "endpoint": get("health_endpoint"),
            "retries": get("health_retries"),
            "delay": get("health_delay"),
            "timeout": get("health_timeout"),
        },
        "deployment": {
            "shift_traffic": get("shift_traffic"),
            "auto_cutover": get("auto_cutover"),
            "auto_rollback": get("auto_rollback"),
            "skip_migrations": get("skip_migrations"),
            "migrations_cmd": get("migrations_cmd"),
            "migrations_timeout": get("migrations_timeout"),
            "keep_old": get("keep_old"),
        },
    }


def print_table(rows: list, headers: list) -> None:
    print(tabulate(rows, headers=headers, tablefmt="simple"))


def _parse_slot(name: str) -> Slot:
    try:
        return Slot.parse(name)
    except ValueError as e:
        raise BGDError(ErrorCode.INVALID_PARAMETER, str(e))


def cmd_deploy(ctx: DeploymentContext, args: argparse.Namespace) -> int:
    path_routes = parse_routes(args.paths, "--paths")
    subdomain_routes = parse_routes(args.subdomains, "--subdomains")
    deployment = DeploymentController(ctx).deploy(
        args.version,
        force=args.force,
        path_routes=path_routes,
        subdomain_routes=subdomain_routes,
    )
    print(
        f"Deployment {deployment.deployment_id}: {deployment.version} -> "
        f"{deployment.target_slot.value} ({deployment.status.value})"
    )
    if not deployment.is_terminal:
        print(f"Finish with: bgd cutover {deployment.target_slot.value} --app-name={ctx.app_name}")
    return 0


def cmd_cutover(ctx: DeploymentContext, args: argparse.Namespace) -> int:
    target = _parse_slot(args.slot)
    changed = CutoverCoordinator(ctx).cutover(target, keep_old=args.keep_old)
    if changed:
        print(f"{target.value} is now active for {ctx.app_name}")
    else:
        print(f"{target.value} was already active for {ctx.app_name}")
    return 0


def cmd_rollback(ctx: DeploymentContext, args: argparse.Namespace) -> int:
    target = CutoverCoordinator(ctx).rollback(force=args.force)
    print(f"Rolled back {ctx.app_name} to {target.value}")
    return 0


def cmd_cleanup(ctx: DeploymentContext, args: argparse.Namespace) -> int:
    actions = CleanupManager(ctx).cleanup(args.mode, dry_run=args.dry_run)
    for action in actions:
        print(action)
    return 0


def cmd_status(ctx: DeploymentContext, args: argparse.Namespace) -> int:
    active, standby = ctx.registry.get_active_slot()
    latest = ctx.state.latest()
    print(f"Application: {ctx.app_name}")
    print(f"Active: {active.value}  Standby: {standby.value}")
    rows = [
        [slot.value, state.describe(), state.version or "-", state.port or "-"]
        for slot, state in ctx.registry.describe_slots(latest).items()
    ]
    print_table(rows, ["Slot", "Status", "Version", "Port"])
    if latest is None:
        print("No deployments recorded")
        return 0
    print(
        f"Last deployment: {latest.deployment_id} {latest.version} -> "
        f"{latest.target_slot.value} [{latest.status.value}]"
    )
    if latest.failure_reason:
        print(f"  Failure: {latest.failure_reason}")
    events = ctx.state.events(latest.deployment_id, limit=20)
    print_table(
        [[e.timestamp, e.event_type, e.message] for e in events], ["Time", "Event", "Message"]
    )
    return 0


def cmd_health_check(config: BGDConfig, args: argparse.Namespace) -> int:
    if args.retries < 1:
        raise BGDError(ErrorCode.INVALID_PARAMETER, "--retries must be at least 1")
    if args.delay < 0 or args.timeout < 0:
        raise BGDError(ErrorCode.INVALID_PARAMETER, "--delay and --timeout must not be negative")
    slot = _parse_slot(args.slot) if args.slot else None
    checker = HealthChecker(max_log_lines=config.health.max_log_lines)
    if args.app_name and slot is not None:
        checker.runtime = DockerRuntime()

    result = checker.check(
        args.endpoint,
        retries=args.retries,
        delay=args.delay,
        timeout=args.timeout,
        backoff=args.retry_backoff,
        app_name=args.app_name,
        slot=slot,
    )
    if result.healthy:
        print(f"{args.endpoint} is healthy ({result.attempts} attempt(s))")
        return 0

    reason = result.last_error or f"HTTP {result.last_status}"
    if result.logs:
        print(result.logs, file=sys.stderr)
    raise BGDError(
        ErrorCode.HEALTH_CHECK_FAILED,
        f"{args.endpoint} not healthy after {result.attempts} attempts ({reason})",
    )


COMMANDS = {
    "deploy": cmd_deploy,
    "cutover": cmd_cutover,
    "rollback": cmd_rollback,
    "cleanup": cmd_cleanup,
    "status": cmd_status,
}


def run(argv: Sequence[str], environ: Optional[Dict[str, str]] = None) -> int:
    """Parse arguments and run one command. BGDError propagates to the caller."""
    pre, _ = _pre_parser().parse_known_args(argv)
    config = BGDConfig.from_file(pre.config).apply_env(environ)
    configure_logging(config, pre.verbose)

    plugins = load_plugins(config, pre.app_name, pre.disable_plugin) if pre.app_name else None

    args = build_parser(plugins).parse_args(argv)
    if args.command == "health-check":
        return cmd_health_check(config, args)

    app_name = validate_app_name(args.app_name or "")
    config = config.merged(config_overrides(args))
    if plugins is None:
        plugins = load_plugins(config, app_name, args.disable_plugin)
    for name in plugins.arguments():
        value = getattr(args, f"plugin_arg_{name}", None)
        if value is not None:
            plugins.set_argument(name, value)
    plugins.context.domain = config.nginx.domain
    plugins.context.ssl = config.nginx.ssl
    plugins.context.skip_migrations = config.deployment.skip_migrations

    ctx = DeploymentContext.create(app_name, config, plugins)
    handler = COMMANDS[args.command]
    if args.command not in MUTATING_COMMANDS:
        return handler(ctx, args)
    with AppLock(ctx.app_dir, args.command):
        return handler(ctx, args)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        return run(argv)
    except BGDError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        if e.suggestion:
            print(f"Suggestion: {e.suggestion}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted; run 'bgd rollback' if a deployment was in progress")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 2
