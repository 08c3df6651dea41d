"""
Deployment controller.

Drives one deploy through Started -> EnvironmentUp -> MigrationsApplied ->
Healthy -> ShiftingTraffic, then either cuts over or leaves the target at
90% awaiting an explicit cutover or rollback.
"""

import logging
import subprocess
from pathlib import Path
from typing import Dict, Optional

from bgd_manager.deployment.context import DeploymentContext
from bgd_manager.deployment.cutover import CutoverCoordinator
from bgd_manager.deployment.helpers import (
    generate_deployment_id,
    initial_weights,
    normalize_path,
    shift_schedule,
    validate_version,
)
from bgd_manager.errors import BGDError, ErrorCode, from_exception
from bgd_manager.logging_config import log_deployment_operation
from bgd_manager.models import (
    PROXY_HTTP,
    PROXY_TLS,
    Deployment,
    DeploymentStatus,
    PortAssignment,
    RouteTarget,
    RoutingMode,
    RoutingSpec,
    Slot,
)
from bgd_manager.plugins import HookName

logger = logging.getLogger(__name__)


class DeploymentController:
    """Top-level blue/green deployment state machine."""

    def __init__(self, context: DeploymentContext, coordinator: Optional[CutoverCoordinator] = None):
        self.ctx = context
        self.coordinator = coordinator or CutoverCoordinator(context)

    @property
    def app_name(self) -> str:
        return self.ctx.app_name

    def deploy(
        self,
        version: str,
        force: bool = False,
        path_routes: Optional[Dict[str, RouteTarget]] = None,
        subdomain_routes: Optional[Dict[str, RouteTarget]] = None,
    ) -> Deployment:
        """
        Deploy a version into the standby slot.

        Args:
            version: Image tag to deploy
            force: Replace the standby slot even if it is already running
            path_routes: URL prefix -> service routes
            subdomain_routes: Subdomain label -> service routes

        Returns:
            The deployment record, in shifting_traffic (or healthy with
            shifting disabled) awaiting cutover, or cutover if auto-cutover
            is enabled

        Raises:
            BGDError: On any fatal step, after the failure has been recorded
        """
        validate_version(version)
        settings = self.ctx.config
        if not settings.docker.image_repo:
            raise BGDError(ErrorCode.MISSING_PARAMETER, "Image repository is required (--image-repo)")

        active, target = self.ctx.registry.get_active_slot()
        # Unfinished records whose slot is gone can never be cut over
        for stale in self.ctx.state.in_flight():
            if not self.ctx.runtime.is_slot_running(self.app_name, stale.target_slot):
                stale.failure_reason = "Interrupted before completion"
                self.ctx.state.transition(stale, DeploymentStatus.FAILED, stale.failure_reason)

        deployment = Deployment(
            deployment_id=generate_deployment_id(self.app_name, version),
            app_name=self.app_name,
            version=version,
            target_slot=target,
            previous_slot=active,
        )
        self.ctx.state.save(deployment)
        self.ctx.state.add_event(
            deployment,
            DeploymentStatus.STARTED.value,
            f"Deploying {version} to {target.value} (active: {active.value})",
            {"version": version, "target": target.value, "active": active.value},
        )
        log_deployment_operation(
            "deploy", self.app_name, {"version": version, "target": target.value}
        )

        try:
            self._run(deployment, active, target, force, path_routes or {}, subdomain_routes or {})
        except BGDError as e:
            self._fail(deployment, e)
            raise
        except Exception as e:
            error = from_exception(e, "Deployment failed")
            logger.error(f"Unexpected deployment error: {e}", exc_info=True)
            self._fail(deployment, error)
            raise error from e
        return deployment

    def _run(
        self,
        deployment: Deployment,
        active: Slot,
        target: Slot,
        force: bool,
        path_routes: Dict[str, RouteTarget],
        subdomain_routes: Dict[str, RouteTarget],
    ) -> None:
        ctx = self.ctx
        settings = ctx.config
        version = deployment.version

        if not ctx.plugins.dispatch(HookName.PRE_DEPLOY, version, target.value):
            raise BGDError(
                ErrorCode.UNKNOWN,
                "Deployment blocked by a pre_deploy hook",
                suggestion="Check the plugin output in bgd.log.",
            )

        # Started: never silently replace a slot that is already running
        if ctx.runtime.is_slot_running(self.app_name, target):
            if not force:
                raise BGDError(
                    ErrorCode.ENVIRONMENT_START_FAILED,
                    f"The {target.value} slot already has running containers",
                    suggestion=(
                        f"Finish the in-flight deployment with 'cutover {target.value}' or "
                        "'rollback', or pass --force to replace it."
                    ),
                )
            logger.warning(f"--force given, stopping running {target.value} slot")
            ctx.state.supersede_in_flight(
                f"Superseded by {deployment.deployment_id}", exclude=deployment.deployment_id
            )
            # Take the target out of rotation before its containers go away
            live = ctx.state.load_routing()
            if live is not None and live.weight_for(target) > 0:
                ctx.apply_routing(live.dual(*initial_weights(target)))
            ctx.runtime.compose_down(
                self.app_name, target, ctx.compose_files(target), ctx.env_file(target)
            )

        # EnvironmentUp
        routing = self.build_routing(active, target, path_routes, subdomain_routes)
        env = ctx.compose.generate_env(
            target,
            version,
            settings.docker.image_repo,
            routing.ports,
            routing.domain,
            extra=ctx.plugins.env_entries(),
        )
        ctx.compose.write_env_file(target, env)
        ctx.compose.write_override(
            target,
            ctx.compose.generate_override(
                target, version, settings.docker.image_repo, routing, settings.ports.app_port
            ),
        )
        ctx.runtime.ensure_network(settings.docker.network_name(self.app_name), self.app_name)

        blue, green = initial_weights(target)
        ctx.apply_routing(routing.dual(blue, green))
        deployment.weights = {Slot.BLUE.value: blue, Slot.GREEN.value: green}

        base_compose = Path(settings.manager.compose_file).resolve()
        ctx.registry.record_slot(
            target,
            version=version,
            port=routing.ports.slot_port(target),
            compose_file=str(base_compose),
        )
        ctx.runtime.compose_up(
            self.app_name,
            target,
            ctx.compose_files(target),
            ctx.env_file(target),
            timeout=settings.docker.compose_timeout,
        )
        ctx.state.transition(
            deployment,
            DeploymentStatus.ENVIRONMENT_UP,
            f"{target.value} slot started",
            {"ports": routing.ports.ports},
        )
        ctx.plugins.dispatch(HookName.POST_ENV_START, version, target.value)

        # MigrationsApplied
        skipped = self._run_migrations(target)
        ctx.state.transition(
            deployment,
            DeploymentStatus.MIGRATIONS_APPLIED,
            "Migrations skipped" if skipped else "Migrations applied",
            {"skipped": skipped},
        )

        # Healthy
        result, report = ctx.check_slot(routing, target)
        if not result.healthy:
            raise BGDError(
                ErrorCode.HEALTH_CHECK_FAILED,
                f"{target.value} slot failed health check at {result.endpoint} "
                f"after {result.attempts} attempts",
                details={
                    "last_status": result.last_status,
                    "last_error": result.last_error,
                    "logs": result.logs,
                },
            )
        if not report.healthy:
            report_logs = (
                ctx.health.collect_logs(self.app_name, target)
                if settings.health.collect_logs
                else None
            )
            raise BGDError(
                ErrorCode.HEALTH_CHECK_FAILED,
                f"Not all services in {target.value} are healthy: {', '.join(report.failing) or 'none found'}",
                details={"services": report.breakdown(), "logs": report_logs},
            )
        ctx.state.transition(
            deployment,
            DeploymentStatus.HEALTHY,
            f"{target.value} slot is healthy",
            {"services": report.breakdown(), "attempts": result.attempts},
        )
        ctx.plugins.dispatch(HookName.POST_HEALTH, version, target.value)

        # ShiftingTraffic
        if settings.deployment.shift_traffic:
            self._shift_traffic(deployment, routing, target)
        else:
            logger.info("Traffic shifting disabled, target receives no traffic until cutover")

        if settings.deployment.auto_cutover:
            self.coordinator.cutover(target)
            refreshed = ctx.state.get(deployment.deployment_id)
            if refreshed is not None:
                deployment.status = refreshed.status
                deployment.updated_at = refreshed.updated_at
        else:
            logger.info(
                f"Deployment of {version} to {target.value} awaiting cutover "
                f"(run: cutover {target.value} --app-name={self.app_name})"
            )

    def build_routing(
        self,
        active: Slot,
        target: Slot,
        path_routes: Dict[str, RouteTarget],
        subdomain_routes: Dict[str, RouteTarget],
    ) -> RoutingSpec:
        """
        Resolve ports and assemble the routing spec for this deployment.

        Ports already held by the running active slot and the running proxy
        stay where they are.
        """
        ctx = self.ctx
        settings = ctx.config
        previous = ctx.state.load_routing()

        default_route = RouteTarget(service="app", port=settings.ports.app_port)
        paths: Dict[str, RouteTarget] = {}
        for name, route_target in path_routes.items():
            path = normalize_path(name)
            if path in paths:
                raise BGDError(ErrorCode.INVALID_PARAMETER, f"Duplicate route path '{path}'")
            paths[path] = route_target

        requested: Dict[str, int] = {
            PROXY_HTTP: settings.ports.nginx,
            PROXY_TLS: settings.ports.nginx_ssl,
            Slot.BLUE.value: settings.ports.blue,
            Slot.GREEN.value: settings.ports.green,
        }
        extra_targets = {
            t for t in list(paths.values()) + list(subdomain_routes.values()) if t != default_route
        }
        for route_target in sorted(extra_targets, key=lambda t: (t.service, t.port)):
            requested[PortAssignment.service_role(Slot.BLUE, route_target)] = route_target.port
            requested[PortAssignment.service_role(Slot.GREEN, route_target)] = (
                route_target.port + settings.ports.green_service_offset
            )

        if not settings.ports.auto_assign:
            ctx.ports.check_distinct(requested)

        keep = set()
        if previous is not None and ctx.runtime.is_slot_running(self.app_name, active):
            for role, port in previous.ports.ports.items():
                if role == active.value or role.startswith(f"{active.value}:"):
                    if role in requested:
                        if requested[role] != port:
                            logger.info(
                                f"Keeping {role} on port {port} (requested {requested[role]}), "
                                "it is serving traffic"
                            )
                        requested[role] = port
                        keep.add(role)
        if previous is not None and ctx.runtime.proxy_state(ctx.nginx.container_name) == "running":
            for role in (PROXY_HTTP, PROXY_TLS):
                requested[role] = previous.ports.ports.get(role, requested[role])
                keep.add(role)

        assignment = ctx.ports.allocate_all(
            requested, auto_assign=settings.ports.auto_assign, keep=keep
        )
        logger.info(f"Port assignment: {assignment.ports}")

        nginx = settings.nginx
        try:
            return RoutingSpec(
                mode=RoutingMode.SINGLE,
                target_slot=active,
                default_route=default_route,
                path_routes=paths,
                subdomain_routes=subdomain_routes,
                domain=nginx.domain,
                aliases=nginx.aliases,
                ssl=nginx.ssl,
                ssl_certificate=nginx.ssl_certificate,
                ssl_certificate_key=nginx.ssl_certificate_key,
                ports=assignment,
            )
        except ValueError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid routing: {e}")

    def _run_migrations(self, target: Slot) -> bool:
        """
        Run the migrations command inside the target slot.

        Returns:
            True if migrations were skipped
        """
        ctx = self.ctx
        settings = ctx.config.deployment
        if settings.skip_migrations or not settings.migrations_cmd.strip():
            logger.info("Skipping migrations")
            return True

        timeout = settings.migrations_timeout or None
        logger.info(f"Running migrations in {target.value}: {settings.migrations_cmd}")
        try:
            result = ctx.runtime.compose_exec(
                self.app_name,
                target,
                ctx.compose_files(target),
                ctx.env_file(target),
                settings.migrations_service,
                settings.migrations_cmd,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise BGDError(
                ErrorCode.DATABASE_ERROR,
                f"Migrations did not finish within {settings.migrations_timeout}s",
                suggestion="Raise --migrations-timeout or investigate the migration for locks.",
            )
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise BGDError(
                ErrorCode.DATABASE_ERROR,
                f"Migrations failed with exit code {result.returncode}: {output[-500:]}",
            )
        logger.info("Migrations completed")
        return False

    def _shift_traffic(self, deployment: Deployment, routing: RoutingSpec, target: Slot) -> None:
        ctx = self.ctx
        schedule = shift_schedule(target)
        ctx.state.transition(
            deployment,
            DeploymentStatus.SHIFTING_TRAFFIC,
            f"Shifting traffic to {target.value}",
            {"schedule": [list(step) for step in schedule]},
        )

        for index, (blue, green) in enumerate(schedule):
            ctx.apply_routing(routing.dual(blue, green))
            deployment.weights = {Slot.BLUE.value: blue, Slot.GREEN.value: green}
            ctx.state.save(deployment)
            ctx.state.add_event(
                deployment,
                "traffic_shift",
                f"Traffic split blue={blue} green={green}",
                {"blue": blue, "green": green, "step": index + 1},
            )
            log_deployment_operation(
                "traffic_shift", self.app_name, {"blue": blue, "green": green}
            )
            ctx.plugins.dispatch(
                HookName.POST_TRAFFIC_SHIFT, deployment.version, target.value, blue, green
            )
            if index < len(schedule) - 1:
                ctx.sleep(ctx.config.deployment.shift_step_delay)

    def _fail(self, deployment: Deployment, error: BGDError) -> None:
        """Record a fatal error, notify plugins and optionally roll back."""
        ctx = self.ctx
        logger.error(f"Deployment {deployment.deployment_id} failed: {error}")
        logger.error(f"Suggestion: {error.suggestion}")

        deployment.failure_reason = error.message
        deployment.error_code = error.code.value
        if deployment.can_transition(DeploymentStatus.FAILED):
            ctx.state.transition(
                deployment, DeploymentStatus.FAILED, error.message, error.to_dict()
            )
        else:
            ctx.state.save(deployment)
        ctx.state.add_event(deployment, "error", error.message, error.to_dict())
        ctx.plugins.dispatch(HookName.ERROR, error.code.value, error.message)
        log_deployment_operation("deploy_failed", self.app_name, error.to_dict(), level="ERROR")

        if not ctx.config.deployment.auto_rollback:
            return
        if not ctx.runtime.is_slot_running(self.app_name, deployment.previous_slot):
            logger.warning(
                f"Auto-rollback skipped: {deployment.previous_slot.value} slot is not running"
            )
            return
        logger.info(f"Auto-rollback to {deployment.previous_slot.value}")
        try:
            self.coordinator.rollback()
        except BGDError as rollback_error:
            logger.error(f"Auto-rollback failed: {rollback_error}")
