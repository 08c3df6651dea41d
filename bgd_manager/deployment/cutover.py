"""
Cutover and rollback.

Cutover finalizes a deployment: all traffic to the target, the old slot
retired. Rollback sends all traffic back to the slot that served it before
the most recent deployment started shifting and leaves the abandoned slot
running.
"""

import logging
from typing import Optional

from bgd_manager.compose_generator import parse_env_file
from bgd_manager.deployment.context import DeploymentContext
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.logging_config import log_deployment_operation
from bgd_manager.models import Deployment, DeploymentStatus, RoutingMode, Slot
from bgd_manager.plugins import HookName

logger = logging.getLogger(__name__)


class CutoverCoordinator:
    """Finalizes or reverts deployments for one application."""

    def __init__(self, context: DeploymentContext):
        self.ctx = context

    @property
    def app_name(self) -> str:
        return self.ctx.app_name

    def is_cut_over(self, target: Slot) -> bool:
        """True if the marker and the live proxy already send everything to target."""
        active = self.ctx.registry.store.get()
        if active != target:
            return False
        live = self.ctx.nginx.live_routing()
        return live is None or (live[0] == RoutingMode.SINGLE and live[1] == target)

    def cutover(self, target: Slot, keep_old: Optional[bool] = None) -> bool:
        """
        Send 100% of traffic to target and retire the other slot.

        Args:
            target: Slot to finalize
            keep_old: Leave the old slot's containers and files in place;
                defaults to the deployment.keep_old setting

        Returns:
            False if target was already active and nothing was done

        Raises:
            BGDError: environment_start_failed if target is not running,
                health_check_failed if it is unhealthy (routing untouched)
        """
        ctx = self.ctx
        if keep_old is None:
            keep_old = ctx.config.deployment.keep_old
        old = target.other

        if self.is_cut_over(target):
            logger.info(f"{target.value} is already active for {self.app_name}, nothing to do")
            return False

        if not ctx.plugins.dispatch(HookName.PRE_CUTOVER, target.value, old.value):
            raise BGDError(ErrorCode.UNKNOWN, "Cutover blocked by a pre_cutover hook")

        if not ctx.runtime.is_slot_running(self.app_name, target):
            raise BGDError(
                ErrorCode.ENVIRONMENT_START_FAILED,
                f"Cannot cut over to {target.value}: no running containers",
                suggestion=f"Deploy to {target.value} first, or roll back.",
            )

        spec = ctx.require_routing()
        result, report = ctx.check_slot(spec, target)
        if not result.healthy or not report.healthy:
            raise BGDError(
                ErrorCode.HEALTH_CHECK_FAILED,
                f"Cannot cut over to {target.value}: slot is unhealthy",
                details={
                    "endpoint": result.endpoint,
                    "last_status": result.last_status,
                    "services": report.breakdown(),
                },
            )

        ctx.apply_routing(spec.single(target))
        drain = ctx.config.deployment.drain_seconds
        if drain:
            logger.info(f"Waiting {drain}s for connections to {old.value} to drain")
            ctx.sleep(drain)
        ctx.registry.set_active(target)

        if keep_old:
            logger.info(f"Keeping {old.value} slot running (--keep-old)")
        else:
            ctx.runtime.compose_down(
                self.app_name, old, ctx.compose_files(old), ctx.env_file(old)
            )
            ctx.compose.remove_slot_files(old)

        deployment = self._current_deployment(target)
        if deployment is not None:
            ctx.state.transition(
                deployment,
                DeploymentStatus.CUTOVER,
                f"{target.value} is now serving all traffic",
                {"retired": None if keep_old else old.value},
            )
        else:
            ctx.state.add_event(
                None, "cutover", f"{target.value} is now serving all traffic", {"slot": target.value}
            )
        log_deployment_operation(
            "cutover", self.app_name, {"target": target.value, "keep_old": keep_old}
        )
        ctx.plugins.dispatch(HookName.POST_CUTOVER, target.value, old.value)
        return True

    def _current_deployment(self, target: Slot) -> Optional[Deployment]:
        for deployment in reversed(self.ctx.state.in_flight()):
            if deployment.target_slot == target and deployment.can_transition(
                DeploymentStatus.CUTOVER
            ):
                return deployment
        return None

    def rollback_target(self) -> Slot:
        """
        Slot that served all traffic before the most recent deployment.

        Falls back to the standby slot when there is no usable record.
        """
        latest = self.ctx.state.latest()
        _, standby = self.ctx.registry.get_active_slot()
        if latest is None or latest.status == DeploymentStatus.ROLLED_BACK:
            return standby
        return latest.previous_slot

    def rollback(self, force: bool = False) -> Slot:
        """
        Route all traffic back to the previously active slot.

        Args:
            force: Proceed even if the rollback slot fails its health check

        Returns:
            The slot now serving traffic
        """
        ctx = self.ctx
        target = self.rollback_target()
        abandoned = target.other
        latest = ctx.state.latest()

        if not ctx.plugins.dispatch(HookName.PRE_ROLLBACK, target.value, abandoned.value):
            raise BGDError(ErrorCode.UNKNOWN, "Rollback blocked by a pre_rollback hook")

        logger.info(f"Rolling back {self.app_name} to {target.value}")
        if not ctx.runtime.is_slot_running(self.app_name, target):
            env_file = ctx.env_file(target)
            if not env_file.exists():
                raise BGDError(
                    ErrorCode.FILE_NOT_FOUND,
                    f"Cannot restart {target.value}: {env_file} is missing",
                    suggestion="Deploy a known-good version instead.",
                )
            logger.info(f"Starting {target.value} from its last environment file")
            ctx.runtime.compose_up(
                self.app_name,
                target,
                ctx.compose_files(target),
                env_file,
                timeout=ctx.config.docker.compose_timeout,
            )
            version = parse_env_file(env_file).get("VERSION")
            if version:
                ctx.registry.record_slot(target, version=version)

        spec = ctx.require_routing()
        result, report = ctx.check_slot(spec, target)
        if not result.healthy or not report.healthy:
            if not force:
                raise BGDError(
                    ErrorCode.HEALTH_CHECK_FAILED,
                    f"Rollback slot {target.value} is unhealthy",
                    suggestion="Investigate the slot, or pass --force to roll back anyway.",
                    details={"services": report.breakdown()},
                )
            logger.warning(f"{target.value} is unhealthy, rolling back anyway (--force)")

        ctx.apply_routing(spec.single(target))
        ctx.registry.set_active(target)

        if latest is not None and latest.can_transition(DeploymentStatus.ROLLED_BACK):
            ctx.state.transition(
                latest,
                DeploymentStatus.ROLLED_BACK,
                f"Traffic returned to {target.value}",
                {"abandoned": abandoned.value, "forced": force},
            )
        else:
            ctx.state.add_event(
                None,
                "rollback",
                f"Traffic returned to {target.value}",
                {"abandoned": abandoned.value, "forced": force},
            )
        log_deployment_operation(
            "rollback", self.app_name, {"target": target.value, "abandoned": abandoned.value}
        )
        ctx.plugins.dispatch(HookName.POST_ROLLBACK, target.value, abandoned.value)
        return target
