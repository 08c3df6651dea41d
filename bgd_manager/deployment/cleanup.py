"""Removal of failed, superseded or all slot environments."""

import logging
from typing import List

from bgd_manager.deployment.context import DeploymentContext
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import DeploymentStatus, Slot
from bgd_manager.plugins import HookName

logger = logging.getLogger(__name__)

CLEANUP_MODES = ("default", "all", "failed", "old")

_DEAD_STATES = {"exited", "dead"}


class CleanupManager:
    """Tears down slots that no longer serve traffic."""

    def __init__(self, context: DeploymentContext):
        self.ctx = context

    def failed_slots(self, active: Slot) -> List[Slot]:
        """Non-active slots with dead containers or whose last deployment failed."""
        ctx = self.ctx
        latest = ctx.state.latest()
        slots = []
        for slot in Slot:
            if slot == active:
                continue
            containers = ctx.runtime.slot_containers(ctx.app_name, slot)
            dead = any(c.state in _DEAD_STATES for c in containers)
            failed = (
                latest is not None
                and latest.target_slot == slot
                and latest.status == DeploymentStatus.FAILED
            )
            if dead or failed:
                slots.append(slot)
        return slots

    def old_slots(self, active: Slot) -> List[Slot]:
        """The running standby slot, unless a deployment still needs it."""
        ctx = self.ctx
        standby = active.other
        if any(d.target_slot == standby for d in ctx.state.in_flight()):
            logger.info(f"{standby.value} has a deployment in progress, not removing it")
            return []
        if ctx.runtime.is_slot_running(ctx.app_name, standby):
            return [standby]
        return []

    def cleanup(self, mode: str = "default", dry_run: bool = False) -> List[str]:
        """
        Remove slot environments.

        Args:
            mode: 'failed', 'old', 'all', or 'default' (failed then old)
            dry_run: Report what would be removed without touching anything

        Returns:
            Descriptions of the actions taken (or that would be taken)
        """
        if mode not in CLEANUP_MODES:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Unknown cleanup mode '{mode}'")

        ctx = self.ctx
        active, _ = ctx.registry.get_active_slot()

        if mode == "all":
            targets = list(Slot)
        elif mode == "failed":
            targets = self.failed_slots(active)
        elif mode == "old":
            targets = self.old_slots(active)
        else:
            targets = self.failed_slots(active)
            targets += [s for s in self.old_slots(active) if s not in targets]

        actions = []
        prefix = "[dry-run] " if dry_run else ""
        for slot in targets:
            actions.append(f"{prefix}stop {slot.value} slot and remove its files")
            if dry_run:
                continue
            ctx.runtime.compose_down(
                ctx.app_name, slot, ctx.compose_files(slot), ctx.env_file(slot)
            )
            ctx.compose.remove_slot_files(slot)

        if mode == "all":
            actions.append(f"{prefix}remove proxy container {ctx.nginx.container_name}")
            if not dry_run:
                ctx.runtime.remove_container(ctx.nginx.container_name)

        actions.append(f"{prefix}prune unused images, volumes and networks")
        if not dry_run:
            ctx.runtime.prune(ctx.app_name, ctx.config.docker.image_prune_hours)
            ctx.state.add_event(
                None, "cleanup", f"Cleanup ({mode}) finished", {"slots": [s.value for s in targets]}
            )

        for action in actions:
            logger.info(action)
        ctx.plugins.dispatch(HookName.CLEANUP, mode)
        return actions
