"""
Deployment orchestration.

Usage:
    context = DeploymentContext.create(app_name, config, plugins)
    DeploymentController(context).deploy("1.2.0")
    CutoverCoordinator(context).cutover(Slot.GREEN)
"""

from bgd_manager.deployment.cleanup import CLEANUP_MODES, CleanupManager
from bgd_manager.deployment.context import DeploymentContext
from bgd_manager.deployment.controller import DeploymentController
from bgd_manager.deployment.cutover import CutoverCoordinator
from bgd_manager.deployment.lock import AppLock
from bgd_manager.deployment.state import DeploymentState

__all__ = [
    "AppLock",
    "CLEANUP_MODES",
    "CleanupManager",
    "CutoverCoordinator",
    "DeploymentContext",
    "DeploymentController",
    "DeploymentState",
]
