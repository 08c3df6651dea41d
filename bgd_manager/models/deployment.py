"""
Deployment record and event models.

A deployment is created when a deploy is requested and advances through a
fixed sequence of statuses. Every transition is recorded as an event in the
append-only event log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from bgd_manager.models.slot import Slot


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status."""

    STARTED = "started"
    ENVIRONMENT_UP = "environment_up"
    MIGRATIONS_APPLIED = "migrations_applied"
    HEALTHY = "healthy"
    SHIFTING_TRAFFIC = "shifting_traffic"
    CUTOVER = "cutover"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.CUTOVER, DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED}
)

# Failed and rolled_back are reachable from every in-flight status. A cutover
# or failed deployment can still be rolled back afterwards.
ALLOWED_TRANSITIONS: Dict[DeploymentStatus, frozenset] = {
    DeploymentStatus.STARTED: frozenset(
        {DeploymentStatus.ENVIRONMENT_UP, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}
    ),
    DeploymentStatus.ENVIRONMENT_UP: frozenset(
        {
            DeploymentStatus.MIGRATIONS_APPLIED,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
        }
    ),
    DeploymentStatus.MIGRATIONS_APPLIED: frozenset(
        {DeploymentStatus.HEALTHY, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}
    ),
    DeploymentStatus.HEALTHY: frozenset(
        {
            DeploymentStatus.SHIFTING_TRAFFIC,
            DeploymentStatus.CUTOVER,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
        }
    ),
    DeploymentStatus.SHIFTING_TRAFFIC: frozenset(
        {DeploymentStatus.CUTOVER, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}
    ),
    DeploymentStatus.CUTOVER: frozenset({DeploymentStatus.ROLLED_BACK}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.ROLLED_BACK}),
    DeploymentStatus.ROLLED_BACK: frozenset(),
}


class InvalidStateTransition(ValueError):
    """Raised when a deployment is moved to a status it cannot reach."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Deployment(BaseModel):
    """A single deploy request and its progress."""

    deployment_id: str = Field(..., description="Unique deployment identifier")
    app_name: str = Field(..., description="Application name")
    version: str = Field(..., description="Version tag being deployed")
    target_slot: Slot = Field(..., description="Slot receiving the new version")
    previous_slot: Slot = Field(
        ..., description="Slot serving all traffic before the first traffic shift"
    )
    requested_at: str = Field(default_factory=utc_now, description="ISO 8601 request time")
    updated_at: str = Field(default_factory=utc_now, description="ISO 8601 last update time")
    status: DeploymentStatus = Field(default=DeploymentStatus.STARTED)
    failure_reason: Optional[str] = Field(None, description="Message of the fatal error")
    error_code: Optional[str] = Field(None, description="Error taxonomy code of the failure")
    weights: Optional[Dict[str, int]] = Field(
        None, description="Last rendered traffic weights by slot name"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition(self, new_status: DeploymentStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: DeploymentStatus, now: Optional[str] = None) -> "Deployment":
        """
        Move to a new status.

        Args:
            new_status: Target status
            now: Timestamp override

        Returns:
            self, for chaining

        Raises:
            InvalidStateTransition: If the move is not allowed
        """
        if new_status == self.status:
            return self
        if not self.can_transition(new_status):
            raise InvalidStateTransition(
                f"Cannot transition deployment {self.deployment_id} "
                f"from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = now or utc_now()
        return self


class DeploymentEvent(BaseModel):
    """One line of the append-only event log."""

    timestamp: str = Field(default_factory=utc_now, description="ISO 8601 timestamp")
    app_name: str = Field(..., description="Application name")
    deployment_id: Optional[str] = Field(None, description="Deployment the event belongs to")
    event_type: str = Field(
        ..., description="Event type (status name, 'traffic_shift', 'cutover', 'error', ...)"
    )
    status: Optional[DeploymentStatus] = Field(None, description="Deployment status after event")
    message: str = Field(..., description="Human-readable event description")
    details: Dict[str, Any] = Field(default_factory=dict, description="Structured details")
