"""
Pydantic models for bgd-manager.

These models provide typed data structures for slots, deployments,
routing, health checks and port assignments.
"""

from bgd_manager.models.deployment import (
    ALLOWED_TRANSITIONS,
    Deployment,
    DeploymentEvent,
    DeploymentStatus,
    InvalidStateTransition,
    utc_now,
)
from bgd_manager.models.health import (
    HealthCheckPolicy,
    HealthResult,
    ServiceHealth,
    SlotHealthReport,
)
from bgd_manager.models.ports import PROXY_HTTP, PROXY_TLS, PortAssignment
from bgd_manager.models.routing import (
    TOTAL_WEIGHT,
    Route,
    RouteTarget,
    RoutingMode,
    RoutingSpec,
)
from bgd_manager.models.slot import Slot, SlotState, SlotStatus

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Deployment",
    "DeploymentEvent",
    "DeploymentStatus",
    "InvalidStateTransition",
    "utc_now",
    "HealthCheckPolicy",
    "HealthResult",
    "ServiceHealth",
    "SlotHealthReport",
    "PROXY_HTTP",
    "PROXY_TLS",
    "PortAssignment",
    "TOTAL_WEIGHT",
    "Route",
    "RouteTarget",
    "RoutingMode",
    "RoutingSpec",
    "Slot",
    "SlotState",
    "SlotStatus",
]
