"""Health check policy and result models."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HealthCheckPolicy(BaseModel):
    """How hard to try before declaring an endpoint unhealthy."""

    endpoint_path: str = Field(default="/health", description="Path probed on the slot")
    retries: int = Field(default=12, ge=1, description="Maximum number of probes")
    delay: float = Field(default=5.0, ge=0, description="Seconds between probes")
    timeout: float = Field(default=5.0, ge=0, description="Per-request timeout in seconds")
    backoff: bool = Field(default=False, description="Double the delay after each probe")

    def sleep_before(self, attempt: int) -> float:
        """Seconds to wait after probe number `attempt` (0-based) failed."""
        if self.backoff:
            return self.delay * (2**attempt)
        return self.delay

    def worst_case_wait(self) -> float:
        """Upper bound on time spent sleeping between probes."""
        return sum(self.sleep_before(i) for i in range(self.retries - 1))


class HealthResult(BaseModel):
    """Outcome of polling one endpoint."""

    healthy: bool
    endpoint: str
    attempts: int = 0
    last_status: Optional[int] = Field(None, description="Last HTTP status code seen")
    last_error: Optional[str] = Field(None, description="Last transport error seen")
    logs: Optional[str] = Field(None, description="Trailing container logs collected on failure")


class ServiceHealth(BaseModel):
    """Health of one service container in a slot."""

    service: str
    container: str
    state: str = Field(..., description="Container state (running, exited, ...)")
    health: Optional[str] = Field(None, description="Docker health status if a probe is defined")
    healthy: bool


class SlotHealthReport(BaseModel):
    """Aggregate of every service in a slot."""

    slot: str
    services: List[ServiceHealth] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and all(s.healthy for s in self.services)

    @property
    def failing(self) -> List[str]:
        return [s.service for s in self.services if not s.healthy]

    def breakdown(self) -> Dict[str, str]:
        return {s.service: (s.health or s.state) for s in self.services}
