"""Port assignment model."""

from typing import TYPE_CHECKING, Dict

from pydantic import BaseModel, Field, field_validator

from bgd_manager.models.slot import Slot

if TYPE_CHECKING:
    from bgd_manager.models.routing import RouteTarget

PROXY_HTTP = "proxy_http"
PROXY_TLS = "proxy_tls"


class PortAssignment(BaseModel):
    """
    Logical role -> host port.

    Roles are proxy_http, proxy_tls, blue, green and, for every extra routed
    service, '<slot>:<service>:<container port>'.
    """

    ports: Dict[str, int] = Field(default_factory=dict)

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: Dict[str, int]) -> Dict[str, int]:
        seen: Dict[int, str] = {}
        for role, port in v.items():
            if not 1 <= port <= 65535:
                raise ValueError(f"Port {port} for {role} is outside 1-65535")
            if port in seen:
                raise ValueError(f"Port {port} assigned to both {seen[port]} and {role}")
            seen[port] = role
        return v

    @property
    def proxy_http(self) -> int:
        return self.ports[PROXY_HTTP]

    @property
    def proxy_tls(self) -> int:
        return self.ports[PROXY_TLS]

    def slot_port(self, slot: Slot) -> int:
        return self.ports[slot.value]

    @staticmethod
    def service_role(slot: Slot, target: "RouteTarget") -> str:
        return f"{slot.value}:{target.service}:{target.port}"

    def service_port(self, slot: Slot, target: "RouteTarget") -> int:
        return self.ports[self.service_role(slot, target)]
