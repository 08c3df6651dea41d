"""
Routing models.

RoutingSpec is the typed input to the proxy configuration renderer. It is
regenerated on every transition, never mutated in place.
"""

import re
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bgd_manager.models.ports import PortAssignment
from bgd_manager.models.slot import Slot

TOTAL_WEIGHT = 10

_SERVICE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_PATH_RE = re.compile(r"^/[A-Za-z0-9_./~-]*$")
_LABEL_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_SERVER_NAME_RE = re.compile(r"^(\*\.)?[A-Za-z0-9_]([A-Za-z0-9_.-]*[A-Za-z0-9_])?$")


def route_key(kind: str, match: str) -> str:
    """Upstream key of a path or subdomain route."""
    prefix = "path_" if kind == "path" else "sub_"
    return prefix + re.sub(r"[^A-Za-z0-9]+", "_", match).strip("_")


class RoutingMode(str, Enum):
    SINGLE = "single"
    DUAL = "dual"


class RouteTarget(BaseModel):
    """A service inside a slot and the container port it listens on."""

    model_config = ConfigDict(frozen=True)

    service: str = Field(..., description="Compose service name")
    port: int = Field(..., ge=1, le=65535, description="Container port")

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: str) -> str:
        if not _SERVICE_RE.match(v):
            raise ValueError(f"Invalid service name: {v!r}")
        return v


class Route(BaseModel):
    """A resolved route: its upstream key, kind and target."""

    model_config = ConfigDict(frozen=True)

    key: str
    kind: str  # default | path | subdomain
    match: str
    target: RouteTarget


class RoutingSpec(BaseModel):
    """Declarative description of how the proxy routes traffic to the slots."""

    mode: RoutingMode = Field(default=RoutingMode.SINGLE)
    target_slot: Optional[Slot] = Field(None, description="Slot receiving traffic in single mode")
    weight_blue: int = Field(default=TOTAL_WEIGHT, ge=0, description="Slot A weight in dual mode")
    weight_green: int = Field(default=0, ge=0, description="Slot B weight in dual mode")
    default_route: RouteTarget = Field(default_factory=lambda: RouteTarget(service="app", port=3000))
    path_routes: Dict[str, RouteTarget] = Field(
        default_factory=dict, description="URL prefix -> target"
    )
    subdomain_routes: Dict[str, RouteTarget] = Field(
        default_factory=dict, description="Subdomain label -> target"
    )
    domain: str = Field(default="localhost", description="Primary server name")
    aliases: List[str] = Field(default_factory=list, description="Additional server names")
    ssl: bool = Field(default=False, description="Terminate TLS on the proxy")
    ssl_certificate: Optional[str] = None
    ssl_certificate_key: Optional[str] = None
    ports: PortAssignment = Field(..., description="Host ports of both slots and the proxy")

    @field_validator("path_routes")
    @classmethod
    def validate_paths(cls, v: Dict[str, RouteTarget]) -> Dict[str, RouteTarget]:
        for path in v:
            if not _PATH_RE.match(path) or path == "/":
                raise ValueError(f"Invalid route path: {path!r}")
        return v

    @field_validator("subdomain_routes")
    @classmethod
    def validate_subdomains(cls, v: Dict[str, RouteTarget]) -> Dict[str, RouteTarget]:
        for label in v:
            if not _LABEL_RE.match(label):
                raise ValueError(f"Invalid subdomain label: {label!r}")
        return v

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        if not _SERVER_NAME_RE.match(v):
            raise ValueError(f"Invalid domain name: {v!r}")
        return v

    @field_validator("aliases")
    @classmethod
    def validate_aliases(cls, v: List[str]) -> List[str]:
        for alias in v:
            if not _SERVER_NAME_RE.match(alias):
                raise ValueError(f"Invalid domain alias: {alias!r}")
        return v

    @model_validator(mode="after")
    def validate_mode(self) -> "RoutingSpec":
        if self.mode == RoutingMode.SINGLE and self.target_slot is None:
            raise ValueError("Single routing mode requires a target slot")
        if self.mode == RoutingMode.DUAL and self.weight_blue + self.weight_green != TOTAL_WEIGHT:
            raise ValueError(
                f"Dual routing weights must sum to {TOTAL_WEIGHT}, "
                f"got {self.weight_blue}+{self.weight_green}"
            )
        if self.ssl and not (self.ssl_certificate and self.ssl_certificate_key):
            raise ValueError("TLS requires ssl_certificate and ssl_certificate_key")
        self._check_route_keys()
        return self

    def _check_route_keys(self) -> None:
        seen: Dict[str, str] = {}
        matches = [("path", p) for p in self.path_routes]
        matches += [("subdomain", s) for s in self.subdomain_routes]
        for kind, match in matches:
            key = route_key(kind, match)
            if key in seen:
                raise ValueError(f"Routes {seen[key]!r} and {match!r} map to the same upstream")
            seen[key] = match

    def single(self, slot: Slot) -> "RoutingSpec":
        """A copy routing all traffic to one slot."""
        return self.model_copy(update={"mode": RoutingMode.SINGLE, "target_slot": slot})

    def dual(self, weight_blue: int, weight_green: int) -> "RoutingSpec":
        """A copy splitting traffic between both slots, validated."""
        data = self.model_dump()
        data.update(
            {
                "mode": RoutingMode.DUAL,
                "target_slot": None,
                "weight_blue": weight_blue,
                "weight_green": weight_green,
            }
        )
        return RoutingSpec.model_validate(data)

    def weight_for(self, slot: Slot) -> int:
        if self.mode == RoutingMode.SINGLE:
            return TOTAL_WEIGHT if slot == self.target_slot else 0
        return self.weight_blue if slot == Slot.BLUE else self.weight_green

    @property
    def server_names(self) -> List[str]:
        return [self.domain] + [a for a in self.aliases if a != self.domain]

    def routes(self) -> Iterator[Route]:
        """Every route, default first, in a stable order."""
        yield Route(key="default", kind="default", match="/", target=self.default_route)
        for path in sorted(self.path_routes):
            yield Route(
                key=route_key("path", path), kind="path", match=path, target=self.path_routes[path]
            )
        for label in sorted(self.subdomain_routes):
            yield Route(
                key=route_key("subdomain", label),
                kind="subdomain",
                match=label,
                target=self.subdomain_routes[label],
            )

    def backend(self, slot: Slot, route: Route) -> Tuple[str, int]:
        """(role, host port) serving a route within a slot."""
        if route.kind == "default" or route.target == self.default_route:
            return slot.value, self.ports.slot_port(slot)
        return self.ports.service_role(slot, route.target), self.ports.service_port(
            slot, route.target
        )
