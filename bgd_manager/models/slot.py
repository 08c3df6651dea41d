"""
Slot models.

A slot is one of the two interchangeable runtime instances of an
application. Slot status is always derived from the registry and runtime
probes, never persisted on its own.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Slot(str, Enum):
    """Slot identity. Blue is slot A, green is slot B."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Slot":
        """The opposite slot."""
        return Slot.GREEN if self is Slot.BLUE else Slot.BLUE

    @classmethod
    def parse(cls, name: str) -> "Slot":
        """Parse a slot name, accepting a/b aliases and any case."""
        normalized = (name or "").strip().lower()
        aliases = {"a": cls.BLUE, "b": cls.GREEN}
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown slot '{name}', expected 'blue' or 'green'") from None


class SlotStatus(str, Enum):
    """Lifecycle status of a slot."""

    IDLE = "idle"
    STARTING = "starting"
    MIGRATING_DATA = "migrating_data"
    HEALTH_CHECKING = "health_checking"
    RECEIVING = "receiving"
    ACTIVE = "active"
    DRAINING = "draining"
    FAILED = "failed"


class SlotState(BaseModel):
    """Point-in-time view of a slot."""

    slot: Slot = Field(..., description="Slot identity")
    status: SlotStatus = Field(default=SlotStatus.IDLE, description="Derived lifecycle status")
    port: Optional[int] = Field(None, description="Host port the slot's primary service listens on")
    version: Optional[str] = Field(None, description="Version tag running in the slot")
    weight: Optional[int] = Field(
        None, ge=0, description="Traffic weight while status is receiving"
    )
    running: bool = Field(default=False, description="Whether any slot container is running")

    def describe(self) -> str:
        """Short human-readable status, e.g. 'receiving(9)'."""
        if self.status == SlotStatus.RECEIVING and self.weight is not None:
            return f"{self.status.value}({self.weight})"
        return self.status.value
