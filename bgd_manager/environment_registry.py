"""
Active/standby registry for blue/green slots.

The persisted marker can drift from reality after a crash, so the active
slot is reconciled against what the proxy routes to and which slot's
containers are actually running. Observed reality always wins and the
marker is rewritten to match.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Set, Tuple, runtime_checkable

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import (
    Deployment,
    DeploymentStatus,
    RoutingMode,
    Slot,
    SlotState,
    SlotStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

MARKER_FILENAME = "active-env"
METADATA_FILENAME = "slots.json"


@runtime_checkable
class StateStore(Protocol):
    """Durable home of the active-slot marker."""

    def get(self) -> Optional[Slot]:
        """
        Read the marker.

        Promises:
        - Returns None when no marker exists or it is unreadable
        - Never returns a value that was only partially written
        """
        ...

    def set(self, slot: Slot) -> None:
        """
        Persist the marker.

        Promises:
        - Replaces the previous value atomically
        """
        ...

    def reconcile(self, observed: Optional[Slot]) -> Optional[Slot]:
        """
        Align the marker with an observed active slot.

        Promises:
        - Rewrites the marker when observed differs from it
        - Leaves the marker alone when observed is None
        - Returns the marker value after reconciliation
        """
        ...


class SlotProbe(Protocol):
    def is_slot_running(self, app_name: str, slot: Slot) -> bool: ...

    def slot_version(self, app_name: str, slot: Slot) -> Optional[str]: ...


class RoutingProbe(Protocol):
    def live_routing(self) -> Optional[Tuple[RoutingMode, Optional[Slot], Tuple[int, int]]]: ...


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """Write a file via a temp file in the same directory and rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class FileMarkerStore:
    """Marker kept as a one-word text file ('blue' or 'green')."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def get(self) -> Optional[Slot]:
        if not self.path.is_file():
            return None
        try:
            return Slot.parse(self.path.read_text())
        except ValueError:
            logger.warning(f"Ignoring unreadable marker {self.path}")
            return None

    def set(self, slot: Slot) -> None:
        try:
            atomic_write_text(self.path, f"{slot.value}\n")
        except PermissionError as e:
            raise BGDError(ErrorCode.PERMISSION_DENIED, f"Cannot write marker {self.path}: {e}")
        logger.debug(f"Marker {self.path} set to {slot.value}")

    def reconcile(self, observed: Optional[Slot]) -> Optional[Slot]:
        current = self.get()
        if observed is None or observed == current:
            return current
        logger.warning(
            f"Active marker says {current.value if current else 'nothing'} but "
            f"{observed.value} is serving traffic, rewriting marker"
        )
        self.set(observed)
        return observed


class EnvironmentRegistry:
    """Which slot is active, which is standby, and what each one runs."""

    def __init__(
        self,
        app_name: str,
        app_dir: Path,
        store: Optional[StateStore] = None,
        runtime: Optional[SlotProbe] = None,
        routing: Optional[RoutingProbe] = None,
    ):
        """
        Initialize registry.

        Args:
            app_name: Application name
            app_dir: Application state directory
            store: Marker store, a FileMarkerStore under app_dir by default
            runtime: Probe for running slot containers
            routing: Probe for the live proxy routing
        """
        self.app_name = app_name
        self.app_dir = Path(app_dir)
        self.store = store or FileMarkerStore(self.app_dir / MARKER_FILENAME)
        self.runtime = runtime
        self.routing = routing
        self.metadata_path = self.app_dir / METADATA_FILENAME

    def running_slots(self) -> Set[Slot]:
        if self.runtime is None:
            return set()
        return {slot for slot in Slot if self.runtime.is_slot_running(self.app_name, slot)}

    def routed_slot(self) -> Optional[Slot]:
        """Slot the live config sends all traffic to; None while traffic is split."""
        if self.routing is None:
            return None
        live = self.routing.live_routing()
        if live is None:
            return None
        mode, target, _ = live
        return target if mode == RoutingMode.SINGLE else None

    def observe(self) -> Optional[Slot]:
        """
        Active slot according to observed reality.

        The proxy's single-target routing counts if that slot is running;
        otherwise the only running slot counts. Returns None when reality is
        ambiguous (both or neither running, traffic split).
        """
        running = self.running_slots() if self.runtime is not None else None
        routed = self.routed_slot()

        if routed is not None and (running is None or routed in running):
            return routed
        if running is not None and len(running) == 1:
            return next(iter(running))
        return None

    def get_active_slot(self) -> Tuple[Slot, Slot]:
        """
        Resolve (active, standby).

        Consults the marker, the live routing config and running containers,
        rewriting the marker whenever observation disagrees with it. With no
        information at all, blue is active.
        """
        observed = self.observe()
        marker = self.store.reconcile(observed)
        active = observed or marker or Slot.BLUE
        if marker is None and observed is None:
            logger.info(f"No active marker for {self.app_name}, assuming {active.value}")
        return active, active.other

    def set_active(self, slot: Slot) -> None:
        self.store.set(slot)
        self._update_metadata(slot, {"activated_at": utc_now()})
        logger.info(f"{self.app_name}: {slot.value} is now active")

    # Per-slot runtime metadata

    def load_metadata(self) -> Dict[str, Dict[str, Any]]:
        if not self.metadata_path.is_file():
            return {}
        try:
            with open(self.metadata_path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable slot metadata {self.metadata_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def record_slot(self, slot: Slot, **values: Any) -> None:
        """Merge values (port, version, ...) into a slot's metadata."""
        values["updated_at"] = utc_now()
        self._update_metadata(slot, values)

    def slot_metadata(self, slot: Slot) -> Dict[str, Any]:
        return self.load_metadata().get(slot.value, {})

    def _update_metadata(self, slot: Slot, values: Dict[str, Any]) -> None:
        data = self.load_metadata()
        data.setdefault(slot.value, {}).update(values)
        atomic_write_text(self.metadata_path, json.dumps(data, indent=2, sort_keys=True))

    # Derived status

    def describe_slots(self, latest: Optional[Deployment] = None) -> Dict[Slot, SlotState]:
        """
        Derive each slot's lifecycle status from the registry, runtime probes,
        live routing and the latest deployment record.
        """
        active, _ = self.get_active_slot()
        running = self.running_slots()
        live = self.routing.live_routing() if self.routing is not None else None
        in_flight = latest if latest is not None and not latest.is_terminal else None

        states: Dict[Slot, SlotState] = {}
        for slot in Slot:
            meta = self.slot_metadata(slot)
            state = SlotState(
                slot=slot,
                port=meta.get("port"),
                version=meta.get("version") or self._running_version(slot, running),
                running=slot in running,
            )
            state.status, state.weight = self._derive_status(
                slot, active, slot in running, live, in_flight, latest
            )
            states[slot] = state
        return states

    def _running_version(self, slot: Slot, running: Set[Slot]) -> Optional[str]:
        if self.runtime is None or slot not in running:
            return None
        return self.runtime.slot_version(self.app_name, slot)

    @staticmethod
    def _derive_status(slot, active, running, live, in_flight, latest):
        if latest is not None and latest.target_slot == slot:
            if latest.status == DeploymentStatus.FAILED and slot != active:
                return SlotStatus.FAILED, None
        if in_flight is not None and in_flight.target_slot == slot:
            phase = {
                DeploymentStatus.STARTED: SlotStatus.STARTING,
                DeploymentStatus.ENVIRONMENT_UP: SlotStatus.MIGRATING_DATA,
                DeploymentStatus.MIGRATIONS_APPLIED: SlotStatus.HEALTH_CHECKING,
            }.get(in_flight.status)
            if phase is not None:
                return phase, None
        if not running:
            return SlotStatus.IDLE, None
        if live is not None and live[0] == RoutingMode.DUAL:
            weight = live[2][0] if slot == Slot.BLUE else live[2][1]
            if slot == active and weight == sum(live[2]):
                return SlotStatus.ACTIVE, None
            return SlotStatus.RECEIVING, weight
        if slot == active:
            return SlotStatus.ACTIVE, None
        return SlotStatus.DRAINING, None
