"""
Deployment state persistence.

Deployment records are rewritten atomically as a whole; every status
transition is also appended to an append-only JSONL event log.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from bgd_manager.environment_registry import atomic_write_text
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import (
    Deployment,
    DeploymentEvent,
    DeploymentStatus,
    RoutingSpec,
    utc_now,
)

logger = logging.getLogger(__name__)

DEPLOYMENTS_FILENAME = "deployments.json"
EVENTS_FILENAME = "events.jsonl"
ROUTING_FILENAME = "routing.json"

# Statuses only held while a deploy process is running
TRANSIENT_STATUSES = frozenset(
    {
        DeploymentStatus.STARTED,
        DeploymentStatus.ENVIRONMENT_UP,
        DeploymentStatus.MIGRATIONS_APPLIED,
        DeploymentStatus.HEALTHY,
    }
)


class DeploymentState:
    """
    Persistent storage of one application's deployments.

    Handles serialization of deployment records, the event log and the
    last applied routing spec.
    """

    def __init__(self, app_name: str, app_dir: Path, history_limit: int = 50) -> None:
        """
        Initialize deployment state.

        Args:
            app_name: Application name
            app_dir: Application state directory
            history_limit: Number of deployment records kept
        """
        self.app_name = app_name
        self.app_dir = Path(app_dir)
        self.deployments_file = self.app_dir / DEPLOYMENTS_FILENAME
        self.events_file = self.app_dir / EVENTS_FILENAME
        self.routing_file = self.app_dir / ROUTING_FILENAME
        self.history_limit = history_limit

    # Deployment records

    def load(self) -> Dict[str, Deployment]:
        """Load deployment records, oldest first."""
        if not self.deployments_file.exists():
            return {}
        try:
            with open(self.deployments_file, "r") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Deployment state {self.deployments_file} is corrupt: {e}")
            return {}

        deployments: Dict[str, Deployment] = {}
        for data in raw.get("deployments", []):
            try:
                deployment = Deployment.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid deployment record: {e}")
                continue
            deployments[deployment.deployment_id] = deployment
        return deployments

    def save(self, deployment: Deployment) -> None:
        """Insert or update a deployment record."""
        deployments = self.load()
        deployments[deployment.deployment_id] = deployment
        records = sorted(deployments.values(), key=lambda d: d.requested_at)
        records = records[-self.history_limit :]
        state = {
            "app_name": self.app_name,
            "deployments": [d.model_dump(mode="json") for d in records],
            "saved_at": utc_now(),
        }
        try:
            atomic_write_text(self.deployments_file, json.dumps(state, indent=2))
        except PermissionError as e:
            raise BGDError(
                ErrorCode.PERMISSION_DENIED, f"Cannot write {self.deployments_file}: {e}"
            )
        logger.debug(f"Saved deployment {deployment.deployment_id} ({deployment.status.value})")

    def get(self, deployment_id: str) -> Optional[Deployment]:
        return self.load().get(deployment_id)

    def latest(self) -> Optional[Deployment]:
        deployments = self.load()
        if not deployments:
            return None
        return max(deployments.values(), key=lambda d: d.requested_at)

    def in_flight(self) -> List[Deployment]:
        return [d for d in self.load().values() if not d.is_terminal]

    # Event log

    def append_event(self, event: DeploymentEvent) -> None:
        self.app_dir.mkdir(parents=True, exist_ok=True)
        with open(self.events_file, "a") as f:
            f.write(event.model_dump_json() + "\n")

    def add_event(
        self,
        deployment: Optional[Deployment],
        event_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> DeploymentEvent:
        """
        Append an event to the log.

        Args:
            deployment: Deployment the event belongs to, if any
            event_type: Event type
            message: Human-readable description
            details: Structured details
        """
        event = DeploymentEvent(
            app_name=self.app_name,
            deployment_id=deployment.deployment_id if deployment else None,
            event_type=event_type,
            status=deployment.status if deployment else None,
            message=message,
            details=details or {},
        )
        self.append_event(event)
        return event

    def events(
        self, deployment_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DeploymentEvent]:
        """Read events, optionally for one deployment, newest last."""
        if not self.events_file.exists():
            return []
        events = []
        with open(self.events_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = DeploymentEvent.model_validate_json(line)
                except ValidationError:
                    logger.debug("Skipping malformed event log line")
                    continue
                if deployment_id is None or event.deployment_id == deployment_id:
                    events.append(event)
        return events[-limit:] if limit else events

    def transition(
        self,
        deployment: Deployment,
        status: DeploymentStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> DeploymentEvent:
        """Advance a deployment, persist it and log the transition."""
        deployment.transition(status)
        self.save(deployment)
        logger.info(f"[{self.app_name}] {deployment.deployment_id}: {status.value} - {message}")
        return self.add_event(deployment, status.value, message, details)

    def supersede_in_flight(
        self, reason: str, exclude: Optional[str] = None
    ) -> List[Deployment]:
        """Mark every unfinished deployment except `exclude` as failed."""
        superseded = []
        for deployment in self.in_flight():
            if deployment.deployment_id == exclude:
                continue
            deployment.failure_reason = reason
            self.transition(deployment, DeploymentStatus.FAILED, reason)
            superseded.append(deployment)
        return superseded

    # Routing

    def save_routing(self, spec: RoutingSpec) -> None:
        atomic_write_text(self.routing_file, spec.model_dump_json(indent=2))

    def load_routing(self) -> Optional[RoutingSpec]:
        if not self.routing_file.exists():
            return None
        try:
            return RoutingSpec.model_validate_json(self.routing_file.read_text())
        except ValidationError as e:
            logger.warning(f"Ignoring invalid routing state {self.routing_file}: {e}")
            return None
