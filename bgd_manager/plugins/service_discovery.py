"""
Service discovery plugin.

Keeps a JSON registry describing which slot of each application serves
traffic, which one is the rollback target and how traffic is split, and
optionally publishes it to a remote registry.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import httpx

from bgd_manager.environment_registry import atomic_write_text
from bgd_manager.models import TOTAL_WEIGHT, utc_now
from bgd_manager.plugins.base import HookCallable, HookName, Plugin

logger = logging.getLogger(__name__)


class ServiceDiscoveryPlugin(Plugin):
    name = "service_discovery"
    description = "JSON service registry of active and rollback slots"

    def __init__(self, http_client: Optional[httpx.Client] = None):
        super().__init__()
        self.http_client = http_client

    def arguments(self) -> Dict[str, str]:
        return {
            "SERVICE_REGISTRY_ENABLED": "true",
            "SERVICE_REGISTRY_URL": "",
            "SERVICE_AUTO_GENERATE_URLS": "true",
            "SERVICE_REGISTRY_FILE": "service-registry.json",
        }

    def hooks(self) -> Mapping[HookName, HookCallable]:
        return {
            HookName.POST_HEALTH: self.on_post_health,
            HookName.POST_TRAFFIC_SHIFT: self.on_post_traffic_shift,
            HookName.POST_CUTOVER: self.on_post_cutover,
            HookName.POST_ROLLBACK: self.on_post_rollback,
        }

    @property
    def registry_path(self) -> Path:
        path = Path(self.arg("SERVICE_REGISTRY_FILE", "service-registry.json"))
        if not path.is_absolute():
            path = self.context.app_dir / path
        return path

    def load(self) -> Dict[str, Any]:
        if not self.registry_path.exists():
            return {"services": {}}
        try:
            data = json.loads(self.registry_path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(f"Service registry {self.registry_path} is corrupt, recreating: {e}")
            return {"services": {}}
        data.setdefault("services", {})
        return data

    def service_url(self) -> str:
        if not self.flag("SERVICE_AUTO_GENERATE_URLS"):
            return ""
        ctx = self.context
        scheme = "https" if ctx.ssl else "http"
        return f"{scheme}://{ctx.domain or 'localhost'}"

    def update(self, **fields: Any) -> bool:
        if not self.flag("SERVICE_REGISTRY_ENABLED"):
            return True

        data = self.load()
        entry = data["services"].setdefault(self.context.app_name, {})
        entry.update(fields)
        entry["url"] = self.service_url() or entry.get("url", "")
        entry["updated_at"] = utc_now()
        try:
            atomic_write_text(self.registry_path, json.dumps(data, indent=2, sort_keys=True))
        except OSError as e:
            logger.error(f"Failed to write service registry {self.registry_path}: {e}")
            return False
        return self.publish(entry)

    def publish(self, entry: Dict[str, Any]) -> bool:
        url = self.arg("SERVICE_REGISTRY_URL")
        if not url:
            return True
        payload = {"name": self.context.app_name, **entry}
        target = f"{url.rstrip('/')}/services/{self.context.app_name}"
        try:
            if self.http_client is not None:
                response = self.http_client.put(target, json=payload, timeout=10)
            else:
                with httpx.Client(timeout=10) as client:
                    response = client.put(target, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to publish to service registry {target}: {e}")
            return False
        return True

    def on_post_health(self, version: str, target_slot: str, *_: Any) -> bool:
        return self.update(candidate={"slot": target_slot, "version": version})

    def on_post_traffic_shift(
        self, version: str, target_slot: str, weight_blue: int, weight_green: int, *_: Any
    ) -> bool:
        return self.update(traffic={"blue": int(weight_blue), "green": int(weight_green)})

    def on_post_cutover(self, target_slot: str, old_slot: str, *_: Any) -> bool:
        candidate = self.load()["services"].get(self.context.app_name, {}).get("candidate") or {}
        version = candidate.get("version") if candidate.get("slot") == target_slot else None
        fields: Dict[str, Any] = {
            "active": target_slot,
            "rollback": old_slot,
            "candidate": None,
            "traffic": {target_slot: TOTAL_WEIGHT, old_slot: 0},
            "registered_at": utc_now(),
        }
        if version:
            fields["version"] = version
        return self.update(**fields)

    def on_post_rollback(self, rollback_slot: str, abandoned_slot: str, *_: Any) -> bool:
        traffic = {rollback_slot: TOTAL_WEIGHT, abandoned_slot: 0}
        return self.update(active=rollback_slot, rollback=abandoned_slot, candidate=None, traffic=traffic)
