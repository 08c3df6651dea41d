"""
Webhook notification plugin.

Posts deployment milestones and errors to Slack and/or a generic JSON
webhook. Delivery failures are reported but never block a deployment.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from bgd_manager.plugins.base import HookCallable, HookName, Plugin

logger = logging.getLogger(__name__)

COLORS = {"success": "#36a64f", "warning": "#ff9900", "error": "#ff0000", "info": "#439fe0"}


class NotificationsPlugin(Plugin):
    name = "notifications"
    description = "Slack and webhook notifications for deployment events"

    def __init__(self, http_client: Optional[httpx.Client] = None):
        super().__init__()
        self.http_client = http_client

    def arguments(self) -> Dict[str, str]:
        return {
            "NOTIFY_ENABLED": "false",
            "NOTIFY_LEVELS": "success,error,warning",
            "NOTIFY_SLACK_WEBHOOK_URL": "",
            "NOTIFY_WEBHOOK_URL": "",
            "NOTIFY_WEBHOOK_AUTH": "",
            "NOTIFY_TIMEOUT": "10",
        }

    def hooks(self) -> Mapping[HookName, HookCallable]:
        return {
            HookName.POST_HEALTH: self.on_post_health,
            HookName.POST_CUTOVER: self.on_post_cutover,
            HookName.POST_ROLLBACK: self.on_post_rollback,
            HookName.ERROR: self.on_error,
        }

    def on_post_health(self, version: str, target_slot: str, *_: Any) -> bool:
        return self.notify(
            f"Version {version} is healthy in {target_slot}, shifting traffic", "info"
        )

    def on_post_cutover(self, target_slot: str, old_slot: str, *_: Any) -> bool:
        return self.notify(
            f"Cutover complete: {target_slot} now serves 100% of traffic (was {old_slot})",
            "success",
        )

    def on_post_rollback(self, rollback_slot: str, abandoned_slot: str, *_: Any) -> bool:
        return self.notify(
            f"Rolled back to {rollback_slot}, {abandoned_slot} no longer receives traffic",
            "warning",
        )

    def on_error(self, error_code: str, message: str, *_: Any) -> bool:
        return self.notify(f"Deployment error [{error_code}]: {message}", "error")

    def _levels(self) -> List[str]:
        return [lvl.strip() for lvl in self.arg("NOTIFY_LEVELS").split(",") if lvl.strip()]

    def notify(self, message: str, level: str) -> bool:
        """
        Send a message to every configured channel.

        Returns:
            False if any configured channel rejected the message
        """
        if not self.flag("NOTIFY_ENABLED"):
            return True
        if level != "info" and level not in self._levels():
            return True

        app_name = self.context.app_name
        ok = True

        slack_url = self.arg("NOTIFY_SLACK_WEBHOOK_URL")
        if slack_url:
            payload = {
                "attachments": [
                    {
                        "fallback": message,
                        "color": COLORS.get(level, COLORS["info"]),
                        "title": level.upper(),
                        "text": message,
                        "footer": f"App: {app_name}",
                    }
                ]
            }
            ok = self._post(slack_url, payload, {}) and ok

        webhook_url = self.arg("NOTIFY_WEBHOOK_URL")
        if webhook_url:
            headers = {}
            auth = self.arg("NOTIFY_WEBHOOK_AUTH")
            if auth:
                headers["Authorization"] = auth
            payload = {"app_name": app_name, "level": level, "message": message}
            ok = self._post(webhook_url, payload, headers) and ok

        return ok

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> bool:
        try:
            timeout = float(self.arg("NOTIFY_TIMEOUT", "10"))
        except ValueError:
            timeout = 10.0
        try:
            if self.http_client is not None:
                response = self.http_client.post(url, json=payload, headers=headers, timeout=timeout)
            else:
                with httpx.Client(timeout=timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Notification to {url} failed: {e}")
            return False
        logger.debug(f"Notification sent to {url}")
        return True
