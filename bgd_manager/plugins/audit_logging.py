"""
Audit trail plugin.

Appends one JSON line per lifecycle hook so operators can reconstruct who
changed what and when.
"""

import getpass
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Mapping

from bgd_manager.plugins.base import HookCallable, HookName, Plugin

logger = logging.getLogger(__name__)

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}

# Hook -> (audit action, level)
AUDITED_HOOKS = {
    HookName.PRE_DEPLOY: ("deploy_requested", "info"),
    HookName.POST_ENV_START: ("environment_started", "debug"),
    HookName.POST_HEALTH: ("health_verified", "debug"),
    HookName.POST_TRAFFIC_SHIFT: ("traffic_shifted", "info"),
    HookName.PRE_CUTOVER: ("cutover_requested", "info"),
    HookName.POST_CUTOVER: ("cutover_completed", "info"),
    HookName.PRE_ROLLBACK: ("rollback_requested", "warning"),
    HookName.POST_ROLLBACK: ("rollback_completed", "warning"),
    HookName.CLEANUP: ("cleanup", "info"),
    HookName.ERROR: ("error", "error"),
}


class AuditLoggingPlugin(Plugin):
    name = "audit_logging"
    description = "JSONL audit trail of every deployment action"

    def arguments(self) -> Dict[str, str]:
        return {
            "AUDIT_LOG_LEVEL": "info",
            "AUDIT_LOG_FILE": "audit.jsonl",
            "AUDIT_RETENTION_DAYS": "90",
        }

    def hooks(self) -> Mapping[HookName, HookCallable]:
        handlers: Dict[HookName, HookCallable] = {
            hook: self._recorder(hook) for hook in AUDITED_HOOKS
        }
        handlers[HookName.CLEANUP] = self.on_cleanup
        return handlers

    @property
    def log_path(self) -> Path:
        path = Path(self.arg("AUDIT_LOG_FILE", "audit.jsonl"))
        if not path.is_absolute():
            path = self.context.app_dir / path
        return path

    def _recorder(self, hook: HookName) -> HookCallable:
        def record(*args: Any) -> bool:
            return self.record(hook, *args)

        return record

    def record(self, hook: HookName, *args: Any) -> bool:
        action, level = AUDITED_HOOKS[hook]
        threshold = LEVELS.get(self.arg("AUDIT_LOG_LEVEL", "info").lower(), LEVELS["info"])
        if LEVELS[level] < threshold:
            return True

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app_name": self.context.app_name,
            "action": action,
            "hook": hook.value,
            "level": level,
            "args": [str(a) for a in args],
            "user": _current_user(),
        }
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log {self.log_path}: {e}")
            return False
        return True

    def on_cleanup(self, *args: Any) -> bool:
        """Record the cleanup, then drop entries older than the retention window."""
        if not self.record(HookName.CLEANUP, *args):
            return False
        try:
            days = int(self.arg("AUDIT_RETENTION_DAYS", "90"))
        except ValueError:
            logger.warning("AUDIT_RETENTION_DAYS is not a number, skipping retention")
            return True
        if days <= 0 or not self.log_path.exists():
            return True
        return self.prune(timedelta(days=days))

    def prune(self, retention: timedelta) -> bool:
        cutoff = datetime.now(timezone.utc) - retention
        kept = []
        removed = 0
        with open(self.log_path, "r") as f:
            for line in f:
                try:
                    stamp = datetime.fromisoformat(json.loads(line)["timestamp"])
                except (ValueError, KeyError, TypeError):
                    kept.append(line)
                    continue
                if stamp >= cutoff:
                    kept.append(line)
                else:
                    removed += 1
        if removed:
            tmp = self.log_path.with_suffix(".tmp")
            tmp.write_text("".join(kept))
            os.replace(tmp, self.log_path)
            logger.info(f"Pruned {removed} audit entries older than {retention.days} days")
        return True


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown")
