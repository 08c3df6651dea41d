"""
Database safety net for deployments that run migrations.

Before a deployment the database is dumped into the backup directory (and
optionally a shadow database is created). The migration history is kept as
JSON lines next to the application state. After a rollback the backup taken
for the abandoned slot is restored with the configured rollback command.

Commands run through the shell on the manager host with DATABASE_URL from
the manager's environment. The plugin does nothing when DATABASE_URL is
unset or migrations are skipped.
"""

import json
import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping, Optional

from bgd_manager.plugins.base import HookCallable, HookName, Plugin

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "db-migrations.jsonl"


class DBMigrationsPlugin(Plugin):
    name = "db_migrations"
    description = "Database backups, migration history and restore on rollback"

    def arguments(self) -> Dict[str, str]:
        return {
            "DB_SHADOW_ENABLED": "false",
            "DB_SHADOW_SUFFIX": "_shadow",
            "DB_SHADOW_CMD": "",
            "DB_BACKUP_DIR": "backups",
            "DB_BACKUP_CMD": "",
            "DB_ROLLBACK_CMD": "",
            "DB_COMMAND_TIMEOUT": "600",
        }

    def hooks(self) -> Mapping[HookName, HookCallable]:
        return {
            HookName.PRE_DEPLOY: self.on_pre_deploy,
            HookName.POST_HEALTH: self.on_post_health,
            HookName.POST_ROLLBACK: self.on_post_rollback,
        }

    @property
    def enabled(self) -> bool:
        return bool(os.environ.get("DATABASE_URL")) and not self.context.skip_migrations

    @property
    def backup_dir(self) -> Path:
        path = Path(self.arg("DB_BACKUP_DIR", "backups"))
        if not path.is_absolute():
            path = self.context.app_dir / path
        return path

    @property
    def history_path(self) -> Path:
        return self.context.app_dir / HISTORY_FILENAME

    @property
    def shadow_name(self) -> str:
        return f"{self.context.app_name}{self.arg('DB_SHADOW_SUFFIX', '_shadow')}"

    # Hooks

    def on_pre_deploy(self, version: str, target_slot: str) -> bool:
        if not self.enabled:
            return True
        logger.info("Database URL detected, performing pre-deployment database backup")

        if self.flag("DB_SHADOW_ENABLED") and not self.create_shadow(version):
            logger.error("Failed to create shadow database")
            return False

        if not self.arg("DB_BACKUP_CMD").strip():
            logger.warning("DB_BACKUP_CMD is not set, no database backup taken")
            return True
        backup_file = self.backup(version, target_slot)
        if backup_file is None:
            logger.error("Failed to back up database")
            return False
        self.record("backup", version, target_slot, backup_file=str(backup_file))
        return True

    def on_post_health(self, version: str, target_slot: str) -> bool:
        if not self.enabled:
            return True
        self.record("migrated", version, target_slot)
        return True

    def on_post_rollback(self, rollback_slot: str, abandoned_slot: str) -> bool:
        if not os.environ.get("DATABASE_URL"):
            return True

        entry = self.restorable_backup(abandoned_slot)
        if entry is None:
            logger.warning(f"No database backup to restore for {abandoned_slot}")
            return True

        command = self.arg("DB_ROLLBACK_CMD")
        if not command.strip():
            logger.warning(
                f"DB_ROLLBACK_CMD is not set, restore {entry['backup_file']} manually"
            )
            return True

        logger.info(f"Rolling back database from version {entry['version']}")
        env = {"BGD_DB_BACKUP_FILE": entry["backup_file"], "BGD_DB_VERSION": entry["version"]}
        if not self._run(command, env):
            logger.warning("Database rollback failed, manual intervention may be required")
            return False
        self.record(
            "rollback", entry["version"], abandoned_slot, backup_file=entry["backup_file"]
        )
        logger.info("Database rollback completed")
        return True

    # Operations

    def create_shadow(self, version: str) -> bool:
        command = self.arg("DB_SHADOW_CMD")
        if not command.strip():
            logger.warning("DB_SHADOW_ENABLED is set but DB_SHADOW_CMD is empty")
            return True
        logger.info(f"Creating shadow database {self.shadow_name} for version {version}")
        return self._run(command, {"BGD_DB_SHADOW_NAME": self.shadow_name})

    def backup(self, version: str, target_slot: str) -> Optional[Path]:
        """
        Dump the database with DB_BACKUP_CMD (stdout goes to the backup file).

        Returns:
            Path of the backup, or None if the command failed
        """
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        backup_file = (
            self.backup_dir / f"{self.context.app_name}_{version}_{target_slot}_{stamp}.sql"
        )
        command = self.arg("DB_BACKUP_CMD")
        logger.info(f"Backing up database for version {version} ({target_slot} slot)")
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        with open(backup_file, "w") as out:
            ok = self._run(command, {"BGD_DB_BACKUP_FILE": str(backup_file)}, stdout=out)
        if not ok:
            backup_file.unlink(missing_ok=True)
            return None
        os.chmod(backup_file, 0o600)
        logger.info(f"Database backup completed: {backup_file}")
        return backup_file

    def history(self) -> List[Dict[str, Any]]:
        if not self.history_path.exists():
            return []
        entries = []
        with open(self.history_path, "r") as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries

    def restorable_backup(self, slot: str) -> Optional[Dict[str, Any]]:
        """The most recent backup, if it was taken for a deployment to `slot` and not restored."""
        entries = self.history()
        backups = [e for e in entries if e.get("action") == "backup" and e.get("backup_file")]
        if not backups or backups[-1].get("slot") != slot:
            return None
        latest = backups[-1]
        restored = any(
            e.get("action") == "rollback" and e.get("backup_file") == latest["backup_file"]
            for e in entries
        )
        return None if restored else latest

    def record(self, action: str, version: str, slot: str, **extra: Any) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app_name": self.context.app_name,
            "action": action,
            "version": version,
            "slot": slot,
            **extra,
        }
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.history_path, "a") as f:
            f.write(json.dumps(entry) + "\n")

    def _run(
        self, command: str, env: Dict[str, str], stdout: Optional[IO[str]] = None
    ) -> bool:
        try:
            timeout = int(self.arg("DB_COMMAND_TIMEOUT", "600")) or None
        except ValueError:
            timeout = 600
        try:
            result = subprocess.run(
                command,
                shell=True,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                env={**os.environ, **env},
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Database command timed out after {timeout}s: {command}")
            return False
        except OSError as e:
            logger.error(f"Could not run database command {command!r}: {e}")
            return False
        if result.returncode != 0:
            logger.error(
                f"Database command failed ({result.returncode}): {(result.stderr or '').strip()}"
            )
            return False
        return True
