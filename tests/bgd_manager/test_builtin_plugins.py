"""
Tests for the built-in audit, database, notification and service discovery plugins.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bgd_manager.plugins import HookName, PluginContext, PluginRegistry
from bgd_manager.plugins.audit_logging import AuditLoggingPlugin
from bgd_manager.plugins.db_migrations import DBMigrationsPlugin
from bgd_manager.plugins.notifications import NotificationsPlugin
from bgd_manager.plugins.service_discovery import ServiceDiscoveryPlugin


def make_registry(app_dir, plugin, **values):
    registry = PluginRegistry(
        PluginContext(app_name="shop", app_dir=app_dir, domain="shop.example.com", ssl=True),
        operator_values=values,
    )
    registry.register(plugin)
    return registry


class RecordingTransport:
    """Collects requests and answers with a fixed status."""

    def __init__(self, status=200):
        self.status = status
        self.requests = []

    def transport(self):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(self.status, json={})

        return httpx.MockTransport(handler)


class TestAuditLogging:
    """Tests for the JSONL audit trail."""

    def read_entries(self, app_dir):
        path = app_dir / "audit.jsonl"
        return [json.loads(line) for line in path.read_text().splitlines()]

    def test_records_hook(self, app_dir):
        registry = make_registry(app_dir, AuditLoggingPlugin())
        assert registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

        (entry,) = self.read_entries(app_dir)
        assert entry["action"] == "deploy_requested"
        assert entry["app_name"] == "shop"
        assert entry["args"] == ["1.2.0", "green"]
        assert entry["level"] == "info"
        assert entry["user"]

    def test_debug_hooks_filtered_at_info(self, app_dir):
        registry = make_registry(app_dir, AuditLoggingPlugin())
        registry.dispatch(HookName.POST_ENV_START, "1.2.0", "green")
        registry.dispatch(HookName.ERROR, "port_conflict", "Port 8081 in use")

        entries = self.read_entries(app_dir)
        assert [e["action"] for e in entries] == ["error"]

    def test_debug_level_records_everything(self, app_dir):
        registry = make_registry(app_dir, AuditLoggingPlugin(), AUDIT_LOG_LEVEL="debug")
        registry.dispatch(HookName.POST_HEALTH, "1.2.0", "green")
        assert self.read_entries(app_dir)[0]["action"] == "health_verified"

    def test_cleanup_prunes_old_entries(self, app_dir):
        old = (datetime.now(timezone.utc) - timedelta(days=200)).isoformat()
        (app_dir / "audit.jsonl").write_text(
            json.dumps({"timestamp": old, "action": "deploy_requested"}) + "\n"
        )
        registry = make_registry(app_dir, AuditLoggingPlugin())
        assert registry.dispatch(HookName.CLEANUP, "all")

        entries = self.read_entries(app_dir)
        assert [e["action"] for e in entries] == ["cleanup"]
        assert entries[0]["args"] == ["all"]

    def test_absolute_log_file(self, app_dir, tmp_path):
        target = tmp_path / "elsewhere" / "audit.log"
        registry = make_registry(app_dir, AuditLoggingPlugin(), AUDIT_LOG_FILE=str(target))
        registry.dispatch(HookName.POST_CUTOVER, "green", "blue")
        assert target.exists()


class TestDBMigrations:
    """Tests for database backups, history and restore on rollback."""

    @pytest.fixture
    def database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://db/shop")

    def history(self, app_dir):
        path = app_dir / "db-migrations.jsonl"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines()]

    def test_inactive_without_database_url(self, app_dir, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        registry = make_registry(app_dir, DBMigrationsPlugin(), DB_BACKUP_CMD="exit 1")

        assert registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")
        assert self.history(app_dir) == []

    def test_backup_before_deploy(self, app_dir, database_url):
        registry = make_registry(
            app_dir, DBMigrationsPlugin(), DB_BACKUP_CMD='echo "dump of $DATABASE_URL"'
        )

        assert registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

        (entry,) = self.history(app_dir)
        assert entry["action"] == "backup"
        assert (entry["version"], entry["slot"]) == ("1.2.0", "green")
        backup = app_dir / "backups" / entry["backup_file"].rsplit("/", 1)[-1]
        assert backup.read_text() == "dump of postgres://db/shop\n"
        assert backup.stat().st_mode & 0o777 == 0o600

    def test_failed_backup_blocks_deploy(self, app_dir, database_url):
        registry = make_registry(app_dir, DBMigrationsPlugin(), DB_BACKUP_CMD="echo half; exit 3")

        assert not registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")
        assert list((app_dir / "backups").iterdir()) == []
        assert self.history(app_dir) == []

    def test_skipped_migrations_take_no_backup(self, app_dir, database_url):
        registry = make_registry(app_dir, DBMigrationsPlugin(), DB_BACKUP_CMD="echo dump")
        registry.context.skip_migrations = True

        assert registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")
        assert registry.dispatch(HookName.POST_HEALTH, "1.2.0", "green")
        assert self.history(app_dir) == []

    def test_shadow_database(self, tmp_path, app_dir, database_url):
        marker = tmp_path / "shadow"
        registry = make_registry(
            app_dir,
            DBMigrationsPlugin(),
            DB_SHADOW_ENABLED="true",
            DB_SHADOW_CMD=f'printf "%s" "$BGD_DB_SHADOW_NAME" > {marker}',
            DB_BACKUP_CMD="echo dump",
        )

        assert registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")
        assert marker.read_text() == "shop_shadow"

    def test_shadow_failure_blocks_deploy(self, app_dir, database_url):
        registry = make_registry(
            app_dir, DBMigrationsPlugin(), DB_SHADOW_ENABLED="true", DB_SHADOW_CMD="exit 1"
        )
        assert not registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

    def test_post_health_records_migration(self, app_dir, database_url):
        registry = make_registry(app_dir, DBMigrationsPlugin())
        registry.dispatch(HookName.POST_HEALTH, "1.2.0", "green")

        assert [e["action"] for e in self.history(app_dir)] == ["migrated"]

    def test_rollback_restores_latest_backup_once(self, tmp_path, app_dir, database_url):
        restored = tmp_path / "restored.sql"
        registry = make_registry(
            app_dir,
            DBMigrationsPlugin(),
            DB_BACKUP_CMD="echo dump",
            DB_ROLLBACK_CMD=f'cp "$BGD_DB_BACKUP_FILE" {restored}',
        )
        registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

        assert registry.dispatch(HookName.POST_ROLLBACK, "blue", "green")
        assert restored.read_text() == "dump\n"
        assert self.history(app_dir)[-1]["action"] == "rollback"

        restored.unlink()
        registry.dispatch(HookName.POST_ROLLBACK, "green", "blue")
        registry.dispatch(HookName.POST_ROLLBACK, "blue", "green")
        assert not restored.exists()

    def test_rollback_failure(self, app_dir, database_url):
        plugin = DBMigrationsPlugin()
        registry = make_registry(
            app_dir, plugin, DB_BACKUP_CMD="echo dump", DB_ROLLBACK_CMD="exit 2"
        )
        registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

        assert not plugin.on_post_rollback("blue", "green")
        assert [e["action"] for e in self.history(app_dir)] == ["backup"]

    def test_rollback_without_command(self, app_dir, database_url):
        plugin = DBMigrationsPlugin()
        registry = make_registry(app_dir, plugin, DB_BACKUP_CMD="echo dump")
        registry.dispatch(HookName.PRE_DEPLOY, "1.2.0", "green")

        assert plugin.on_post_rollback("blue", "green")
        assert [e["action"] for e in self.history(app_dir)] == ["backup"]


class TestNotifications:
    """Tests for webhook notifications."""

    def test_disabled_sends_nothing(self, app_dir):
        recorder = RecordingTransport()
        plugin = NotificationsPlugin(http_client=httpx.Client(transport=recorder.transport()))
        registry = make_registry(app_dir, plugin, NOTIFY_WEBHOOK_URL="http://hooks.test/deploy")
        assert registry.dispatch(HookName.ERROR, "health_check_failed", "boom")
        assert recorder.requests == []

    def test_slack_and_webhook(self, app_dir):
        recorder = RecordingTransport()
        plugin = NotificationsPlugin(http_client=httpx.Client(transport=recorder.transport()))
        make_registry(
            app_dir,
            plugin,
            NOTIFY_ENABLED="true",
            NOTIFY_SLACK_WEBHOOK_URL="http://slack.test/hook",
            NOTIFY_WEBHOOK_URL="http://hooks.test/deploy",
            NOTIFY_WEBHOOK_AUTH="Bearer s3cret",
        )
        assert plugin.on_error("health_check_failed", "app never became healthy")

        slack, webhook = recorder.requests
        attachment = json.loads(slack.content)["attachments"][0]
        assert attachment["color"] == "#ff0000"
        assert "health_check_failed" in attachment["text"]
        assert json.loads(webhook.content) == {
            "app_name": "shop",
            "level": "error",
            "message": "Deployment error [health_check_failed]: app never became healthy",
        }
        assert webhook.headers["Authorization"] == "Bearer s3cret"

    def test_level_filter(self, app_dir):
        recorder = RecordingTransport()
        plugin = NotificationsPlugin(http_client=httpx.Client(transport=recorder.transport()))
        make_registry(
            app_dir,
            plugin,
            NOTIFY_ENABLED="true",
            NOTIFY_LEVELS="error",
            NOTIFY_WEBHOOK_URL="http://hooks.test/deploy",
        )
        assert plugin.on_post_rollback("blue", "green")
        assert recorder.requests == []

        # info always passes the filter
        assert plugin.on_post_health("1.2.0", "green")
        assert len(recorder.requests) == 1

    def test_delivery_failure_reported(self, app_dir):
        recorder = RecordingTransport(status=500)
        plugin = NotificationsPlugin(http_client=httpx.Client(transport=recorder.transport()))
        registry = make_registry(
            app_dir, plugin, NOTIFY_ENABLED="true", NOTIFY_WEBHOOK_URL="http://hooks.test/deploy"
        )
        assert not plugin.on_post_cutover("green", "blue")
        # post hooks never block
        assert registry.dispatch(HookName.POST_CUTOVER, "green", "blue")


class TestServiceDiscovery:
    """Tests for the service registry file."""

    def load(self, app_dir):
        return json.loads((app_dir / "service-registry.json").read_text())["services"]["shop"]

    def test_candidate_then_cutover(self, app_dir):
        plugin = ServiceDiscoveryPlugin()
        registry = make_registry(app_dir, plugin)

        registry.dispatch(HookName.POST_HEALTH, "1.2.0", "green")
        assert self.load(app_dir)["candidate"] == {"slot": "green", "version": "1.2.0"}

        registry.dispatch(HookName.POST_TRAFFIC_SHIFT, "1.2.0", "green", 5, 5)
        assert self.load(app_dir)["traffic"] == {"blue": 5, "green": 5}

        registry.dispatch(HookName.POST_CUTOVER, "green", "blue")
        entry = self.load(app_dir)
        assert entry["active"] == "green"
        assert entry["rollback"] == "blue"
        assert entry["candidate"] is None
        assert entry["version"] == "1.2.0"
        assert entry["traffic"] == {"green": 10, "blue": 0}
        assert entry["url"] == "https://shop.example.com"

    def test_rollback(self, app_dir):
        registry = make_registry(app_dir, ServiceDiscoveryPlugin())
        registry.dispatch(HookName.POST_ROLLBACK, "blue", "green")
        entry = self.load(app_dir)
        assert entry["active"] == "blue"
        assert entry["rollback"] == "green"
        assert entry["traffic"] == {"blue": 10, "green": 0}

    def test_disabled(self, app_dir):
        registry = make_registry(app_dir, ServiceDiscoveryPlugin(), SERVICE_REGISTRY_ENABLED="false")
        registry.dispatch(HookName.POST_ROLLBACK, "blue", "green")
        assert not (app_dir / "service-registry.json").exists()

    def test_corrupt_registry_recreated(self, app_dir):
        (app_dir / "service-registry.json").write_text("{not json")
        registry = make_registry(app_dir, ServiceDiscoveryPlugin())
        registry.dispatch(HookName.POST_ROLLBACK, "blue", "green")
        assert self.load(app_dir)["active"] == "blue"

    def test_publish(self, app_dir):
        recorder = RecordingTransport()
        plugin = ServiceDiscoveryPlugin(http_client=httpx.Client(transport=recorder.transport()))
        make_registry(app_dir, plugin, SERVICE_REGISTRY_URL="http://registry.test/")
        assert plugin.on_post_rollback("blue", "green")

        (request,) = recorder.requests
        assert request.method == "PUT"
        assert str(request.url) == "http://registry.test/services/shop"
        body = json.loads(request.content)
        assert body["name"] == "shop"
        assert body["active"] == "blue"

    @pytest.mark.parametrize("status", [404, 503])
    def test_publish_failure(self, app_dir, status):
        recorder = RecordingTransport(status=status)
        plugin = ServiceDiscoveryPlugin(http_client=httpx.Client(transport=recorder.transport()))
        make_registry(app_dir, plugin, SERVICE_REGISTRY_URL="http://registry.test")
        assert not plugin.on_post_rollback("blue", "green")
        # the local file is still written
        assert self.load(app_dir)["active"] == "blue"
