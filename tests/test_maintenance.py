"""Tests for retention cleanup and storage health checks."""

from datetime import timedelta

from review_bridge.storage.maintenance import FAIL, PASS, WARN, check_storage_health, run_maintenance
from review_bridge.storage.migrations import MIGRATIONS
from review_bridge.storage.models import ChatMessageRecord, MaintenanceStatus
from review_bridge.storage.records import RecordStore

from tests.conftest import APP_ID, BASE_TIME


class TestRunMaintenance:
    """Tests for run_maintenance."""

    async def test_removes_inactive_users_and_old_messages(self, storage, clock):
        records = RecordStore(storage)
        await records.create_user_mapping("old", "@_googleplay_old:x", "Old", APP_ID, now=BASE_TIME - timedelta(days=120))
        await records.create_user_mapping("new", "@_googleplay_new:x", "New", APP_ID, now=BASE_TIME - timedelta(days=5))
        for event_id, age in (("$old", 45), ("$new", 1)):
            await records.upsert_chat_message(
                ChatMessageRecord(
                    event_id=event_id,
                    room_id="!r:x",
                    sender_id="@dev:x",
                    content={"body": "hi"},
                    timestamp=BASE_TIME - timedelta(days=age),
                )
            )

        summary = await run_maintenance(
            storage, user_retention_days=90, message_retention_days=30, vacuum=False, clock=clock
        )

        assert summary["inactive_users_removed"] == 1
        assert summary["old_messages_removed"] == 1
        assert summary["vacuumed"] is False
        assert summary["status"] == "success"
        assert await records.get_user_mapping_by_review_id("old") is None
        assert await records.get_user_mapping_by_review_id("new") is not None
        assert await records.get_chat_message("$old") is None
        assert await records.get_chat_message("$new") is not None

    async def test_each_step_is_logged(self, storage, clock):
        await run_maintenance(storage, clock=clock)

        entries = await RecordStore(storage).list_maintenance_log()

        assert [e.operation_type for e in entries] == ["vacuum", "cleanup_chat_messages", "cleanup_user_mappings"]
        assert all(e.status == MaintenanceStatus.SUCCESS for e in entries)
        assert entries[-1].executed_at == BASE_TIME


class TestCheckStorageHealth:
    """Tests for check_storage_health."""

    async def test_healthy_store(self, storage):
        report = await check_storage_health(storage)

        assert report.healthy
        assert {c.name: c.status for c in report.checks}["schema_version"] == PASS
        stats = next(c for c in report.checks if c.name == "storage")
        assert stats.details["reviews"] == 0

    async def test_pending_migrations_warn(self, raw_storage):
        report = await check_storage_health(raw_storage)

        schema = next(c for c in report.checks if c.name == "schema_version")
        assert schema.status == WARN
        assert schema.details == {"current": 0, "latest": MIGRATIONS[-1].version}
        assert report.healthy

    async def test_schema_ahead_fails(self, storage):
        report = await check_storage_health(storage, MIGRATIONS[:3])

        assert not report.healthy
        assert {c.name: c.status for c in report.checks}["schema_version"] == FAIL

    async def test_health_check_releases_the_store(self, storage):
        """After a health check, writers are not blocked."""
        await check_storage_health(storage)

        async with storage.transaction() as tx:
            await tx.query("SELECT 1")

    async def test_report_serializes(self, storage):
        data = (await check_storage_health(storage)).to_dict()

        assert data["healthy"] is True
        assert len(data["checks"]) == 4
