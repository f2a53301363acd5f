"""Retention cleanup, vacuum and health checks for the storage engine."""

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from review_bridge.errors import StorageError
from review_bridge.log import component_logger
from review_bridge.storage.base import StorageBackend
from review_bridge.storage.migrations import MIGRATIONS, Migration, current_version
from review_bridge.storage.models import MaintenanceStatus
from review_bridge.storage.records import RecordStore, utcnow

PASS = "pass"
WARN = "warn"
FAIL = "fail"


@dataclass
class HealthCheck:
    name: str
    status: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    healthy: bool
    checks: list[HealthCheck]
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checked_at": self.checked_at.isoformat(),
            "checks": [asdict(check) for check in self.checks],
        }


async def check_storage_health(
    storage: StorageBackend,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> HealthReport:
    """Connectivity, schema version, transaction round-trip and size.

    A schema that is behind the code is a warning (migrations will catch
    up on start); one that is ahead of it is a failure.
    """
    checks: list[HealthCheck] = []

    try:
        await storage.query("SELECT 1")
        checks.append(HealthCheck("connectivity", PASS, f"{storage.name} reachable"))
    except StorageError as e:
        checks.append(HealthCheck("connectivity", FAIL, str(e)))
        return HealthReport(healthy=False, checks=checks, checked_at=utcnow())

    latest = max((m.version for m in migrations), default=0)
    try:
        version = await current_version(storage)
        details = {"current": version, "latest": latest}
        if version == latest:
            checks.append(HealthCheck("schema_version", PASS, f"schema at version {version}", details))
        elif version < latest:
            checks.append(HealthCheck("schema_version", WARN, f"{latest - version} migration(s) pending", details))
        else:
            checks.append(HealthCheck("schema_version", FAIL, "schema is newer than this release", details))
    except StorageError as e:
        checks.append(HealthCheck("schema_version", FAIL, str(e)))

    try:
        tx = await storage.begin_transaction()
        try:
            await tx.query("SELECT 1")
        finally:
            await tx.rollback()
        checks.append(HealthCheck("transaction", PASS, "begin/rollback round-trip ok"))
    except StorageError as e:
        checks.append(HealthCheck("transaction", FAIL, str(e)))

    try:
        stats = await RecordStore(storage).storage_stats()
        stats.database_size = await storage.database_size()
        checks.append(HealthCheck("storage", PASS, "record counts available", asdict(stats)))
    except StorageError as e:
        checks.append(HealthCheck("storage", WARN, str(e)))

    return HealthReport(
        healthy=all(check.status != FAIL for check in checks),
        checks=checks,
        checked_at=utcnow(),
    )


async def run_maintenance(
    storage: StorageBackend,
    *,
    user_retention_days: int = 90,
    message_retention_days: int = 30,
    vacuum: bool = True,
    clock: Callable[[], datetime] = utcnow,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> dict[str, Any]:
    """Run retention cleanup and vacuum, logging each step to maintenance_log.

    A failing step is recorded as ``failed`` and does not stop the others.

    Returns:
        Summary with rows removed per step and the overall status.
    """
    log = component_logger(logger, "maintenance", backend=storage.name)
    records = RecordStore(storage)
    now = clock()
    summary: dict[str, Any] = {
        "inactive_users_removed": 0,
        "old_messages_removed": 0,
        "vacuumed": False,
        "errors": 0,
    }

    async def step(operation: str, action: Callable[[], Awaitable[int]], details: str) -> int | None:
        started = time.monotonic()
        try:
            affected = await action()
        except StorageError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error(f"Maintenance step {operation} failed: {e}")
            summary["errors"] += 1
            await records.log_maintenance(
                operation,
                status=MaintenanceStatus.FAILED,
                operation_details=f"{details}: {e}",
                duration_ms=duration_ms,
                now=clock(),
            )
            return None
        duration_ms = int((time.monotonic() - started) * 1000)
        await records.log_maintenance(
            operation,
            records_affected=affected,
            operation_details=details,
            duration_ms=duration_ms,
            now=clock(),
        )
        log.info(f"Maintenance step {operation}: {affected} record(s) in {duration_ms}ms")
        return affected

    user_cutoff = now - timedelta(days=user_retention_days)
    removed = await step(
        "cleanup_user_mappings",
        lambda: records.delete_inactive_user_mappings(user_cutoff),
        f"last_active_at < {user_cutoff.isoformat()}",
    )
    if removed is not None:
        summary["inactive_users_removed"] = removed

    message_cutoff = now - timedelta(days=message_retention_days)
    removed = await step(
        "cleanup_chat_messages",
        lambda: records.delete_chat_messages_before(message_cutoff),
        f"timestamp < {message_cutoff.isoformat()}",
    )
    if removed is not None:
        summary["old_messages_removed"] = removed

    if vacuum:

        async def do_vacuum() -> int:
            await storage.vacuum()
            return 0

        summary["vacuumed"] = await step("vacuum", do_vacuum, "reclaim free pages") is not None

    summary["status"] = MaintenanceStatus.SUCCESS.value if not summary["errors"] else MaintenanceStatus.PARTIAL.value
    return summary
