"""Versioned, transactional schema migrations.

Every migration runs in its own transaction together with the
``schema_version`` write, so after a failure the recorded version is always
the last migration that fully committed. DDL is written once for both
backends: tables come from ``tables.py`` and raw index statements stick to
SQL that SQLite and PostgreSQL both accept.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Table, inspect, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncConnection

from review_bridge.errors import MigrationError
from review_bridge.log import component_logger
from review_bridge.storage import tables as t
from review_bridge.storage.base import StorageBackend

MigrationAction = Callable[[AsyncConnection], Awaitable[None]]


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: MigrationAction


def create_tables(*tables: Table) -> MigrationAction:
    async def up(conn: AsyncConnection) -> None:
        await conn.run_sync(lambda sync_conn: t.metadata.create_all(sync_conn, tables=list(tables), checkfirst=True))

    return up


def run_sql(*statements: str) -> MigrationAction:
    async def up(conn: AsyncConnection) -> None:
        for statement in statements:
            await conn.execute(text(statement))

    return up


def add_column(table: Table, column_name: str) -> MigrationAction:
    """Add a nullable column from ``tables.py``; no-op if the table already has it."""

    def _add(sync_conn) -> None:
        existing = {column["name"] for column in inspect(sync_conn).get_columns(table.name)}
        if column_name in existing:
            return
        ddl_type = table.c[column_name].type.compile(dialect=sync_conn.dialect)
        sync_conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {column_name} {ddl_type}"))

    async def up(conn: AsyncConnection) -> None:
        await conn.run_sync(_add)

    return up


def chain(*actions: MigrationAction) -> MigrationAction:
    async def up(conn: AsyncConnection) -> None:
        for action in actions:
            await action(conn)

    return up


MIGRATIONS: list[Migration] = [
    Migration(1, "create schema_version", create_tables(t.schema_version)),
    Migration(2, "create user_mappings", create_tables(t.user_mappings)),
    Migration(3, "create room_mappings", create_tables(t.room_mappings)),
    Migration(4, "create message_mappings", create_tables(t.message_mappings)),
    Migration(5, "create google_play_reviews", create_tables(t.reviews)),
    Migration(6, "create matrix_messages", create_tables(t.chat_messages)),
    Migration(
        7,
        "add lookup indexes",
        run_sql(
            "CREATE INDEX IF NOT EXISTS idx_user_mappings_app ON user_mappings (app_id)",
            "CREATE INDEX IF NOT EXISTS idx_user_mappings_last_active ON user_mappings (last_active_at)",
            "CREATE INDEX IF NOT EXISTS idx_room_mappings_app_kind ON room_mappings (app_id, room_kind)",
            "CREATE INDEX IF NOT EXISTS idx_message_mappings_review_kind"
            " ON message_mappings (external_review_id, kind)",
            "CREATE INDEX IF NOT EXISTS idx_message_mappings_room ON message_mappings (chat_room_id)",
            "CREATE INDEX IF NOT EXISTS idx_reviews_app_modified ON google_play_reviews (app_id, last_modified_at)",
            'CREATE INDEX IF NOT EXISTS idx_matrix_messages_room_ts ON matrix_messages (room_id, "timestamp")',
        ),
    ),
    Migration(
        8,
        "enforce one primary room per app and room kind",
        run_sql(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_room_mappings_primary"
            " ON room_mappings (app_id, room_kind) WHERE is_primary = TRUE",
        ),
    ),
    Migration(
        9,
        "create maintenance_log",
        chain(
            create_tables(t.maintenance_log),
            run_sql("CREATE INDEX IF NOT EXISTS idx_maintenance_log_executed ON maintenance_log (executed_at)"),
        ),
    ),
    Migration(10, "create app_configs", create_tables(t.app_configs)),
    Migration(
        11,
        "create reply_queue",
        chain(
            create_tables(t.reply_queue),
            run_sql(
                "CREATE INDEX IF NOT EXISTS idx_reply_queue_due ON reply_queue (state, next_attempt_at)",
                "CREATE INDEX IF NOT EXISTS idx_reply_queue_app ON reply_queue (app_id)",
            ),
        ),
    ),
    Migration(12, "track replies sent but not yet recorded", add_column(t.reply_queue, "sent_at")),
]


def validate_migrations(migrations: Sequence[Migration]) -> None:
    """Reject migration lists with duplicates or gaps.

    Versions must be exactly 1..N once sorted. This is a packaging defect,
    so it fails before anything touches the database.
    """
    if not migrations:
        raise MigrationError("no migrations defined")
    versions = [m.version for m in migrations]
    duplicates = sorted({v for v in versions if versions.count(v) > 1})
    if duplicates:
        raise MigrationError(f"duplicate migration versions: {duplicates}")
    descriptions = [m.description for m in migrations]
    repeated = sorted({d for d in descriptions if descriptions.count(d) > 1})
    if repeated:
        raise MigrationError(f"duplicate migration descriptions: {repeated}")
    ordered = sorted(versions)
    if ordered[0] != 1:
        raise MigrationError(f"first migration version must be 1, got {ordered[0]}")
    for previous, current in zip(ordered, ordered[1:]):
        if current != previous + 1:
            raise MigrationError(f"gap in migration versions between {previous} and {current}")


async def get_schema_version(conn: AsyncConnection) -> int:
    """Current schema version, 0 for an empty database."""
    exists = await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(t.schema_version.name))
    if not exists:
        return 0
    result = await conn.execute(select(t.schema_version.c.version).where(t.schema_version.c.id == 1))
    version = result.scalar_one_or_none()
    return int(version) if version is not None else 0


async def set_schema_version(conn: AsyncConnection, version: int, applied_at: datetime | None = None) -> None:
    """Record the schema version. The version never moves backwards."""
    current = await get_schema_version(conn)
    if version < current:
        raise MigrationError(f"refusing to lower schema version from {current} to {version}", version)
    values = {"version": version, "applied_at": applied_at or datetime.now(timezone.utc)}
    result = await conn.execute(update(t.schema_version).where(t.schema_version.c.id == 1).values(**values))
    if result.rowcount == 0:
        await conn.execute(insert(t.schema_version).values(id=1, **values))


async def current_version(storage: StorageBackend) -> int:
    async with storage.transaction() as tx:
        return await get_schema_version(tx.connection)


async def apply_pending(
    storage: StorageBackend,
    migrations: Sequence[Migration] = MIGRATIONS,
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> list[int]:
    """Apply every migration newer than the stored version.

    Args:
        storage: An initialized backend.
        migrations: Migration list, validated before anything runs.
        logger: Optional logger handle.

    Returns:
        Versions applied in this run, empty when already up to date.

    Raises:
        MigrationError: The list is malformed, the database is ahead of the
            code, or a migration failed (later migrations are not attempted).
    """
    log = component_logger(logger, "migrations", backend=storage.name)
    validate_migrations(migrations)

    ordered = sorted(migrations, key=lambda m: m.version)
    latest = ordered[-1].version
    current = await current_version(storage)
    if current > latest:
        raise MigrationError(f"database schema version {current} is newer than the latest known {latest}")

    pending = [m for m in ordered if m.version > current]
    if not pending:
        log.info(f"Schema up to date at version {current}")
        return []

    log.info(f"Applying {len(pending)} migration(s) from version {current} to {latest}")
    applied: list[int] = []
    for migration in pending:
        try:
            async with storage.transaction() as tx:
                await migration.up(tx.connection)
                await set_schema_version(tx.connection, migration.version)
        except MigrationError:
            log.error(f"Migration {migration.version} ({migration.description}) failed")
            raise
        except Exception as e:
            log.error(f"Migration {migration.version} ({migration.description}) failed: {e}")
            raise MigrationError(
                f"migration {migration.version} ({migration.description}) failed: {e}", migration.version
            ) from e
        applied.append(migration.version)
        log.info(f"Applied migration {migration.version}: {migration.description}")
    return applied


async def migration_status(storage: StorageBackend, migrations: Sequence[Migration] = MIGRATIONS) -> dict:
    current = await current_version(storage)
    latest = max((m.version for m in migrations), default=0)
    pending = sorted(m.version for m in migrations if m.version > current)
    return {
        "current_version": current,
        "latest_version": latest,
        "pending": pending,
        "is_up_to_date": current >= latest,
    }
