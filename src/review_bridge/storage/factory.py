"""Build the configured storage backend."""

import logging
from collections.abc import Sequence

from review_bridge.config import SUPPORTED_DATABASE_TYPES, Settings
from review_bridge.errors import ConfigurationError
from review_bridge.storage.base import StorageBackend
from review_bridge.storage.migrations import MIGRATIONS, Migration, apply_pending
from review_bridge.storage.postgres import PostgreSQLStorage
from review_bridge.storage.sqlite import SQLiteStorage


def create_storage(
    settings: Settings,
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> StorageBackend:
    """Instantiate (but do not initialize) the backend named in settings."""
    if settings.DATABASE_TYPE == "sqlite":
        return SQLiteStorage(
            settings.DATABASE_PATH,
            connect_policy=settings.connect_backoff,
            echo=settings.DEBUG,
            logger=logger,
        )
    if settings.DATABASE_TYPE == "postgresql":
        missing = [
            name
            for name in ("DATABASE_HOST", "DATABASE_USERNAME", "DATABASE_PASSWORD", "DATABASE_NAME")
            if not getattr(settings, name)
        ]
        if missing:
            raise ConfigurationError(f"PostgreSQL configuration incomplete, missing: {', '.join(missing)}")
        return PostgreSQLStorage(
            settings.database_url,
            pool_size=settings.DATABASE_POOL_SIZE,
            connect_timeout_s=settings.DATABASE_CONNECT_TIMEOUT_S,
            idle_timeout_s=settings.DATABASE_IDLE_TIMEOUT_S,
            ssl=settings.DATABASE_SSL,
            connect_policy=settings.connect_backoff,
            echo=settings.DEBUG,
            logger=logger,
        )
    raise ConfigurationError(
        f"unsupported database type {settings.DATABASE_TYPE!r}, expected one of {', '.join(SUPPORTED_DATABASE_TYPES)}"
    )


async def open_storage(
    settings: Settings,
    *,
    run_migrations: bool = True,
    migrations: Sequence[Migration] = MIGRATIONS,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> StorageBackend:
    """Create, initialize and (optionally) migrate the storage backend."""
    storage = create_storage(settings, logger=logger)
    await storage.initialize()
    if run_migrations:
        try:
            await apply_pending(storage, migrations, logger=logger)
        except BaseException:
            await storage.close()
            raise
    return storage
