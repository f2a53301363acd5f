"""Embedded SQLite backend (SQLAlchemy async engine over aiosqlite)."""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Table, event, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from review_bridge.backoff import BackoffPolicy
from review_bridge.errors import NotInitializedError, StorageConnectionError, StorageError
from review_bridge.log import component_logger
from review_bridge.storage.base import (
    ConnectionExecutor,
    ExecuteResult,
    Params,
    SQLAlchemyTransaction,
    Statement,
    Transaction,
    managed_transaction,
    translate_errors,
)

MEMORY_PATH = ":memory:"


def _configure_connection(dbapi_conn, connection_record, busy_timeout_ms: int = 30000):
    """Set SQLite pragmas for a single-writer bridge process.

    WAL lets readers proceed while the writer holds the lock and
    synchronous=NORMAL is safe with WAL. Foreign keys are off by default in
    SQLite and the message mapping cascade depends on them.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # Let SQLAlchemy emit BEGIN itself so DDL runs inside our transactions.
    dbapi_conn.isolation_level = None


def _begin(conn):
    conn.exec_driver_sql("BEGIN")


class SQLiteStorage:
    """Single-file storage backend.

    Writers (``execute``, ``upsert`` and explicit transactions) are
    serialized with an ``asyncio.Lock``. Reads run concurrently against a
    file database; an in-memory database lives on one shared connection, so
    reads take the lock as well.
    """

    name = "sqlite"

    def __init__(
        self,
        path: str,
        *,
        busy_timeout_ms: int = 30000,
        connect_policy: BackoffPolicy | None = None,
        echo: bool = False,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self._connect_policy = connect_policy or BackoffPolicy(
            max_attempts=3, base_delay_s=0.5, max_delay_s=5.0, jitter=0.1
        )
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._initialized = False
        self._lock = asyncio.Lock()
        self._log = component_logger(logger, "storage", backend=self.name)

    @property
    def is_memory(self) -> bool:
        return self.path == MEMORY_PATH or self.path.startswith("file::memory:")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def dialect_name(self) -> str:
        return "sqlite"

    @property
    def url(self) -> str:
        return f"sqlite+aiosqlite:///{self.path}"

    def _require_engine(self) -> AsyncEngine:
        if not self._initialized or self._engine is None:
            raise NotInitializedError("storage used before initialize()", self.name)
        return self._engine

    async def initialize(self) -> None:
        """Open the engine and verify the database file is usable."""
        if self._initialized:
            return

        if not self.is_memory:
            with translate_errors(self.name):
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        engine_kwargs: dict[str, Any] = {"echo": self._echo}
        if self.is_memory:
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_async_engine(self.url, **engine_kwargs)

        busy_timeout_ms = self.busy_timeout_ms

        def on_connect(dbapi_conn, connection_record):
            _configure_connection(dbapi_conn, connection_record, busy_timeout_ms)

        event.listen(engine.sync_engine, "connect", on_connect)
        event.listen(engine.sync_engine, "begin", _begin)

        try:
            async for attempt in self._connect_policy.retrying(StorageConnectionError):
                with attempt:
                    await self._ping(engine)
        except StorageConnectionError:
            await engine.dispose()
            self._log.error(f"Could not open SQLite database at {self.path}")
            raise

        self._engine = engine
        self._initialized = True
        self._log.info(f"SQLite storage ready at {self.path}")

    async def _ping(self, engine: AsyncEngine) -> None:
        try:
            with translate_errors(self.name):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
        except StorageConnectionError:
            raise
        except StorageError as e:
            raise StorageConnectionError(f"database unavailable: {e}", self.name) from e

    async def close(self) -> None:
        if self._engine is not None:
            async with self._lock:
                await self._engine.dispose()
        self._engine = None
        self._initialized = False

    async def _release_lock(self) -> None:
        self._lock.release()

    async def begin_transaction(self) -> Transaction:
        engine = self._require_engine()
        await self._lock.acquire()
        try:
            with translate_errors(self.name):
                conn = await engine.connect()
                try:
                    trans = await conn.begin()
                except BaseException:
                    await conn.close()
                    raise
        except BaseException:
            self._lock.release()
            raise
        return SQLAlchemyTransaction(conn, trans, self.name, sqlite_insert, release=self._release_lock)

    def transaction(self):
        """``async with storage.transaction() as tx`` commits or rolls back."""
        return managed_transaction(self)

    @asynccontextmanager
    async def _read_guard(self) -> AsyncIterator[None]:
        if self.is_memory:
            async with self._lock:
                yield
        else:
            yield

    async def query(self, statement: Statement, params: Params = None) -> list[RowMapping]:
        engine = self._require_engine()
        async with self._read_guard():
            with translate_errors(self.name):
                async with engine.connect() as conn:
                    return await ConnectionExecutor(conn, self.name, sqlite_insert).query(statement, params)

    async def execute(self, statement: Statement, params: Params = None) -> ExecuteResult:
        engine = self._require_engine()
        async with self._lock:
            with translate_errors(self.name):
                async with engine.begin() as conn:
                    return await ConnectionExecutor(conn, self.name, sqlite_insert).execute(statement, params)

    async def upsert(
        self, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]
    ) -> ExecuteResult:
        engine = self._require_engine()
        async with self._lock:
            with translate_errors(self.name):
                async with engine.begin() as conn:
                    return await ConnectionExecutor(conn, self.name, sqlite_insert).upsert(
                        table, values, key_columns
                    )

    async def vacuum(self) -> None:
        """Rebuild the database file. VACUUM cannot run inside a transaction."""
        engine = self._require_engine()
        async with self._lock:
            with translate_errors(self.name):
                async with engine.connect() as conn:
                    raw = await conn.get_raw_connection()
                    await raw.driver_connection.execute("VACUUM")
                    await raw.driver_connection.execute("PRAGMA optimize")

    async def database_size(self) -> int | None:
        rows = await self.query("SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()")
        return int(rows[0]["size"]) if rows else None
