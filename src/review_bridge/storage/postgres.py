"""PostgreSQL backend with a bounded connection pool (asyncpg)."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import Table, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

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


class PostgreSQLStorage:
    """Client/server storage backend.

    Concurrency is bounded by the pool: at most ``pool_size`` connections
    are open and ``max_overflow`` is zero, so extra callers wait for a free
    connection for up to ``connect_timeout_s`` before failing with
    ``StorageConnectionError``. Idle connections are recycled after
    ``idle_timeout_s`` and pre-pinged before reuse.
    """

    name = "postgresql"

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 20,
        connect_timeout_s: float = 2.0,
        idle_timeout_s: float = 30.0,
        ssl: bool = False,
        connect_policy: BackoffPolicy | None = None,
        echo: bool = False,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.url = url
        self.pool_size = pool_size
        self.connect_timeout_s = connect_timeout_s
        self.idle_timeout_s = idle_timeout_s
        self.ssl = ssl
        self._connect_policy = connect_policy or BackoffPolicy(
            max_attempts=3, base_delay_s=0.5, max_delay_s=5.0, jitter=0.1
        )
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._initialized = False
        self._log = component_logger(logger, "storage", backend=self.name)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def dialect_name(self) -> str:
        return "postgresql"

    def _require_engine(self) -> AsyncEngine:
        if not self._initialized or self._engine is None:
            raise NotInitializedError("storage used before initialize()", self.name)
        return self._engine

    def _create_engine(self) -> AsyncEngine:
        connect_args: dict[str, Any] = {"timeout": self.connect_timeout_s}
        if self.ssl:
            connect_args["ssl"] = "require"
        return create_async_engine(
            self.url,
            echo=self._echo,
            pool_size=self.pool_size,
            max_overflow=0,
            pool_timeout=self.connect_timeout_s,
            pool_recycle=max(int(self.idle_timeout_s), 1),
            pool_pre_ping=True,
            connect_args=connect_args,
        )

    async def initialize(self) -> None:
        """Create the pool and verify the server answers."""
        if self._initialized:
            return

        engine = self._create_engine()
        try:
            async for attempt in self._connect_policy.retrying(StorageConnectionError):
                with attempt:
                    await self._ping(engine)
        except StorageConnectionError:
            await engine.dispose()
            self._log.error("PostgreSQL is unreachable, giving up")
            raise

        self._engine = engine
        self._initialized = True
        self._log.info(f"PostgreSQL storage ready (pool_size={self.pool_size})")

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
            await self._engine.dispose()
        self._engine = None
        self._initialized = False

    async def begin_transaction(self) -> Transaction:
        engine = self._require_engine()
        with translate_errors(self.name):
            conn = await engine.connect()
            try:
                trans = await conn.begin()
            except BaseException:
                await conn.close()
                raise
        return SQLAlchemyTransaction(conn, trans, self.name, pg_insert)

    def transaction(self):
        """``async with storage.transaction() as tx`` commits or rolls back."""
        return managed_transaction(self)

    async def query(self, statement: Statement, params: Params = None) -> list[RowMapping]:
        engine = self._require_engine()
        with translate_errors(self.name):
            async with engine.connect() as conn:
                return await ConnectionExecutor(conn, self.name, pg_insert).query(statement, params)

    async def execute(self, statement: Statement, params: Params = None) -> ExecuteResult:
        engine = self._require_engine()
        with translate_errors(self.name):
            async with engine.begin() as conn:
                return await ConnectionExecutor(conn, self.name, pg_insert).execute(statement, params)

    async def upsert(
        self, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]
    ) -> ExecuteResult:
        engine = self._require_engine()
        with translate_errors(self.name):
            async with engine.begin() as conn:
                return await ConnectionExecutor(conn, self.name, pg_insert).upsert(table, values, key_columns)

    async def vacuum(self) -> None:
        """VACUUM ANALYZE; needs an autocommit connection."""
        engine = self._require_engine()
        with translate_errors(self.name):
            async with engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text("VACUUM ANALYZE"))

    async def database_size(self) -> int | None:
        rows = await self.query("SELECT pg_database_size(current_database()) AS size")
        return int(rows[0]["size"]) if rows else None
