"""Storage engine contract and SQLAlchemy execution helpers.

Both backends satisfy ``StorageBackend`` on their own. What they share is
not a base class but a couple of composable helpers: ``ConnectionExecutor``
runs statements on an open ``AsyncConnection`` and ``SQLAlchemyTransaction``
owns one connection for the life of an explicit transaction.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Table, text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction
from sqlalchemy.sql import Executable
from sqlalchemy.sql.dml import Insert

from review_bridge.errors import (
    BridgeError,
    ConstraintViolation,
    StorageConnectionError,
    StorageError,
)

Statement = Executable | str
Params = Mapping[str, Any] | Sequence[Mapping[str, Any]] | None
InsertFactory = Callable[[Table], Any]


@dataclass(frozen=True)
class ExecuteResult:
    """Outcome of a write: rows affected and, for inserts, the new key."""

    rowcount: int
    inserted_id: Any = None


@runtime_checkable
class Executor(Protocol):
    """Anything that can run statements: a backend or an open transaction."""

    async def query(self, statement: Statement, params: Params = None) -> list[RowMapping]: ...

    async def execute(self, statement: Statement, params: Params = None) -> ExecuteResult: ...

    async def upsert(
        self, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]
    ) -> ExecuteResult: ...


@runtime_checkable
class Transaction(Executor, Protocol):
    @property
    def connection(self) -> AsyncConnection: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


@runtime_checkable
class StorageBackend(Executor, Protocol):
    """Backend-agnostic storage contract."""

    name: str

    @property
    def is_initialized(self) -> bool: ...

    @property
    def dialect_name(self) -> str: ...

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def begin_transaction(self) -> Transaction: ...

    def transaction(self) -> Any: ...

    async def vacuum(self) -> None: ...

    async def database_size(self) -> int | None: ...


def coerce_statement(statement: Statement) -> Executable:
    if isinstance(statement, str):
        return text(statement)
    return statement


@contextmanager
def translate_errors(backend: str) -> Iterator[None]:
    """Map driver and SQLAlchemy exceptions onto the storage taxonomy."""
    try:
        yield
    except BridgeError:
        raise
    except IntegrityError as e:
        raise ConstraintViolation(str(e.orig or e), backend) from e
    except (PoolTimeoutError, InterfaceError, asyncio.TimeoutError, OSError) as e:
        raise StorageConnectionError(f"{type(e).__name__}: {e}", backend) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StorageConnectionError(f"connection lost: {e.orig or e}", backend) from e
        raise StorageError(str(e.orig or e), backend) from e
    except SQLAlchemyError as e:
        raise StorageError(str(e), backend) from e


class ConnectionExecutor:
    """Runs statements against one open connection."""

    def __init__(self, conn: AsyncConnection, backend: str, insert_factory: InsertFactory):
        self._conn = conn
        self._backend = backend
        self._insert = insert_factory

    async def query(self, statement: Statement, params: Params = None) -> list[RowMapping]:
        with translate_errors(self._backend):
            result = await self._conn.execute(coerce_statement(statement), params)
            return list(result.mappings().all())

    async def execute(self, statement: Statement, params: Params = None) -> ExecuteResult:
        stmt = coerce_statement(statement)
        with translate_errors(self._backend):
            result = await self._conn.execute(stmt, params)
            inserted_id = None
            if isinstance(stmt, Insert) and not isinstance(params, (list, tuple)):
                key = result.inserted_primary_key
                inserted_id = key[0] if key else None
            elif self._conn.dialect.name == "sqlite" and getattr(result.context, "isinsert", False):
                inserted_id = result.lastrowid
            return ExecuteResult(rowcount=max(result.rowcount, 0), inserted_id=inserted_id)

    async def upsert(
        self, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]
    ) -> ExecuteResult:
        """Insert, or overwrite every non-key column on primary-key conflict."""
        stmt = self._insert(table).values(**values)
        updates = {name: stmt.excluded[name] for name in values if name not in key_columns}
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(key_columns))
        with translate_errors(self._backend):
            result = await self._conn.execute(stmt)
            return ExecuteResult(rowcount=max(result.rowcount, 0))


class SQLAlchemyTransaction:
    """An explicit transaction holding one connection until commit/rollback."""

    def __init__(
        self,
        conn: AsyncConnection,
        trans: AsyncTransaction,
        backend: str,
        insert_factory: InsertFactory,
        release: Callable[[], Awaitable[None]] | None = None,
    ):
        self._conn = conn
        self._trans = trans
        self._backend = backend
        self._executor = ConnectionExecutor(conn, backend, insert_factory)
        self._release = release
        self._finished = False

    @property
    def connection(self) -> AsyncConnection:
        return self._conn

    @property
    def is_active(self) -> bool:
        return not self._finished

    def _check_active(self) -> None:
        if self._finished:
            raise StorageError("transaction already finished", self._backend)

    async def query(self, statement: Statement, params: Params = None) -> list[RowMapping]:
        self._check_active()
        return await self._executor.query(statement, params)

    async def execute(self, statement: Statement, params: Params = None) -> ExecuteResult:
        self._check_active()
        return await self._executor.execute(statement, params)

    async def upsert(
        self, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]
    ) -> ExecuteResult:
        self._check_active()
        return await self._executor.upsert(table, values, key_columns)

    async def commit(self) -> None:
        self._check_active()
        try:
            with translate_errors(self._backend):
                await self._trans.commit()
        finally:
            await self._finish()

    async def rollback(self) -> None:
        if self._finished:
            return
        try:
            with translate_errors(self._backend):
                if self._trans.is_active:
                    await self._trans.rollback()
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            await self._conn.close()
        finally:
            if self._release is not None:
                await self._release()


@asynccontextmanager
async def managed_transaction(backend: StorageBackend) -> AsyncIterator[Transaction]:
    """Commit on success, roll back on any error or cancellation."""
    tx = await backend.begin_transaction()
    try:
        yield tx
    except BaseException:
        await asyncio.shield(tx.rollback())
        raise
    else:
        await tx.commit()
