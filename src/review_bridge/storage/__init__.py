"""Storage engine: backends, migrations and typed records."""

from review_bridge.storage.base import ExecuteResult, Executor, StorageBackend, Transaction
from review_bridge.storage.factory import create_storage, open_storage
from review_bridge.storage.migrations import MIGRATIONS, Migration, apply_pending, validate_migrations
from review_bridge.storage.postgres import PostgreSQLStorage
from review_bridge.storage.records import RecordStore
from review_bridge.storage.sqlite import SQLiteStorage

__all__ = [
    "ExecuteResult",
    "Executor",
    "StorageBackend",
    "Transaction",
    "create_storage",
    "open_storage",
    "MIGRATIONS",
    "Migration",
    "apply_pending",
    "validate_migrations",
    "PostgreSQLStorage",
    "SQLiteStorage",
    "RecordStore",
]
