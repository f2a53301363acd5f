"""SQLAlchemy Core table definitions shared by both backends.

Tables are created by the versioned migrations in ``migrations.py``, never
by a bare ``create_all`` at import or startup.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on both backends.

    Values are stored as naive UTC so SQLite string ordering and PostgreSQL
    ``timestamp`` comparisons agree, and come back with ``tzinfo=UTC``.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


metadata = MetaData()

schema_version = Table(
    "schema_version",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("version", Integer, nullable=False),
    Column("applied_at", UTCDateTime, nullable=False),
    CheckConstraint("id = 1", name="ck_schema_version_singleton"),
)

user_mappings = Table(
    "user_mappings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("review_id", String(255), nullable=False, unique=True),
    Column("chat_user_id", String(255), nullable=False, unique=True),
    Column("author_display_name", String(255), nullable=False),
    Column("app_id", String(255), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("last_active_at", UTCDateTime, nullable=False),
)

room_mappings = Table(
    "room_mappings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("app_id", String(255), nullable=False),
    Column("chat_room_id", String(255), nullable=False, unique=True),
    Column("app_display_name", String(255), nullable=False),
    Column("room_kind", String(32), nullable=False, default="reviews"),
    Column("is_primary", Boolean, nullable=False, default=False),
    Column("config", JSON, nullable=False, default=dict),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    CheckConstraint("room_kind IN ('reviews', 'admin', 'general')", name="ck_room_mappings_kind"),
)

message_mappings = Table(
    "message_mappings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("external_review_id", String(255), nullable=False),
    Column("chat_event_id", String(255), nullable=False, unique=True),
    Column(
        "chat_room_id",
        String(255),
        ForeignKey("room_mappings.chat_room_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("kind", String(32), nullable=False),
    Column("app_id", String(255), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    CheckConstraint("kind IN ('review', 'reply', 'notification')", name="ck_message_mappings_kind"),
)

reviews = Table(
    "google_play_reviews",
    metadata,
    Column("review_id", String(255), primary_key=True),
    Column("app_id", String(255), nullable=False),
    Column("author_name", String(255), nullable=False),
    Column("text", Text),
    Column("star_rating", Integer, nullable=False),
    Column("language_code", String(16)),
    Column("device", String(255)),
    Column("os_version", String(64)),
    Column("app_version_code", Integer),
    Column("app_version_name", String(64)),
    Column("created_at", UTCDateTime, nullable=False),
    Column("last_modified_at", UTCDateTime, nullable=False),
    Column("has_reply", Boolean, nullable=False, default=False),
    Column("reply_text", Text),
    Column("reply_created_at", UTCDateTime),
    Column("reply_modified_at", UTCDateTime),
    CheckConstraint("star_rating BETWEEN 1 AND 5", name="ck_reviews_star_rating"),
)

chat_messages = Table(
    "matrix_messages",
    metadata,
    Column("event_id", String(255), primary_key=True),
    Column("room_id", String(255), nullable=False),
    Column("sender_id", String(255), nullable=False),
    Column("content", JSON, nullable=False),
    Column("timestamp", UTCDateTime, nullable=False),
    Column("is_bridge_originated", Boolean, nullable=False, default=False),
)

maintenance_log = Table(
    "maintenance_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("operation_type", String(64), nullable=False),
    Column("operation_details", Text),
    Column("records_affected", Integer, nullable=False, default=0),
    Column("executed_at", UTCDateTime, nullable=False),
    Column("duration_ms", Integer),
    Column("status", String(16), nullable=False, default="success"),
    CheckConstraint("status IN ('success', 'failed', 'partial')", name="ck_maintenance_log_status"),
)

app_configs = Table(
    "app_configs",
    metadata,
    Column("app_id", String(255), primary_key=True),
    Column("config_document", JSON, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

reply_queue = Table(
    "reply_queue",
    metadata,
    Column("review_id", String(255), primary_key=True),
    Column("app_id", String(255), nullable=False),
    Column("reply_text", Text, nullable=False),
    Column("chat_event_id", String(255), nullable=False),
    Column("chat_room_id", String(255), nullable=False),
    Column("sender_id", String(255), nullable=False),
    Column("state", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("next_attempt_at", UTCDateTime, nullable=False),
    Column("last_error", Text),
    Column("sent_at", UTCDateTime),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    CheckConstraint(
        "state IN ('queued', 'sending', 'failed', 'sent', 'dead')", name="ck_reply_queue_state"
    ),
)
