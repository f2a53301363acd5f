"""Typed CRUD for every record family.

``RecordStore`` wraps any ``Executor``: pass the backend for one-shot
statements or an open transaction to group writes atomically. Callers never
branch on the backend; the only dialect-specific piece (upsert) lives in the
executor.
"""

from collections.abc import Mapping
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import RowMapping

from review_bridge.storage import tables as t
from review_bridge.storage.base import Executor
from review_bridge.storage.models import (
    AppConfigRecord,
    ChatMessageRecord,
    MaintenanceLogEntry,
    MaintenanceStatus,
    MessageKind,
    MessageMapping,
    ReplyJob,
    ReplyState,
    ReviewRecord,
    RoomKind,
    RoomMapping,
    StorageStats,
    UserMapping,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _user_mapping(row: RowMapping) -> UserMapping:
    return UserMapping(**dict(row))


def _room_mapping(row: RowMapping) -> RoomMapping:
    data = dict(row)
    data["room_kind"] = RoomKind(data["room_kind"])
    data["is_primary"] = bool(data["is_primary"])
    data["config"] = dict(data["config"] or {})
    return RoomMapping(**data)


def _message_mapping(row: RowMapping) -> MessageMapping:
    data = dict(row)
    data["kind"] = MessageKind(data["kind"])
    return MessageMapping(**data)


def _review(row: RowMapping) -> ReviewRecord:
    data = dict(row)
    data["has_reply"] = bool(data["has_reply"])
    return ReviewRecord(**data)


def _chat_message(row: RowMapping) -> ChatMessageRecord:
    data = dict(row)
    data["is_bridge_originated"] = bool(data["is_bridge_originated"])
    return ChatMessageRecord(**data)


def _reply_job(row: RowMapping) -> ReplyJob:
    data = dict(row)
    data["state"] = ReplyState(data["state"])
    return ReplyJob(**data)


def _maintenance_entry(row: RowMapping) -> MaintenanceLogEntry:
    data = dict(row)
    data["status"] = MaintenanceStatus(data["status"])
    return MaintenanceLogEntry(**data)


class RecordStore:
    """Typed record access over a backend or an open transaction."""

    def __init__(self, executor: Executor):
        self.executor = executor

    async def _one(self, stmt) -> RowMapping | None:
        rows = await self.executor.query(stmt)
        return rows[0] if rows else None

    async def _count(self, table) -> int:
        rows = await self.executor.query(select(func.count().label("n")).select_from(table))
        return int(rows[0]["n"]) if rows else 0

    # User mappings

    async def create_user_mapping(
        self,
        review_id: str,
        chat_user_id: str,
        author_display_name: str,
        app_id: str,
        *,
        now: datetime | None = None,
    ) -> UserMapping:
        now = now or utcnow()
        values = {
            "review_id": review_id,
            "chat_user_id": chat_user_id,
            "author_display_name": author_display_name,
            "app_id": app_id,
            "created_at": now,
            "last_active_at": now,
        }
        result = await self.executor.execute(insert(t.user_mappings).values(**values))
        return UserMapping(id=result.inserted_id, **values)

    async def get_user_mapping_by_review_id(self, review_id: str) -> UserMapping | None:
        row = await self._one(select(t.user_mappings).where(t.user_mappings.c.review_id == review_id))
        return _user_mapping(row) if row else None

    async def get_user_mapping_by_chat_user_id(self, chat_user_id: str) -> UserMapping | None:
        row = await self._one(select(t.user_mappings).where(t.user_mappings.c.chat_user_id == chat_user_id))
        return _user_mapping(row) if row else None

    async def touch_user_mapping(self, review_id: str, *, now: datetime | None = None) -> bool:
        result = await self.executor.execute(
            update(t.user_mappings)
            .where(t.user_mappings.c.review_id == review_id)
            .values(last_active_at=now or utcnow())
        )
        return result.rowcount > 0

    async def delete_user_mapping(self, review_id: str) -> bool:
        result = await self.executor.execute(
            delete(t.user_mappings).where(t.user_mappings.c.review_id == review_id)
        )
        return result.rowcount > 0

    async def list_user_mappings(self, app_id: str | None = None) -> list[UserMapping]:
        stmt = select(t.user_mappings).order_by(t.user_mappings.c.id)
        if app_id is not None:
            stmt = stmt.where(t.user_mappings.c.app_id == app_id)
        return [_user_mapping(row) for row in await self.executor.query(stmt)]

    async def delete_inactive_user_mappings(self, older_than: datetime) -> int:
        result = await self.executor.execute(
            delete(t.user_mappings).where(t.user_mappings.c.last_active_at < older_than)
        )
        return result.rowcount

    # Room mappings

    async def create_room_mapping(
        self,
        app_id: str,
        chat_room_id: str,
        app_display_name: str,
        room_kind: RoomKind = RoomKind.REVIEWS,
        *,
        is_primary: bool = False,
        config: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RoomMapping:
        now = now or utcnow()
        values = {
            "app_id": app_id,
            "chat_room_id": chat_room_id,
            "app_display_name": app_display_name,
            "room_kind": RoomKind(room_kind).value,
            "is_primary": is_primary,
            "config": dict(config or {}),
            "created_at": now,
            "updated_at": now,
        }
        result = await self.executor.execute(insert(t.room_mappings).values(**values))
        values["room_kind"] = RoomKind(room_kind)
        return RoomMapping(id=result.inserted_id, **values)

    async def get_room_mapping(self, mapping_id: int) -> RoomMapping | None:
        row = await self._one(select(t.room_mappings).where(t.room_mappings.c.id == mapping_id))
        return _room_mapping(row) if row else None

    async def get_room_mapping_by_room_id(self, chat_room_id: str) -> RoomMapping | None:
        row = await self._one(select(t.room_mappings).where(t.room_mappings.c.chat_room_id == chat_room_id))
        return _room_mapping(row) if row else None

    async def list_room_mappings(self, app_id: str | None = None) -> list[RoomMapping]:
        stmt = select(t.room_mappings).order_by(t.room_mappings.c.id)
        if app_id is not None:
            stmt = stmt.where(t.room_mappings.c.app_id == app_id)
        return [_room_mapping(row) for row in await self.executor.query(stmt)]

    async def get_primary_room_mapping(self, app_id: str, room_kind: RoomKind) -> RoomMapping | None:
        row = await self._one(
            select(t.room_mappings).where(
                and_(
                    t.room_mappings.c.app_id == app_id,
                    t.room_mappings.c.room_kind == RoomKind(room_kind).value,
                    t.room_mappings.c.is_primary.is_(True),
                )
            )
        )
        return _room_mapping(row) if row else None

    async def update_room_mapping(
        self,
        mapping_id: int,
        *,
        app_id: str | None = None,
        app_display_name: str | None = None,
        room_kind: RoomKind | None = None,
        is_primary: bool | None = None,
        config: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> bool:
        values: dict[str, Any] = {"updated_at": now or utcnow()}
        if app_id is not None:
            values["app_id"] = app_id
        if app_display_name is not None:
            values["app_display_name"] = app_display_name
        if room_kind is not None:
            values["room_kind"] = RoomKind(room_kind).value
        if is_primary is not None:
            values["is_primary"] = is_primary
        if config is not None:
            values["config"] = dict(config)
        result = await self.executor.execute(
            update(t.room_mappings).where(t.room_mappings.c.id == mapping_id).values(**values)
        )
        return result.rowcount > 0

    async def delete_room_mapping(self, mapping_id: int) -> bool:
        """Delete a room mapping; its message mappings go with it (cascade)."""
        result = await self.executor.execute(delete(t.room_mappings).where(t.room_mappings.c.id == mapping_id))
        return result.rowcount > 0

    # Message mappings

    async def create_message_mapping(
        self,
        external_review_id: str,
        chat_event_id: str,
        chat_room_id: str,
        kind: MessageKind,
        app_id: str,
        *,
        now: datetime | None = None,
    ) -> MessageMapping:
        now = now or utcnow()
        values = {
            "external_review_id": external_review_id,
            "chat_event_id": chat_event_id,
            "chat_room_id": chat_room_id,
            "kind": MessageKind(kind).value,
            "app_id": app_id,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.executor.execute(insert(t.message_mappings).values(**values))
        values["kind"] = MessageKind(kind)
        return MessageMapping(id=result.inserted_id, **values)

    async def get_message_mapping_by_event_id(self, chat_event_id: str) -> MessageMapping | None:
        row = await self._one(
            select(t.message_mappings).where(t.message_mappings.c.chat_event_id == chat_event_id)
        )
        return _message_mapping(row) if row else None

    async def list_message_mappings_for_review(
        self, review_id: str, kind: MessageKind | None = None
    ) -> list[MessageMapping]:
        stmt = (
            select(t.message_mappings)
            .where(t.message_mappings.c.external_review_id == review_id)
            .order_by(t.message_mappings.c.id)
        )
        if kind is not None:
            stmt = stmt.where(t.message_mappings.c.kind == MessageKind(kind).value)
        return [_message_mapping(row) for row in await self.executor.query(stmt)]

    async def has_message_mapping(self, review_id: str, kind: MessageKind) -> bool:
        row = await self._one(
            select(t.message_mappings.c.id)
            .where(
                and_(
                    t.message_mappings.c.external_review_id == review_id,
                    t.message_mappings.c.kind == MessageKind(kind).value,
                )
            )
            .limit(1)
        )
        return row is not None

    async def delete_message_mapping(self, mapping_id: int) -> bool:
        result = await self.executor.execute(
            delete(t.message_mappings).where(t.message_mappings.c.id == mapping_id)
        )
        return result.rowcount > 0

    # Reviews

    async def upsert_review(self, review: ReviewRecord) -> None:
        await self.executor.upsert(t.reviews, asdict(review), ["review_id"])

    async def get_review(self, review_id: str) -> ReviewRecord | None:
        row = await self._one(select(t.reviews).where(t.reviews.c.review_id == review_id))
        return _review(row) if row else None

    async def list_reviews_for_app(self, app_id: str, limit: int = 100) -> list[ReviewRecord]:
        stmt = (
            select(t.reviews)
            .where(t.reviews.c.app_id == app_id)
            .order_by(t.reviews.c.last_modified_at.desc())
            .limit(limit)
        )
        return [_review(row) for row in await self.executor.query(stmt)]

    async def get_reviews_modified_since(self, since: datetime, app_id: str | None = None) -> list[ReviewRecord]:
        """Reviews with ``last_modified_at >= since``, oldest first."""
        stmt = select(t.reviews).where(t.reviews.c.last_modified_at >= since)
        if app_id is not None:
            stmt = stmt.where(t.reviews.c.app_id == app_id)
        stmt = stmt.order_by(t.reviews.c.last_modified_at, t.reviews.c.review_id)
        return [_review(row) for row in await self.executor.query(stmt)]

    async def latest_review_modified_at(self, app_id: str) -> datetime | None:
        """The sync watermark: newest ``last_modified_at`` stored for the app."""
        col = t.reviews.c.last_modified_at
        row = await self._one(
            select(col).where(t.reviews.c.app_id == app_id).order_by(col.desc()).limit(1)
        )
        return row["last_modified_at"] if row else None

    async def oldest_undelivered_review_modified_at(self, app_id: str) -> datetime | None:
        """Oldest review whose puppet was registered but never delivered.

        Such reviews sit below the watermark after a failed delivery; the
        scheduler lowers its fetch window to pick them up again.
        """
        delivered = (
            select(t.message_mappings.c.id)
            .where(
                and_(
                    t.message_mappings.c.external_review_id == t.reviews.c.review_id,
                    t.message_mappings.c.kind == MessageKind.REVIEW.value,
                )
            )
            .exists()
        )
        stmt = (
            select(func.min(t.reviews.c.last_modified_at).label("oldest"))
            .select_from(t.reviews.join(t.user_mappings, t.user_mappings.c.review_id == t.reviews.c.review_id))
            .where(and_(t.reviews.c.app_id == app_id, ~delivered))
        )
        row = await self._one(stmt)
        return row["oldest"] if row else None

    async def update_review_reply(
        self,
        review_id: str,
        reply_text: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        existing = await self.get_review(review_id)
        if existing is None:
            return False
        values = {
            "has_reply": True,
            "reply_text": reply_text,
            "reply_modified_at": now,
            "reply_created_at": existing.reply_created_at or now,
        }
        result = await self.executor.execute(
            update(t.reviews).where(t.reviews.c.review_id == review_id).values(**values)
        )
        return result.rowcount > 0

    async def delete_review(self, review_id: str) -> bool:
        result = await self.executor.execute(delete(t.reviews).where(t.reviews.c.review_id == review_id))
        return result.rowcount > 0

    # Chat messages

    async def upsert_chat_message(self, message: ChatMessageRecord) -> None:
        await self.executor.upsert(t.chat_messages, asdict(message), ["event_id"])

    async def get_chat_message(self, event_id: str) -> ChatMessageRecord | None:
        row = await self._one(select(t.chat_messages).where(t.chat_messages.c.event_id == event_id))
        return _chat_message(row) if row else None

    async def list_chat_messages_for_room(self, room_id: str, limit: int = 100) -> list[ChatMessageRecord]:
        stmt = (
            select(t.chat_messages)
            .where(t.chat_messages.c.room_id == room_id)
            .order_by(t.chat_messages.c.timestamp.desc())
            .limit(limit)
        )
        return [_chat_message(row) for row in await self.executor.query(stmt)]

    async def delete_chat_message(self, event_id: str) -> bool:
        result = await self.executor.execute(delete(t.chat_messages).where(t.chat_messages.c.event_id == event_id))
        return result.rowcount > 0

    async def delete_chat_messages_before(self, instant: datetime) -> int:
        result = await self.executor.execute(delete(t.chat_messages).where(t.chat_messages.c.timestamp < instant))
        return result.rowcount

    # App configs

    async def save_app_config(
        self, app_id: str, config_document: Mapping[str, Any], *, now: datetime | None = None
    ) -> AppConfigRecord:
        now = now or utcnow()
        existing = await self.get_app_config(app_id)
        created_at = existing.created_at if existing else now
        values = {
            "app_id": app_id,
            "config_document": dict(config_document),
            "created_at": created_at,
            "updated_at": now,
        }
        await self.executor.upsert(t.app_configs, values, ["app_id"])
        return AppConfigRecord(**values)

    async def get_app_config(self, app_id: str) -> AppConfigRecord | None:
        row = await self._one(select(t.app_configs).where(t.app_configs.c.app_id == app_id))
        return AppConfigRecord(**dict(row)) if row else None

    async def list_app_configs(self) -> list[AppConfigRecord]:
        rows = await self.executor.query(select(t.app_configs).order_by(t.app_configs.c.app_id))
        return [AppConfigRecord(**dict(row)) for row in rows]

    async def delete_app_config(self, app_id: str) -> bool:
        result = await self.executor.execute(delete(t.app_configs).where(t.app_configs.c.app_id == app_id))
        return result.rowcount > 0

    # Reply queue

    async def put_reply_job(self, job: ReplyJob) -> None:
        """Insert a job, replacing any earlier job for the same review."""
        values = asdict(job)
        values["state"] = ReplyState(job.state).value
        await self.executor.upsert(t.reply_queue, values, ["review_id"])

    async def get_reply_job(self, review_id: str) -> ReplyJob | None:
        row = await self._one(select(t.reply_queue).where(t.reply_queue.c.review_id == review_id))
        return _reply_job(row) if row else None

    async def list_due_reply_jobs(self, now: datetime, limit: int = 50) -> list[ReplyJob]:
        stmt = (
            select(t.reply_queue)
            .where(
                and_(
                    t.reply_queue.c.state == ReplyState.QUEUED.value,
                    t.reply_queue.c.next_attempt_at <= now,
                )
            )
            .order_by(t.reply_queue.c.next_attempt_at, t.reply_queue.c.created_at)
            .limit(limit)
        )
        return [_reply_job(row) for row in await self.executor.query(stmt)]

    async def list_reply_jobs(self, app_id: str | None = None, state: ReplyState | None = None) -> list[ReplyJob]:
        stmt = select(t.reply_queue).order_by(t.reply_queue.c.created_at)
        if app_id is not None:
            stmt = stmt.where(t.reply_queue.c.app_id == app_id)
        if state is not None:
            stmt = stmt.where(t.reply_queue.c.state == ReplyState(state).value)
        return [_reply_job(row) for row in await self.executor.query(stmt)]

    async def update_reply_job(
        self,
        review_id: str,
        *,
        state: ReplyState,
        attempts: int | None = None,
        next_attempt_at: datetime | None = None,
        last_error: str | None = None,
        clear_error: bool = False,
        sent_at: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        values: dict[str, Any] = {"state": ReplyState(state).value, "updated_at": now or utcnow()}
        if attempts is not None:
            values["attempts"] = attempts
        if next_attempt_at is not None:
            values["next_attempt_at"] = next_attempt_at
        if last_error is not None:
            values["last_error"] = last_error
        elif clear_error:
            values["last_error"] = None
        if sent_at is not None:
            values["sent_at"] = sent_at
        result = await self.executor.execute(
            update(t.reply_queue).where(t.reply_queue.c.review_id == review_id).values(**values)
        )
        return result.rowcount > 0

    async def requeue_stalled_reply_jobs(self, *, now: datetime | None = None) -> int:
        """Jobs left in SENDING (or FAILED) by a crash go back to QUEUED."""
        now = now or utcnow()
        result = await self.executor.execute(
            update(t.reply_queue)
            .where(t.reply_queue.c.state.in_([ReplyState.SENDING.value, ReplyState.FAILED.value]))
            .values(state=ReplyState.QUEUED.value, next_attempt_at=now, updated_at=now)
        )
        return result.rowcount

    async def count_reply_jobs_by_state(self) -> dict[str, dict[str, int]]:
        """``{app_id: {state: count}}`` across the whole queue."""
        stmt = select(
            t.reply_queue.c.app_id,
            t.reply_queue.c.state,
            func.count().label("n"),
        ).group_by(t.reply_queue.c.app_id, t.reply_queue.c.state)
        counts: dict[str, dict[str, int]] = {}
        for row in await self.executor.query(stmt):
            counts.setdefault(row["app_id"], {})[row["state"]] = int(row["n"])
        return counts

    async def last_reply_errors(self) -> dict[str, str]:
        """Most recent error message per app, if any job recorded one."""
        stmt = (
            select(t.reply_queue.c.app_id, t.reply_queue.c.last_error)
            .where(t.reply_queue.c.last_error.is_not(None))
            .order_by(t.reply_queue.c.updated_at)
        )
        errors: dict[str, str] = {}
        for row in await self.executor.query(stmt):
            errors[row["app_id"]] = row["last_error"]
        return errors

    # Maintenance log

    async def log_maintenance(
        self,
        operation_type: str,
        *,
        records_affected: int = 0,
        status: MaintenanceStatus = MaintenanceStatus.SUCCESS,
        operation_details: str | None = None,
        duration_ms: int | None = None,
        now: datetime | None = None,
    ) -> MaintenanceLogEntry:
        values = {
            "operation_type": operation_type,
            "operation_details": operation_details,
            "records_affected": records_affected,
            "executed_at": now or utcnow(),
            "duration_ms": duration_ms,
            "status": MaintenanceStatus(status).value,
        }
        result = await self.executor.execute(insert(t.maintenance_log).values(**values))
        values["status"] = MaintenanceStatus(status)
        return MaintenanceLogEntry(id=result.inserted_id, **values)

    async def list_maintenance_log(self, limit: int = 50) -> list[MaintenanceLogEntry]:
        stmt = select(t.maintenance_log).order_by(t.maintenance_log.c.id.desc()).limit(limit)
        return [_maintenance_entry(row) for row in await self.executor.query(stmt)]

    # Stats

    async def storage_stats(self) -> StorageStats:
        return StorageStats(
            user_mappings=await self._count(t.user_mappings),
            room_mappings=await self._count(t.room_mappings),
            message_mappings=await self._count(t.message_mappings),
            reviews=await self._count(t.reviews),
            chat_messages=await self._count(t.chat_messages),
            reply_jobs=await self._count(t.reply_queue),
        )
