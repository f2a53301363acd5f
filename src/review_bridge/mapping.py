"""Mapping manager: the invariants that span more than one record.

Every business operation that writes more than one row runs in a single
storage transaction. Uniqueness is enforced by the schema and checked here
first, so the expected duplicate paths (re-bridging a review, replying
twice) become no-ops instead of surfacing constraint errors.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from review_bridge.errors import ConstraintViolation
from review_bridge.log import component_logger
from review_bridge.storage.base import StorageBackend
from review_bridge.storage.models import (
    ChatMessageRecord,
    MessageKind,
    MessageMapping,
    ReplyState,
    ReviewRecord,
    RoomConfig,
    RoomKind,
    RoomMapping,
    UserMapping,
)
from review_bridge.storage.records import RecordStore, utcnow


class MappingManager:
    """Translate bridge operations into atomic storage writes."""

    def __init__(
        self,
        storage: StorageBackend,
        *,
        puppet_user_id: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.storage = storage
        self.records = RecordStore(storage)
        self._puppet_user_id = puppet_user_id
        self._clock = clock
        self._log = component_logger(logger, "mapping")

    # Rooms

    async def create_app_mapping(
        self,
        app_id: str,
        room_id: str,
        app_name: str,
        room_kind: RoomKind | str = RoomKind.REVIEWS,
        *,
        promote: bool = False,
        config: dict[str, Any] | None = None,
    ) -> RoomMapping:
        """Create or update the mapping between an app and a room.

        The first room for an ``(app_id, room_kind)`` pair becomes primary.
        Later rooms are added as non-primary unless ``promote`` is set, in
        which case the current primary is demoted in the same transaction.

        Raises:
            ConstraintViolation: The room is already mapped to another app.
        """
        kind = RoomKind(room_kind)
        async with self.storage.transaction() as tx:
            records = RecordStore(tx)
            now = self._clock()
            existing = await records.get_room_mapping_by_room_id(room_id)
            if existing is not None and existing.app_id != app_id:
                raise ConstraintViolation(
                    f"room {room_id} is already mapped to app {existing.app_id}", "mapping"
                )

            primary = await records.get_primary_room_mapping(app_id, kind)
            if primary is not None and existing is not None and primary.id == existing.id:
                make_primary = True
            elif primary is None:
                make_primary = True
            elif promote:
                await records.update_room_mapping(primary.id, is_primary=False, now=now)
                self._log.info(f"Demoted room {primary.chat_room_id} for {app_id}/{kind.value}")
                make_primary = True
            else:
                make_primary = False

            if existing is None:
                document = RoomConfig.from_document(config).to_document()
                mapping = await records.create_room_mapping(
                    app_id,
                    room_id,
                    app_name,
                    kind,
                    is_primary=make_primary,
                    config=document,
                    now=now,
                )
                self._log.info(
                    f"Mapped room {room_id} to {app_id} ({kind.value}, primary={make_primary})"
                )
                return mapping

            document = existing.config
            if config is not None:
                document = RoomConfig.from_document({**existing.config, **config}).to_document()
            await records.update_room_mapping(
                existing.id,
                app_display_name=app_name,
                room_kind=kind,
                is_primary=make_primary,
                config=document,
                now=now,
            )
            updated = await records.get_room_mapping(existing.id)
        return updated

    async def create_room_mapping(
        self,
        app_id: str,
        room_id: str,
        app_name: str,
        room_kind: RoomKind | str = RoomKind.REVIEWS,
        config: dict[str, Any] | None = None,
    ) -> RoomMapping:
        return await self.create_app_mapping(app_id, room_id, app_name, room_kind, config=config)

    async def create_app_room_mapping(
        self, app_id: str, app_name: str, room_id: str, is_primary: bool = True
    ) -> RoomMapping:
        """Map an app's reviews room, promoting it to primary by default."""
        return await self.create_app_mapping(app_id, room_id, app_name, RoomKind.REVIEWS, promote=is_primary)

    async def get_primary_room(self, app_id: str, room_kind: RoomKind | str = RoomKind.REVIEWS) -> RoomMapping | None:
        return await self.records.get_primary_room_mapping(app_id, RoomKind(room_kind))

    async def get_room_mapping(self, room_id: str) -> RoomMapping | None:
        return await self.records.get_room_mapping_by_room_id(room_id)

    async def get_room_config(self, room_id: str) -> RoomConfig:
        """Typed room config; unmapped rooms get the defaults."""
        mapping = await self.records.get_room_mapping_by_room_id(room_id)
        return mapping.room_config if mapping else RoomConfig()

    async def update_room_config(self, room_id: str, changes: dict[str, Any]) -> RoomMapping | None:
        mapping = await self.records.get_room_mapping_by_room_id(room_id)
        if mapping is None:
            return None
        document = RoomConfig.from_document({**mapping.config, **changes}).to_document()
        await self.records.update_room_mapping(mapping.id, config=document, now=self._clock())
        return await self.records.get_room_mapping(mapping.id)

    # Reviews

    async def is_review_bridged(self, review_id: str) -> bool:
        return await self.records.has_message_mapping(review_id, MessageKind.REVIEW)

    async def has_dispatched_reply(self, review_id: str) -> bool:
        return await self.records.has_message_mapping(review_id, MessageKind.REPLY)

    async def register_puppet(self, review: ReviewRecord, chat_user_id: str) -> UserMapping:
        """Persist the review and its puppet before anything is delivered."""
        async with self.storage.transaction() as tx:
            records = RecordStore(tx)
            now = self._clock()
            await records.upsert_review(review)
            user = await records.get_user_mapping_by_review_id(review.review_id)
            if user is not None:
                await records.touch_user_mapping(review.review_id, now=now)
                user.last_active_at = now
                return user
            return await records.create_user_mapping(
                review.review_id, chat_user_id, review.author_name, review.app_id, now=now
            )

    async def record_bridged_review(
        self,
        review: ReviewRecord,
        chat_event_id: str,
        room_id: str,
        *,
        chat_user_id: str | None = None,
    ) -> bool:
        """Atomically record a delivered review.

        Upserts the review, creates the author's puppet mapping if absent and
        links the review to ``chat_event_id``. A second call for the same
        review writes nothing.

        Returns:
            True if the review was recorded now, False if it was already
            bridged.
        """
        try:
            async with self.storage.transaction() as tx:
                records = RecordStore(tx)
                if await records.has_message_mapping(review.review_id, MessageKind.REVIEW):
                    return False
                now = self._clock()
                await records.upsert_review(review)
                user = await records.get_user_mapping_by_review_id(review.review_id)
                if user is None:
                    await records.create_user_mapping(
                        review.review_id,
                        chat_user_id or self._default_puppet_id(review.review_id),
                        review.author_name,
                        review.app_id,
                        now=now,
                    )
                else:
                    await records.touch_user_mapping(review.review_id, now=now)
                await records.create_message_mapping(
                    review.review_id, chat_event_id, room_id, MessageKind.REVIEW, review.app_id, now=now
                )
        except ConstraintViolation:
            # Lost a race with another writer bridging the same review.
            if await self.is_review_bridged(review.review_id):
                self._log.debug(f"Review {review.review_id} bridged concurrently, skipping")
                return False
            raise
        return True

    def _default_puppet_id(self, review_id: str) -> str:
        if self._puppet_user_id is None:
            raise ValueError(f"no puppet user id for review {review_id}")
        return self._puppet_user_id(review_id)

    async def is_puppet(self, chat_user_id: str) -> bool:
        return await self.records.get_user_mapping_by_chat_user_id(chat_user_id) is not None

    # Replies and notices

    async def record_dispatched_reply(
        self,
        review_id: str,
        chat_event_id: str,
        room_id: str,
        *,
        reply_text: str | None = None,
    ) -> bool:
        """Atomically record a reply that reached the review source.

        Creates the reply mapping, marks the review as replied, refreshes the
        author's puppet and closes the queue job.

        Returns:
            True if recorded now, False if a reply was already recorded.
        """
        async with self.storage.transaction() as tx:
            records = RecordStore(tx)
            if await records.has_message_mapping(review_id, MessageKind.REPLY):
                return False
            now = self._clock()
            review = await records.get_review(review_id)
            job = await records.get_reply_job(review_id)
            if review is None and job is None:
                raise ConstraintViolation(f"unknown review {review_id}", "mapping")
            app_id = review.app_id if review is not None else job.app_id
            await records.create_message_mapping(
                review_id, chat_event_id, room_id, MessageKind.REPLY, app_id, now=now
            )
            text = reply_text or (job.reply_text if job is not None else None)
            if review is not None and text:
                await records.update_review_reply(review_id, text, now=now)
            await records.touch_user_mapping(review_id, now=now)
            if job is not None:
                await records.update_reply_job(review_id, state=ReplyState.SENT, clear_error=True, now=now)
        return True

    async def record_notification(
        self, review_id: str, chat_event_id: str, room_id: str, app_id: str
    ) -> MessageMapping:
        return await self.records.create_message_mapping(
            review_id, chat_event_id, room_id, MessageKind.NOTIFICATION, app_id, now=self._clock()
        )

    async def resolve_review_for_chat_event(self, chat_event_id: str) -> str | None:
        """Which review a chat event belongs to, if any."""
        mapping = await self.records.get_message_mapping_by_event_id(chat_event_id)
        return mapping.external_review_id if mapping else None

    async def record_chat_message(
        self,
        event_id: str,
        room_id: str,
        sender_id: str,
        content: dict[str, Any],
        *,
        bridge_originated: bool = False,
        timestamp: datetime | None = None,
    ) -> ChatMessageRecord:
        message = ChatMessageRecord(
            event_id=event_id,
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            timestamp=timestamp or self._clock(),
            is_bridge_originated=bridge_originated,
        )
        await self.records.upsert_chat_message(message)
        return message
