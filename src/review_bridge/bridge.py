"""Bridge orchestrator: wires storage, mapping, polling and replies together."""

import asyncio
import logging
import random
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from review_bridge.clients.base import ChatClient, ReviewSource
from review_bridge.config import AppConfig, Settings
from review_bridge.errors import ConfigurationError, ReplyRejectedError
from review_bridge.log import component_logger
from review_bridge.mapping import MappingManager
from review_bridge.replies.queue import ReplyDispatchQueue
from review_bridge.storage.base import StorageBackend
from review_bridge.storage.maintenance import HealthReport, check_storage_health, run_maintenance
from review_bridge.storage.migrations import MIGRATIONS, Migration, apply_pending
from review_bridge.storage.models import ReplyJob, RoomKind, RoomMapping
from review_bridge.storage.records import utcnow
from review_bridge.sync.scheduler import PollOptions, ReviewSyncScheduler

EMPTY_REPLY_STATS = {"queued": 0, "sent": 0, "dead": 0, "last_error": None}


class Bridge:
    """Process lifecycle for the Google Play <-> Matrix bridge.

    ``start`` runs migrations to completion before any polling or reply
    task exists. A failure while setting up one app is logged and recorded;
    the other apps and the reply queue still start.
    """

    def __init__(
        self,
        settings: Settings,
        storage: StorageBackend,
        review_source: ReviewSource,
        chat: ChatClient,
        *,
        puppet_user_id: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        rng: random.Random | None = None,
        migrations: Sequence[Migration] = MIGRATIONS,
    ):
        self.settings = settings
        self.storage = storage
        self.review_source = review_source
        self.chat = chat
        self.migrations = migrations
        self._logger = logger
        self._log = component_logger(logger, "bridge")
        self.mapping = MappingManager(
            storage,
            puppet_user_id=puppet_user_id or getattr(chat, "puppet_user_id", None),
            clock=clock,
            logger=logger,
        )
        self.scheduler = ReviewSyncScheduler(self.mapping, review_source, chat, clock=clock, logger=logger)
        self.replies = ReplyDispatchQueue(
            self.mapping,
            review_source,
            chat,
            policy=settings.reply_backoff,
            clock=clock,
            logger=logger,
            poll_interval_s=settings.REPLY_POLL_INTERVAL_S,
            rng=rng,
        )
        self.apps: dict[str, AppConfig] = {}
        self.app_errors: dict[str, str] = {}
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        if not self.storage.is_initialized:
            await self.storage.initialize()
        applied = await apply_pending(self.storage, self.migrations, logger=self._logger)
        if applied:
            self._log.info(f"Applied migrations {applied}")

        for app in self.settings.enabled_apps:
            try:
                await self.start_polling_reviews(app)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.app_errors[app.app_id] = str(e)
                self._log.error(f"Failed to start app {app.app_id}: {e}", extra={"app_id": app.app_id})

        await self.replies.start()
        self._started = True
        self._log.info(f"Bridge started with {len(self.apps)} app(s)")

    async def stop(self) -> None:
        """Stop polling and dispatch; in-flight work finishes first."""
        await self.scheduler.stop_all()
        await self.replies.stop()
        self._started = False
        self._log.info("Bridge stopped")

    async def effective_app_config(self, app: AppConfig) -> AppConfig:
        """Static app config with any persisted override applied."""
        record = await self.mapping.records.get_app_config(app.app_id)
        if record is None:
            return app
        try:
            return app.merged(record.config_document)
        except ValidationError as e:
            raise ConfigurationError(f"stored config for {app.app_id} is invalid: {e}") from e

    def poll_options(self, app: AppConfig) -> PollOptions:
        return PollOptions(
            app_id=app.app_id,
            room_id=app.room_id,
            poll_interval_ms=app.poll_interval_ms or self.settings.POLL_INTERVAL_MS,
            max_reviews_per_poll=app.max_reviews_per_poll or self.settings.MAX_REVIEWS_PER_POLL,
            lookback_days=app.lookback_days if app.lookback_days is not None else self.settings.LOOKBACK_DAYS,
        )

    async def start_polling_reviews(self, app: AppConfig) -> None:
        """Map the app's room and start its polling loop."""
        app = await self.effective_app_config(app)
        if not app.enabled:
            self._log.info(f"App {app.app_id} is disabled, not polling")
            return
        await self.mapping.create_room_mapping(
            app.app_id, app.room_id, app.display_name, RoomKind.REVIEWS, config=app.room_config or None
        )
        await self.mapping.create_app_room_mapping(app.app_id, app.display_name, app.room_id, is_primary=True)
        self.apps[app.app_id] = app
        self.app_errors.pop(app.app_id, None)
        await self.scheduler.start(self.poll_options(app))

    async def stop_polling_reviews(self, app_id: str) -> bool:
        return await self.scheduler.stop(app_id)

    async def update_app_config(self, app_id: str, overrides: dict[str, Any]) -> AppConfig:
        """Persist an override and (re)start polling while the bridge runs."""
        base = self.settings.app(app_id) or self.apps.get(app_id)
        if base is None:
            raise ConfigurationError(f"unknown app {app_id}")
        existing = await self.mapping.records.get_app_config(app_id)
        document = {**(existing.config_document if existing else {}), **overrides}
        try:
            merged = base.merged(document)
        except ValidationError as e:
            raise ConfigurationError(f"invalid config for {app_id}: {e}") from e
        await self.mapping.records.save_app_config(app_id, document)
        if self.scheduler.is_polling(app_id):
            await self.scheduler.stop(app_id)
            self.apps.pop(app_id, None)
        if self._started and merged.enabled:
            await self.start_polling_reviews(base)
        return merged

    async def queue_reply(
        self,
        app_id: str,
        review_id: str,
        text: str,
        chat_event_id: str,
        chat_room_id: str,
        sender_id: str,
    ) -> ReplyJob:
        return await self.replies.queue_reply(app_id, review_id, text, chat_event_id, chat_room_id, sender_id)

    async def handle_incoming_reply(
        self,
        chat_event_id: str,
        room_id: str,
        sender_id: str,
        text: str,
        *,
        in_reply_to: str,
    ) -> ReplyJob | None:
        """Turn a Matrix reply to a bridged review into a queued reply.

        Events from puppets, events already seen, rooms that are not mapped
        and replies to anything but a bridged event are ignored. A rejected
        reply is explained in the room.
        """
        if sender_id == getattr(self.chat, "bot_user_id", None) or await self.mapping.is_puppet(sender_id):
            return None
        if await self.mapping.records.get_chat_message(chat_event_id) is not None:
            return None
        room = await self.mapping.get_room_mapping(room_id)
        if room is None:
            return None
        review_id = await self.mapping.resolve_review_for_chat_event(in_reply_to)
        if review_id is None:
            self._log.debug(f"Reply {chat_event_id} targets {in_reply_to}, which is not a bridged review")
            return None

        try:
            return await self.queue_reply(room.app_id, review_id, text, chat_event_id, room_id, sender_id)
        except ReplyRejectedError as e:
            self._log.warning(f"Rejected reply {chat_event_id} for review {review_id}: {e}")
            try:
                await self.chat.send_notice(room_id, f"Reply not sent: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as notice_error:
                self._log.warning(f"Could not post rejection notice to {room_id}: {notice_error}")
            return None

    async def get_all_processing_stats(self) -> dict[str, dict[str, Any]]:
        """Polling status and reply counts per app."""
        reply_stats = await self.replies.get_all_processing_stats()
        poll_status = self.scheduler.all_status()
        stats: dict[str, dict[str, Any]] = {}
        for app_id in sorted(set(self.apps) | set(poll_status) | set(reply_stats) | set(self.app_errors)):
            status = poll_status.get(app_id)
            stats[app_id] = {
                "polling": status.to_dict() if status else None,
                "replies": reply_stats.get(app_id, dict(EMPTY_REPLY_STATS)),
                "setup_error": self.app_errors.get(app_id),
            }
        return stats

    async def create_room_mapping(
        self,
        app_id: str,
        room_id: str,
        app_name: str,
        room_kind: RoomKind | str = RoomKind.REVIEWS,
        config: dict[str, Any] | None = None,
    ) -> RoomMapping:
        return await self.mapping.create_room_mapping(app_id, room_id, app_name, room_kind, config)

    async def create_app_room_mapping(
        self, app_id: str, app_name: str, room_id: str, is_primary: bool = True
    ) -> RoomMapping:
        return await self.mapping.create_app_room_mapping(app_id, app_name, room_id, is_primary)

    async def run_maintenance(self) -> dict[str, Any]:
        return await run_maintenance(
            self.storage,
            user_retention_days=self.settings.USER_RETENTION_DAYS,
            message_retention_days=self.settings.MESSAGE_RETENTION_DAYS,
            logger=self._logger,
        )

    async def health(self) -> HealthReport:
        return await check_storage_health(self.storage, self.migrations)
