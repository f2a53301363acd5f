"""Per-app review polling.

Each tracked app gets its own ``AppPoller`` and its own asyncio task. A
cycle (fetch, then reconcile every returned review) always finishes before
the next one is scheduled, and nothing that goes wrong inside a cycle
escapes it: failures are logged, counted in the app's ``PollStatus`` and
retried on a later poll.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from review_bridge.clients.base import ChatClient, ReviewSource
from review_bridge.log import component_logger
from review_bridge.mapping import MappingManager
from review_bridge.storage.models import ReviewRecord, RoomConfig
from review_bridge.storage.records import utcnow


class PollState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


@dataclass(frozen=True)
class PollOptions:
    app_id: str
    room_id: str
    poll_interval_ms: int = 300_000
    max_reviews_per_poll: int = 100
    lookback_days: int = 7

    @property
    def interval_s(self) -> float:
        return self.poll_interval_ms / 1000


@dataclass
class PollStatus:
    """Externally visible state of one app's poller."""

    app_id: str
    state: PollState = PollState.IDLE
    running: bool = False
    last_poll_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    polls: int = 0
    reviews_processed: int = 0
    reviews_bridged: int = 0
    reviews_updated: int = 0
    reviews_filtered: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("last_poll_at", "last_success_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class PollResult:
    """Counts for a single poll cycle."""

    fetched: int = 0
    bridged: int = 0
    updated: int = 0
    filtered: int = 0
    failed: int = 0
    error: str | None = None


BRIDGED = "bridged"
UPDATED = "updated"
FILTERED = "filtered"


class AppPoller:
    """Turns one app's review deltas into deliveries and mapping writes."""

    def __init__(
        self,
        options: PollOptions,
        mapping: MappingManager,
        review_source: ReviewSource,
        chat: ChatClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.options = options
        self.mapping = mapping
        self.review_source = review_source
        self.chat = chat
        self.status = PollStatus(app_id=options.app_id)
        self._clock = clock
        self._log = component_logger(logger, "scheduler", app_id=options.app_id)
        # Oldest review that failed before its puppet was registered.
        self._retry_floor: datetime | None = None

    async def watermark(self) -> datetime:
        """Lower bound for the next fetch.

        The newest stored ``last_modified_at`` for the app, or
        ``now - lookback_days`` on the first run, lowered to any review that
        failed to reach the room so it is fetched again.
        """
        records = self.mapping.records
        latest = await records.latest_review_modified_at(self.options.app_id)
        since = latest or self._clock() - timedelta(days=self.options.lookback_days)
        pending = await records.oldest_undelivered_review_modified_at(self.options.app_id)
        for floor in (pending, self._retry_floor):
            if floor is not None and floor < since:
                since = floor
        return since

    async def poll_once(self) -> PollResult:
        """Run one fetch/reconcile cycle. Never raises (except cancellation)."""
        result = PollResult()
        status = self.status
        status.polls += 1
        status.last_poll_at = self._clock()
        status.state = PollState.FETCHING
        try:
            try:
                since = await self.watermark()
                reviews = await self.review_source.fetch_reviews(
                    self.options.app_id, since, self.options.max_reviews_per_poll
                )
                room_config = await self.mapping.get_room_config(self.options.room_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(f"Review fetch failed: {e}")
                self._record_error(result, str(e))
                return result

            result.fetched = len(reviews)
            if len(reviews) >= self.options.max_reviews_per_poll:
                self._log.info(f"Fetch limit of {len(reviews)} reached; newer reviews follow on the next poll")
            status.state = PollState.RECONCILING
            failed_floor: datetime | None = None
            for review in sorted(reviews, key=lambda r: r.last_modified_at):
                try:
                    outcome = await self._reconcile(review, room_config)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._log.error(f"Bridging review {review.review_id} failed: {e}")
                    result.failed += 1
                    self._record_error(result, f"{review.review_id}: {e}")
                    if failed_floor is None or review.last_modified_at < failed_floor:
                        failed_floor = review.last_modified_at
                    continue
                status.reviews_processed += 1
                if outcome == BRIDGED:
                    result.bridged += 1
                    status.reviews_bridged += 1
                elif outcome == FILTERED:
                    result.filtered += 1
                    status.reviews_filtered += 1
                else:
                    result.updated += 1
                    status.reviews_updated += 1

            self._retry_floor = failed_floor
            if not result.failed:
                status.last_success_at = self._clock()
            if result.fetched:
                self._log.info(
                    f"Poll done: fetched={result.fetched} bridged={result.bridged} "
                    f"updated={result.updated} filtered={result.filtered} failed={result.failed}"
                )
            return result
        finally:
            status.state = PollState.IDLE

    def _record_error(self, result: PollResult, message: str) -> None:
        result.error = message
        self.status.errors += 1
        self.status.last_error = message

    async def _reconcile(self, review: ReviewRecord, room_config: RoomConfig) -> str:
        records = self.mapping.records
        if await self.mapping.is_review_bridged(review.review_id):
            await records.upsert_review(review)
            return UPDATED
        if not room_config.forwards(review):
            await records.upsert_review(review)
            return FILTERED

        chat_user_id = await self.chat.create_puppet_user(review.review_id, review.author_name)
        await self.mapping.register_puppet(review, chat_user_id)
        event_id = await self.chat.deliver_review(review, self.options.room_id)
        recorded = await self.mapping.record_bridged_review(
            review, event_id, self.options.room_id, chat_user_id=chat_user_id
        )
        if recorded:
            self._log.debug(f"Bridged review {review.review_id} as {event_id}")
            return BRIDGED
        return UPDATED


class ReviewSyncScheduler:
    """Runs one independent polling loop per app."""

    def __init__(
        self,
        mapping: MappingManager,
        review_source: ReviewSource,
        chat: ChatClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.mapping = mapping
        self.review_source = review_source
        self.chat = chat
        self._clock = clock
        self._logger = logger
        self._log = component_logger(logger, "scheduler")
        self._pollers: dict[str, AppPoller] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_events: dict[str, asyncio.Event] = {}

    def is_polling(self, app_id: str) -> bool:
        task = self._tasks.get(app_id)
        return task is not None and not task.done()

    async def start(self, options: PollOptions) -> AppPoller:
        """Start polling an app; an existing loop for it is stopped first."""
        if self.is_polling(options.app_id):
            self._log.info(f"Restarting polling for {options.app_id}")
            await self.stop(options.app_id)

        poller = AppPoller(
            options,
            self.mapping,
            self.review_source,
            self.chat,
            clock=self._clock,
            logger=self._logger,
        )
        stop = asyncio.Event()
        self._pollers[options.app_id] = poller
        self._stop_events[options.app_id] = stop
        poller.status.running = True
        self._tasks[options.app_id] = asyncio.create_task(
            self._run(poller, stop), name=f"review-poll-{options.app_id}"
        )
        self._log.info(
            f"Polling {options.app_id} every {options.interval_s:.0f}s into {options.room_id}"
        )
        return poller

    async def _run(self, poller: AppPoller, stop: asyncio.Event) -> None:
        try:
            while not stop.is_set():
                await poller.poll_once()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=poller.options.interval_s)
                except asyncio.TimeoutError:
                    continue
        finally:
            poller.status.running = False

    async def stop(self, app_id: str) -> bool:
        """Stop an app's loop, letting an in-flight cycle finish."""
        stop = self._stop_events.pop(app_id, None)
        task = self._tasks.pop(app_id, None)
        if stop is None or task is None:
            return False
        stop.set()
        await task
        self._log.info(f"Stopped polling {app_id}")
        return True

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(app_id) for app_id in list(self._tasks)))

    def status(self, app_id: str) -> PollStatus | None:
        poller = self._pollers.get(app_id)
        return poller.status if poller else None

    def all_status(self) -> dict[str, PollStatus]:
        return {app_id: poller.status for app_id, poller in self._pollers.items()}
