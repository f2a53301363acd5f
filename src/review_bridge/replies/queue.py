"""Reply dispatch queue (Matrix -> Google Play).

Reply intents are persisted in ``reply_queue`` keyed by review id, so at
most one reply per review is ever in flight and queued replies survive a
restart. Jobs move QUEUED -> SENDING -> SENT on success; a failed send goes
SENDING -> FAILED -> QUEUED with exponential backoff until the attempt
budget is spent, then FAILED -> DEAD. Permanent refusals go straight to
DEAD. Dead replies are reported back to the room they came from.

If recording a reply fails after Google Play accepted it, the job goes back
to QUEUED with ``sent_at`` set and the next dispatch only records it.
"""

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from review_bridge.backoff import BackoffPolicy
from review_bridge.clients.base import ChatClient, ReviewSource
from review_bridge.errors import DuplicateReplyError, PermanentDeliveryError, ReplyRejectedError
from review_bridge.log import ContextAdapter, component_logger
from review_bridge.mapping import MappingManager
from review_bridge.storage.models import ChatMessageRecord, MessageKind, ReplyJob, ReplyState
from review_bridge.storage.records import RecordStore, utcnow

TransitionCallback = Callable[[ReplyJob, ReplyState], Awaitable[None] | None]

CONFIRMATION_NOTICE = "Reply sent to Google Play review {review_id}."
FAILURE_NOTICE = "Failed to send reply to Google Play review {review_id} after {attempts} attempt(s): {error}"


class ReplyDispatchQueue:
    """Persisted, retrying dispatcher for chat-originated replies."""

    def __init__(
        self,
        mapping: MappingManager,
        review_source: ReviewSource,
        chat: ChatClient,
        *,
        policy: BackoffPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        poll_interval_s: float = 30.0,
        batch_size: int = 50,
        rng: random.Random | None = None,
        on_transition: TransitionCallback | None = None,
        send_confirmations: bool = True,
    ):
        self.mapping = mapping
        self.storage = mapping.storage
        self.records = mapping.records
        self.review_source = review_source
        self.chat = chat
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._log = component_logger(logger, "replies")
        self._poll_interval_s = poll_interval_s
        self._batch_size = batch_size
        self._rng = rng
        self._on_transition = on_transition
        self._send_confirmations = send_confirmations
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _emit(self, job: ReplyJob, state: ReplyState) -> None:
        job.state = state
        if self._on_transition is None:
            return
        result = self._on_transition(job, state)
        if inspect.isawaitable(result):
            await result

    async def queue_reply(
        self,
        app_id: str,
        review_id: str,
        text: str,
        chat_event_id: str,
        chat_room_id: str,
        sender_id: str,
    ) -> ReplyJob:
        """Persist a reply intent for later dispatch.

        Raises:
            DuplicateReplyError: The review already has a dispatched reply or
                a reply still in flight.
            ReplyRejectedError: Empty text, a room that is not mapped to
                ``app_id``, or a room that does not allow replies.
        """
        body = (text or "").strip()
        if not body:
            raise ReplyRejectedError("reply text is empty", review_id)

        now = self._clock()
        async with self.storage.transaction() as tx:
            records = RecordStore(tx)
            room = await records.get_room_mapping_by_room_id(chat_room_id)
            if room is None:
                raise ReplyRejectedError(f"room {chat_room_id} is not mapped to an app", review_id)
            if room.app_id != app_id:
                raise ReplyRejectedError(f"room {chat_room_id} belongs to {room.app_id}, not {app_id}", review_id)
            if not room.room_config.allow_replies:
                raise ReplyRejectedError(f"replies are disabled in room {chat_room_id}", review_id)
            if await records.has_message_mapping(review_id, MessageKind.REPLY):
                raise DuplicateReplyError("review already has a dispatched reply", review_id)
            existing = await records.get_reply_job(review_id)
            if existing is not None and existing.state.in_flight:
                raise DuplicateReplyError(f"a reply is already {existing.state.value}", review_id)
            job = ReplyJob(
                review_id=review_id,
                app_id=app_id,
                reply_text=body,
                chat_event_id=chat_event_id,
                chat_room_id=chat_room_id,
                sender_id=sender_id,
                state=ReplyState.QUEUED,
                attempts=0,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            await records.put_reply_job(job)
            await records.upsert_chat_message(
                ChatMessageRecord(
                    event_id=chat_event_id,
                    room_id=chat_room_id,
                    sender_id=sender_id,
                    content={"msgtype": "m.text", "body": body, "review_id": review_id},
                    timestamp=now,
                    is_bridge_originated=False,
                )
            )

        self._log.info(f"Queued reply for review {review_id} from {sender_id}", extra={"app_id": app_id})
        await self._emit(job, ReplyState.QUEUED)
        self._wakeup.set()
        return job

    async def process_due(self) -> int:
        """Dispatch every job that is due now, one at a time.

        A job whose bookkeeping blows up is logged and left for the next
        cycle; it never holds back the rest of the batch.
        """
        jobs = await self.records.list_due_reply_jobs(self._clock(), self._batch_size)
        dispatched = 0
        for job in jobs:
            if self._stopping:
                break
            try:
                await self._dispatch(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(
                    f"Dispatch of reply for review {job.review_id} failed: {e}",
                    extra={"app_id": job.app_id},
                )
                continue
            dispatched += 1
        return dispatched

    async def _dispatch(self, job: ReplyJob) -> None:
        log = self._log.bind(app_id=job.app_id, review_id=job.review_id)
        if job.sent_at is not None:
            log.info("Retrying bookkeeping for a reply Google Play already accepted")
            await self._record(job, log)
            return

        job.attempts += 1
        await self.records.update_reply_job(
            job.review_id, state=ReplyState.SENDING, attempts=job.attempts, now=self._clock()
        )
        await self._emit(job, ReplyState.SENDING)

        try:
            await self.review_source.send_reply(job.app_id, job.review_id, job.reply_text)
        except asyncio.CancelledError:
            raise
        except PermanentDeliveryError as e:
            log.error(f"Reply refused by Google Play: {e}")
            await self._fail(job, str(e), permanent=True)
            return
        except Exception as e:
            log.warning(f"Reply attempt {job.attempts} failed: {e}")
            await self._fail(job, str(e), permanent=False)
            return

        job.sent_at = self._clock()
        await self._record(job, log)

    async def _record(self, job: ReplyJob, log: ContextAdapter) -> None:
        """Record a reply Google Play accepted; on failure retry only this step."""
        try:
            recorded = await self.mapping.record_dispatched_reply(
                job.review_id, job.chat_event_id, job.chat_room_id, reply_text=job.reply_text
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            now = self._clock()
            job.last_error = f"reply sent but not recorded: {e}"
            job.next_attempt_at = now + timedelta(seconds=self.policy.delay(job.attempts, self._rng))
            log.error(f"Reply was sent but recording it failed, will retry the record: {e}")
            await self.records.update_reply_job(
                job.review_id,
                state=ReplyState.QUEUED,
                next_attempt_at=job.next_attempt_at,
                last_error=job.last_error,
                sent_at=job.sent_at,
                now=now,
            )
            await self._emit(job, ReplyState.QUEUED)
            return

        job.last_error = None
        await self._emit(job, ReplyState.SENT)
        log.info(f"Reply delivered after {job.attempts} attempt(s)")
        if recorded and self._send_confirmations:
            await self._post_notice(job, CONFIRMATION_NOTICE.format(review_id=job.review_id), record=False)

    async def _fail(self, job: ReplyJob, error: str, *, permanent: bool) -> None:
        now = self._clock()
        job.last_error = error
        await self.records.update_reply_job(job.review_id, state=ReplyState.FAILED, last_error=error, now=now)
        await self._emit(job, ReplyState.FAILED)

        if permanent or self.policy.exhausted(job.attempts):
            await self.records.update_reply_job(job.review_id, state=ReplyState.DEAD, now=now)
            await self._emit(job, ReplyState.DEAD)
            self._log.error(
                f"Reply for review {job.review_id} is dead after {job.attempts} attempt(s): {error}",
                extra={"app_id": job.app_id},
            )
            body = FAILURE_NOTICE.format(review_id=job.review_id, attempts=job.attempts, error=error)
            await self._post_notice(job, body, record=True)
            return

        delay = self.policy.delay(job.attempts, self._rng)
        job.next_attempt_at = now + timedelta(seconds=delay)
        await self.records.update_reply_job(
            job.review_id, state=ReplyState.QUEUED, next_attempt_at=job.next_attempt_at, now=now
        )
        await self._emit(job, ReplyState.QUEUED)

    async def _post_notice(self, job: ReplyJob, body: str, *, record: bool) -> None:
        """Post a notice to the originating room; failures are only logged."""
        try:
            event_id = await self.chat.send_notice(job.chat_room_id, body)
            if record:
                await self.mapping.record_notification(job.review_id, event_id, job.chat_room_id, job.app_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning(
                f"Could not post notice for review {job.review_id} to {job.chat_room_id}: {e}",
                extra={"app_id": job.app_id},
            )

    async def recover(self) -> int:
        """Requeue jobs a previous process left mid-flight."""
        count = await self.records.requeue_stalled_reply_jobs(now=self._clock())
        if count:
            self._log.warning(f"Requeued {count} reply job(s) interrupted by a restart")
        return count

    async def get_all_processing_stats(self) -> dict[str, dict[str, Any]]:
        """Per-app ``queued``/``sent``/``dead`` counts and the last error."""
        counts = await self.records.count_reply_jobs_by_state()
        errors = await self.records.last_reply_errors()
        stats: dict[str, dict[str, Any]] = {}
        for app_id in sorted(set(counts) | set(errors)):
            by_state = counts.get(app_id, {})
            stats[app_id] = {
                "queued": sum(by_state.get(s.value, 0) for s in ReplyState if s.in_flight),
                "sent": by_state.get(ReplyState.SENT.value, 0),
                "dead": by_state.get(ReplyState.DEAD.value, 0),
                "last_error": errors.get(app_id),
            }
        return stats

    async def start(self) -> None:
        if self.is_running:
            return
        await self.recover()
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="reply-dispatch")
        self._log.info("Reply dispatcher started")

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.process_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(f"Reply dispatch cycle failed: {e}")
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def stop(self) -> None:
        """Stop the loop once the job being dispatched (if any) is done."""
        if self._task is None:
            return
        self._stopping = True
        self._wakeup.set()
        await self._task
        self._task = None
        self._log.info("Reply dispatcher stopped")
