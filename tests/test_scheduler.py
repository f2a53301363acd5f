"""Tests for per-app review polling."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from review_bridge.clients.googleplay import GooglePlayClient
from review_bridge.errors import TransientDeliveryError
from review_bridge.sync.scheduler import AppPoller, PollOptions, PollState, ReviewSyncScheduler

from tests.conftest import APP_ID, BASE_TIME, ROOM_ID, make_review
from tests.test_clients import review_item


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
async def poller(mapping, review_source, chat, clock):
    await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
    return AppPoller(PollOptions(APP_ID, ROOM_ID), mapping, review_source, chat, clock=clock)


class TestPollOnce:
    """Tests for a single fetch/reconcile cycle."""

    async def test_new_reviews_bridged_once(self, poller, mapping, review_source, chat):
        """Three new reviews are delivered; polling them again delivers nothing."""
        reviews = [make_review(f"r{i}", minutes=i) for i in range(3)]
        review_source.fetch_reviews.return_value = reviews

        first = await poller.poll_once()
        second = await poller.poll_once()

        assert first.bridged == 3
        assert second.bridged == 0
        assert second.updated == 3
        assert chat.deliver_review.await_count == 3
        for review in reviews:
            assert await mapping.is_review_bridged(review.review_id)

    async def test_first_poll_uses_lookback(self, poller, review_source, clock):
        await poller.poll_once()

        review_source.fetch_reviews.assert_awaited_once_with(APP_ID, clock() - timedelta(days=7), 100)

    async def test_watermark_follows_latest_review(self, poller, review_source):
        latest = make_review("r2", minutes=20)
        review_source.fetch_reviews.return_value = [make_review("r1"), latest]
        await poller.poll_once()

        assert await poller.watermark() == latest.last_modified_at

    async def test_delivered_in_modification_order(self, poller, review_source, chat):
        review_source.fetch_reviews.return_value = [make_review("late", minutes=9), make_review("early", minutes=1)]

        await poller.poll_once()

        delivered = [call.args[0].review_id for call in chat.deliver_review.await_args_list]
        assert delivered == ["early", "late"]

    async def test_puppet_created_before_delivery(self, poller, review_source, chat):
        review_source.fetch_reviews.return_value = [make_review("r1")]

        await poller.poll_once()

        chat.create_puppet_user.assert_awaited_once_with("r1", "Author r1")
        assert chat.deliver_review.await_args.args[1] == ROOM_ID

    async def test_edited_review_updates_store_only(self, poller, mapping, review_source, chat):
        """An already bridged review is refreshed, not delivered again."""
        review_source.fetch_reviews.return_value = [make_review("r1")]
        await poller.poll_once()

        edited = make_review("r1", edited_minutes=30, text="Changed my mind", star_rating=2)
        review_source.fetch_reviews.return_value = [edited]
        result = await poller.poll_once()

        assert result.updated == 1
        assert chat.deliver_review.await_count == 1
        stored = await mapping.records.get_review("r1")
        assert stored.text == "Changed my mind"
        assert stored.star_rating == 2

    async def test_filtered_reviews_stored_not_delivered(self, poller, mapping, review_source, chat):
        await mapping.update_room_config(ROOM_ID, {"min_rating_to_forward": 3})
        review_source.fetch_reviews.return_value = [make_review("low", star_rating=1), make_review("high")]

        result = await poller.poll_once()

        assert result.filtered == 1
        assert result.bridged == 1
        assert await mapping.records.get_review("low") is not None
        assert not await mapping.is_review_bridged("low")
        assert poller.status.reviews_filtered == 1

    async def test_fetch_failure_is_contained(self, poller, review_source):
        """A failing fetch is recorded in the status and does not raise."""
        review_source.fetch_reviews.side_effect = TransientDeliveryError("HTTP 503", "googleplay", 503)

        result = await poller.poll_once()

        assert result.error is not None
        assert poller.status.errors == 1
        assert "HTTP 503" in poller.status.last_error
        assert poller.status.state == PollState.IDLE
        assert poller.status.last_success_at is None

    async def test_failed_delivery_does_not_block_others(self, poller, mapping, review_source, chat):
        """One review failing leaves the rest bridged and the failure retried later."""
        reviews = [make_review(f"r{i}", minutes=i) for i in range(3)]
        review_source.fetch_reviews.return_value = reviews
        delivered = iter(["$a", TransientDeliveryError("timeout", "matrix"), "$c"])

        def deliver(review, room_id):
            outcome = next(delivered)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        chat.deliver_review.side_effect = deliver

        result = await poller.poll_once()

        assert result.bridged == 2
        assert result.failed == 1
        assert not await mapping.is_review_bridged("r1")
        # The next fetch reaches back to the undelivered review.
        assert await poller.watermark() == reviews[1].last_modified_at

        chat.deliver_review.side_effect = lambda review, room_id: f"$retry-{review.review_id}"
        retry = await poller.poll_once()

        assert retry.bridged == 1
        assert await mapping.resolve_review_for_chat_event("$retry-r1") == "r1"

    async def test_puppet_failure_lowers_watermark_in_memory(self, poller, review_source, chat):
        reviews = [make_review("r0", minutes=0), make_review("r1", minutes=5)]
        review_source.fetch_reviews.return_value = reviews
        chat.create_puppet_user.side_effect = [TransientDeliveryError("down", "matrix"), "@p1:example.org"]

        result = await poller.poll_once()

        assert result.failed == 1
        assert await poller.watermark() == reviews[0].last_modified_at

    async def test_backlog_beyond_fetch_limit_is_not_skipped(self, mapping, chat, clock):
        """A backlog bigger than one fetch drains over several polls, oldest first.

        The API serves small pages newest first, so a client that kept the
        first reviews it saw would push the watermark past older ones.
        """
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        items = [review_item(f"r{i}", BASE_TIME - timedelta(hours=1) + timedelta(minutes=i)) for i in range(5)]
        newest_first = list(reversed(items))

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params.get("token") or 0)
            body = {"reviews": newest_first[page * 2 : page * 2 + 2]}
            if page * 2 + 2 < len(newest_first):
                body["tokenPagination"] = {"nextPageToken": str(page + 1)}
            return httpx.Response(200, json=body)

        source = GooglePlayClient("token", transport=httpx.MockTransport(handler))
        poller = AppPoller(PollOptions(APP_ID, ROOM_ID, max_reviews_per_poll=2), mapping, source, chat, clock=clock)
        try:
            first = await poller.poll_once()
            assert [call.args[0].review_id for call in chat.deliver_review.await_args_list] == ["r0", "r1"]
            assert first.fetched == 2
            for _ in range(4):
                await poller.poll_once()
        finally:
            await source.close()

        delivered = [call.args[0].review_id for call in chat.deliver_review.await_args_list]
        assert delivered == ["r0", "r1", "r2", "r3", "r4"]
        for i in range(5):
            assert await mapping.is_review_bridged(f"r{i}")


class TestReviewSyncScheduler:
    """Tests for the per-app polling loops."""

    async def test_start_polls_and_stop_ends_loop(self, mapping, review_source, chat, clock):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        review_source.fetch_reviews.return_value = [make_review("r1")]
        scheduler = ReviewSyncScheduler(mapping, review_source, chat, clock=clock)

        await scheduler.start(PollOptions(APP_ID, ROOM_ID, poll_interval_ms=10))
        await wait_until(lambda: review_source.fetch_reviews.await_count >= 2)

        assert scheduler.is_polling(APP_ID)
        assert await scheduler.stop(APP_ID) is True
        assert not scheduler.is_polling(APP_ID)
        assert scheduler.status(APP_ID).running is False
        assert chat.deliver_review.await_count == 1

    async def test_stop_unknown_app(self, mapping, review_source, chat):
        scheduler = ReviewSyncScheduler(mapping, review_source, chat)
        assert await scheduler.stop("com.none") is False

    async def test_failing_app_does_not_affect_others(self, mapping, review_source, chat, clock):
        """One app's errors never stop another app's loop."""
        await mapping.create_room_mapping("com.broken", "!broken:example.org", "Broken")
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")

        def fetch(app_id, since, max_results):
            if app_id == "com.broken":
                raise RuntimeError("quota exceeded")
            return [make_review("ok1", app_id=app_id)]

        review_source.fetch_reviews.side_effect = fetch
        scheduler = ReviewSyncScheduler(mapping, review_source, chat, clock=clock)
        await scheduler.start(PollOptions("com.broken", "!broken:example.org", poll_interval_ms=10))
        await scheduler.start(PollOptions(APP_ID, ROOM_ID, poll_interval_ms=10))

        await wait_until(lambda: scheduler.status(APP_ID).reviews_bridged == 1)
        await wait_until(lambda: scheduler.status("com.broken").errors >= 2)
        await scheduler.stop_all()

        assert scheduler.is_polling("com.broken") is False
        assert await mapping.is_review_bridged("ok1")
        statuses = scheduler.all_status()
        assert statuses["com.broken"].last_error == "quota exceeded"
        assert statuses[APP_ID].errors == 0

    async def test_restart_replaces_loop(self, mapping, review_source, chat):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        scheduler = ReviewSyncScheduler(mapping, review_source, chat)

        first = await scheduler.start(PollOptions(APP_ID, ROOM_ID, poll_interval_ms=60_000))
        second = await scheduler.start(PollOptions(APP_ID, ROOM_ID, poll_interval_ms=60_000))
        await scheduler.stop_all()

        assert first is not second
        assert first.status.running is False

    async def test_status_to_dict(self, poller, review_source):
        review_source.fetch_reviews.return_value = [make_review("r1")]
        await poller.poll_once()

        data = poller.status.to_dict()

        assert data["state"] == "idle"
        assert data["reviews_bridged"] == 1
        assert isinstance(data["last_poll_at"], str)
