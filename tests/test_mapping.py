"""Tests for MappingManager invariants."""

import pytest

from review_bridge.errors import ConstraintViolation
from review_bridge.storage.models import MessageKind, ReplyState, RoomKind

from tests.conftest import APP_ID, ROOM_ID, make_review

OTHER_ROOM = "!second:example.org"


class TestRoomMappings:
    """Tests for the one-primary-room-per-app-and-kind rule."""

    async def test_first_room_becomes_primary(self, mapping):
        room = await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")

        assert room.is_primary
        assert (await mapping.get_primary_room(APP_ID)).chat_room_id == ROOM_ID

    async def test_second_room_is_not_primary_by_default(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        second = await mapping.create_room_mapping(APP_ID, OTHER_ROOM, "Example")

        assert not second.is_primary
        assert (await mapping.get_primary_room(APP_ID)).chat_room_id == ROOM_ID

    async def test_promotion_demotes_previous_primary(self, mapping):
        """Promoting a room leaves exactly one primary."""
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        await mapping.create_app_room_mapping(APP_ID, "Example", OTHER_ROOM, is_primary=True)

        rooms = await mapping.records.list_room_mappings(APP_ID)
        primaries = [r.chat_room_id for r in rooms if r.is_primary]
        assert primaries == [OTHER_ROOM]

    async def test_kinds_have_independent_primaries(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        admin = await mapping.create_room_mapping(APP_ID, OTHER_ROOM, "Example", RoomKind.ADMIN)

        assert admin.is_primary
        assert (await mapping.get_primary_room(APP_ID, RoomKind.ADMIN)).chat_room_id == OTHER_ROOM

    async def test_room_owned_by_other_app_rejected(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")

        with pytest.raises(ConstraintViolation):
            await mapping.create_room_mapping("com.other", ROOM_ID, "Other")

    async def test_remapping_same_room_updates_in_place(self, mapping):
        """Calling again for the same room keeps one row and merges config."""
        first = await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example", config={"allow_replies": False})
        second = await mapping.create_room_mapping(APP_ID, ROOM_ID, "Renamed", config={"min_rating_to_forward": 2})

        assert second.id == first.id
        assert second.is_primary
        assert second.app_display_name == "Renamed"
        config = second.room_config
        assert config.allow_replies is False
        assert config.min_rating_to_forward == 2

    async def test_room_config_defaults_for_unmapped_room(self, mapping):
        config = await mapping.get_room_config("!nowhere:example.org")
        assert config.forward_reviews and config.allow_replies

    async def test_update_room_config(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")

        updated = await mapping.update_room_config(ROOM_ID, {"forward_reviews": False, "custom": "kept"})

        assert updated.room_config.forward_reviews is False
        assert updated.config["custom"] == "kept"
        assert await mapping.update_room_config("!nowhere:example.org", {}) is None


class TestBridgedReviews:
    """Tests for recording delivered reviews."""

    @pytest.fixture(autouse=True)
    async def _room(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")

    async def test_record_creates_review_user_and_message(self, mapping):
        review = make_review("r1")

        recorded = await mapping.record_bridged_review(review, "$e1", ROOM_ID)

        assert recorded is True
        assert await mapping.is_review_bridged("r1")
        assert await mapping.records.get_review("r1") is not None
        user = await mapping.records.get_user_mapping_by_review_id("r1")
        assert user.chat_user_id == "@_googleplay_r1:example.org"
        assert await mapping.resolve_review_for_chat_event("$e1") == "r1"

    async def test_second_record_is_noop(self, mapping):
        """A review maps to at most one review event."""
        review = make_review("r1")
        await mapping.record_bridged_review(review, "$e1", ROOM_ID)

        assert await mapping.record_bridged_review(review, "$e2", ROOM_ID) is False

        events = await mapping.records.list_message_mappings_for_review("r1", MessageKind.REVIEW)
        assert [m.chat_event_id for m in events] == ["$e1"]

    async def test_register_puppet_before_delivery(self, mapping):
        """The puppet and review exist before any event is recorded."""
        review = make_review("r1")

        user = await mapping.register_puppet(review, "@p1:example.org")

        assert user.chat_user_id == "@p1:example.org"
        assert await mapping.is_puppet("@p1:example.org")
        assert not await mapping.is_review_bridged("r1")
        assert await mapping.records.oldest_undelivered_review_modified_at(APP_ID) == review.last_modified_at

    async def test_record_reuses_registered_puppet(self, mapping):
        review = make_review("r1")
        await mapping.register_puppet(review, "@p1:example.org")

        await mapping.record_bridged_review(review, "$e1", ROOM_ID, chat_user_id="@other:example.org")

        assert len(await mapping.records.list_user_mappings()) == 1
        assert await mapping.records.oldest_undelivered_review_modified_at(APP_ID) is None

    async def test_failed_write_leaves_nothing(self, mapping):
        """A constraint failure in the last step rolls back the review and user."""
        await mapping.record_bridged_review(make_review("r1"), "$taken", ROOM_ID)

        with pytest.raises(ConstraintViolation):
            await mapping.record_bridged_review(make_review("r2"), "$taken", ROOM_ID)

        assert await mapping.records.get_review("r2") is None
        assert await mapping.records.get_user_mapping_by_review_id("r2") is None

    async def test_unknown_event_resolves_to_none(self, mapping):
        assert await mapping.resolve_review_for_chat_event("$missing") is None


class TestDispatchedReplies:
    """Tests for recording replies and notifications."""

    @pytest.fixture(autouse=True)
    async def _bridged(self, mapping):
        await mapping.create_room_mapping(APP_ID, ROOM_ID, "Example")
        await mapping.record_bridged_review(make_review("r1"), "$e1", ROOM_ID)

    async def test_record_reply(self, mapping):
        recorded = await mapping.record_dispatched_reply("r1", "$reply", ROOM_ID, reply_text="Thanks!")

        assert recorded
        assert await mapping.has_dispatched_reply("r1")
        review = await mapping.records.get_review("r1")
        assert review.has_reply and review.reply_text == "Thanks!"

    async def test_second_reply_not_recorded(self, mapping):
        """At most one reply mapping per review."""
        await mapping.record_dispatched_reply("r1", "$reply", ROOM_ID)

        assert await mapping.record_dispatched_reply("r1", "$reply2", ROOM_ID) is False
        assert len(await mapping.records.list_message_mappings_for_review("r1", MessageKind.REPLY)) == 1

    async def test_reply_to_unknown_review_rejected(self, mapping):
        with pytest.raises(ConstraintViolation):
            await mapping.record_dispatched_reply("ghost", "$reply", ROOM_ID)

    async def test_record_reply_marks_job_sent(self, mapping, clock):
        from review_bridge.storage.models import ReplyJob

        now = clock()
        await mapping.records.put_reply_job(
            ReplyJob("r1", APP_ID, "Thanks", "$m1", ROOM_ID, "@dev:example.org", ReplyState.SENDING, 1, now, now, now)
        )

        await mapping.record_dispatched_reply("r1", "$m1", ROOM_ID)

        job = await mapping.records.get_reply_job("r1")
        assert job.state == ReplyState.SENT

    async def test_notifications_are_separate(self, mapping):
        await mapping.record_notification("r1", "$n1", ROOM_ID, APP_ID)

        assert not await mapping.has_dispatched_reply("r1")
        assert await mapping.resolve_review_for_chat_event("$n1") == "r1"

    async def test_record_chat_message(self, mapping):
        await mapping.record_chat_message("$c1", ROOM_ID, "@dev:example.org", {"body": "hi"})

        stored = await mapping.records.get_chat_message("$c1")
        assert stored.content == {"body": "hi"}
        assert stored.is_bridge_originated is False
