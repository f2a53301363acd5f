"""Shared fixtures: in-memory storage, fixed clock and fake collaborators."""

import itertools
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from review_bridge.mapping import MappingManager
from review_bridge.storage.migrations import apply_pending
from review_bridge.storage.models import ReviewRecord
from review_bridge.storage.sqlite import SQLiteStorage

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
APP_ID = "com.example.app"
ROOM_ID = "!reviews:example.org"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_review(
    review_id: str,
    *,
    app_id: str = APP_ID,
    minutes: int = 0,
    star_rating: int = 4,
    edited_minutes: int | None = None,
    text: str | None = "Nice app",
) -> ReviewRecord:
    created = BASE_TIME - timedelta(hours=1) + timedelta(minutes=minutes)
    modified = created + timedelta(minutes=edited_minutes) if edited_minutes else created
    return ReviewRecord(
        review_id=review_id,
        app_id=app_id,
        author_name=f"Author {review_id}",
        star_rating=star_rating,
        created_at=created,
        last_modified_at=modified,
        text=text,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def raw_storage():
    """An initialized in-memory SQLite backend with no schema."""
    storage = SQLiteStorage(":memory:")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def storage(raw_storage):
    """In-memory SQLite backend migrated to the latest version."""
    await apply_pending(raw_storage)
    return raw_storage


@pytest.fixture
def mapping(storage, clock):
    return MappingManager(storage, puppet_user_id=lambda rid: f"@_googleplay_{rid}:example.org", clock=clock)


@pytest.fixture
def review_source():
    source = AsyncMock()
    source.fetch_reviews.return_value = []
    source.send_reply.return_value = None
    return source


@pytest.fixture
def chat():
    """Fake Matrix client handing out unique event ids."""
    counter = itertools.count(1)
    client = AsyncMock()
    client.bot_user_id = "@googleplaybot:example.org"
    client.puppet_user_id = lambda review_id: f"@_googleplay_{review_id}:example.org"
    client.create_puppet_user.side_effect = lambda review_id, author: f"@_googleplay_{review_id}:example.org"
    client.deliver_review.side_effect = lambda review, room_id: f"$review{next(counter)}"
    client.send_notice.side_effect = lambda room_id, body: f"$notice{next(counter)}"
    return client


@pytest.fixture
def postgres_url():
    url = os.environ.get("TEST_POSTGRES_URL")
    if not url:
        pytest.skip("TEST_POSTGRES_URL not set")
    return url
