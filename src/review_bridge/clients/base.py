"""Contracts the bridge core expects from its two collaborators."""

from datetime import datetime
from typing import Protocol, runtime_checkable

from review_bridge.storage.models import ReviewRecord


@runtime_checkable
class ReviewSource(Protocol):
    """The app-store side: reads reviews and accepts developer replies."""

    async def fetch_reviews(self, app_id: str, since: datetime, max_results: int) -> list[ReviewRecord]:
        """Reviews modified at or after ``since``, at most ``max_results``.

        When more match, the oldest ``max_results`` are returned so that a
        caller advancing its watermark to the newest one skips nothing.
        """
        ...

    async def send_reply(self, app_id: str, review_id: str, text: str) -> None:
        """Post a developer reply.

        Raises:
            TransientDeliveryError: Worth retrying later.
            PermanentDeliveryError: The source refused the reply.
        """
        ...


@runtime_checkable
class ChatClient(Protocol):
    """The chat side: puppets, review delivery and notices."""

    async def deliver_review(self, review: ReviewRecord, room_id: str) -> str:
        """Post the review to the room and return the chat event id."""
        ...

    async def create_puppet_user(self, review_id: str, author_name: str) -> str:
        """Ensure the puppet for this review exists and return its user id."""
        ...

    async def send_notice(self, room_id: str, body: str) -> str:
        """Post a bot notice and return its event id."""
        ...
