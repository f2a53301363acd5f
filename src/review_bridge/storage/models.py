"""Record types persisted by the storage engine."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RoomKind(str, Enum):
    REVIEWS = "reviews"
    ADMIN = "admin"
    GENERAL = "general"


class MessageKind(str, Enum):
    REVIEW = "review"
    REPLY = "reply"
    NOTIFICATION = "notification"


class ReplyState(str, Enum):
    """Reply dispatch states.

    QUEUED -> SENDING -> SENT, or SENDING -> FAILED -> QUEUED (retry),
    FAILED -> DEAD once the attempt budget is spent.
    """

    QUEUED = "queued"
    SENDING = "sending"
    FAILED = "failed"
    SENT = "sent"
    DEAD = "dead"

    @property
    def in_flight(self) -> bool:
        return self in (ReplyState.QUEUED, ReplyState.SENDING, ReplyState.FAILED)


class MaintenanceStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class RoomConfig(BaseModel):
    """Typed view over the opaque ``room_mappings.config`` document.

    Only the fields the bridge reads are declared; anything else in the
    document is carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    forward_reviews: bool = True
    allow_replies: bool = True
    min_rating_to_forward: int = Field(default=0, ge=0, le=5)
    forward_updates_only: bool = False

    def forwards(self, review: "ReviewRecord") -> bool:
        """Whether this review should be posted to the room."""
        if not self.forward_reviews or review.star_rating < self.min_rating_to_forward:
            return False
        return review.is_update or not self.forward_updates_only

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "RoomConfig":
        return cls.model_validate(document or {})

    def to_document(self) -> dict[str, Any]:
        return self.model_dump()


@dataclass
class ReviewRecord:
    """A Google Play review as last observed from the source."""

    review_id: str
    app_id: str
    author_name: str
    star_rating: int
    created_at: datetime
    last_modified_at: datetime
    text: str | None = None
    language_code: str | None = None
    device: str | None = None
    os_version: str | None = None
    app_version_code: int | None = None
    app_version_name: str | None = None
    has_reply: bool = False
    reply_text: str | None = None
    reply_created_at: datetime | None = None
    reply_modified_at: datetime | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.star_rating <= 5:
            raise ValueError(f"star_rating must be between 1 and 5, got {self.star_rating}")

    @property
    def is_update(self) -> bool:
        """True when the review was edited after it was first written."""
        return self.last_modified_at > self.created_at


@dataclass
class UserMapping:
    """Puppet identity representing the author of one review."""

    id: int
    review_id: str
    chat_user_id: str
    author_display_name: str
    app_id: str
    created_at: datetime
    last_active_at: datetime


@dataclass
class RoomMapping:
    id: int
    app_id: str
    chat_room_id: str
    app_display_name: str
    room_kind: RoomKind
    is_primary: bool
    config: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @property
    def room_config(self) -> RoomConfig:
        return RoomConfig.from_document(self.config)


@dataclass
class MessageMapping:
    """Link between a review and a Matrix event delivered for it."""

    id: int
    external_review_id: str
    chat_event_id: str
    chat_room_id: str
    kind: MessageKind
    app_id: str
    created_at: datetime
    updated_at: datetime


@dataclass
class ChatMessageRecord:
    event_id: str
    room_id: str
    sender_id: str
    content: dict[str, Any]
    timestamp: datetime
    is_bridge_originated: bool = False


@dataclass
class AppConfigRecord:
    """Persisted override of an app's static configuration."""

    app_id: str
    config_document: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass
class ReplyJob:
    """Persisted reply intent, keyed by the review it answers.

    ``sent_at`` is set once Google Play accepted the reply but the local
    bookkeeping failed; such jobs are retried without sending again.
    """

    review_id: str
    app_id: str
    reply_text: str
    chat_event_id: str
    chat_room_id: str
    sender_id: str
    state: ReplyState
    attempts: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    sent_at: datetime | None = None


@dataclass
class MaintenanceLogEntry:
    id: int
    operation_type: str
    records_affected: int
    executed_at: datetime
    status: MaintenanceStatus
    operation_details: str | None = None
    duration_ms: int | None = None


@dataclass
class StorageStats:
    user_mappings: int = 0
    room_mappings: int = 0
    message_mappings: int = 0
    reviews: int = 0
    chat_messages: int = 0
    reply_jobs: int = 0
    database_size: int | None = None
