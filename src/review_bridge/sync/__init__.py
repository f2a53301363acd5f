"""Review synchronization (Google Play -> Matrix)."""

from review_bridge.sync.scheduler import (
    AppPoller,
    PollOptions,
    PollResult,
    PollState,
    PollStatus,
    ReviewSyncScheduler,
)

__all__ = [
    "AppPoller",
    "PollOptions",
    "PollResult",
    "PollState",
    "PollStatus",
    "ReviewSyncScheduler",
]
