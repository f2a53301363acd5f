"""Reply dispatch (Matrix -> Google Play)."""

from review_bridge.replies.queue import ReplyDispatchQueue

__all__ = ["ReplyDispatchQueue"]
