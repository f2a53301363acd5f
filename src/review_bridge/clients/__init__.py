"""Collaborator contracts and HTTP adapters for Google Play and Matrix."""

from review_bridge.clients.base import ChatClient, ReviewSource

__all__ = ["ChatClient", "ReviewSource"]
