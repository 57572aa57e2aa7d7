"""Conversation services."""

from chatloop.services.chat import ChatAgent

__all__ = ["ChatAgent"]
