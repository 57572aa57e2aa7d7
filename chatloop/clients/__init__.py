"""Backend adapters for language-model providers."""

from chatloop.clients.base import ChatBackend, ChatOptions, TokenUsage

__all__ = ["ChatBackend", "ChatOptions", "TokenUsage"]
