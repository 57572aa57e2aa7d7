"""Contract every backend adapter implements."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from chatloop.models.messages import ChatCompletion, ChatMessage, FinishReason
from chatloop.tools.base import Tool
from chatloop.utils.tokens import Tokenizer, get_tokenizer


@dataclass
class ChatOptions:
    """Generation options passed along with every request."""

    temperature: float | None = None
    max_new_tokens: int | None = None
    # A pydantic model class asks for JSON output
    response_format: type[BaseModel] | None = None
    parallel_tool_calls: bool | None = None


@dataclass
class TokenUsage:
    """Token usage reported by a backend."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


W = TypeVar("W")


class ChatBackend(ABC, Generic[W]):
    """Adapter between chatloop messages and one provider's wire format.

    ``W`` is the provider's native message type. Conversation history is kept in
    that form so token counts reflect what is really sent.
    """

    def __init__(self, model: str, tokenizer: Tokenizer | None = None):
        self.model = model
        self._tokenizer = tokenizer
        self.usage = TokenUsage()

    @property
    def tokenizer(self) -> Tokenizer:
        if self._tokenizer is None:
            self._tokenizer = get_tokenizer(self.model)
        return self._tokenizer

    @abstractmethod
    def to_wire(self, message: ChatMessage) -> list[W]:
        """Translate an outbound message.

        Tool results are split into one provider record per result. Messages
        carrying tool calls are rejected with ValueError.
        """

    @abstractmethod
    def from_wire(self, reply: W, tools: Mapping[str, Tool]) -> ChatMessage:
        """Translate a reply, resolving tool calls against ``tools`` by name."""

    @abstractmethod
    def system_message(self, text: str) -> W:
        """Wire message carrying the agent personality."""

    @abstractmethod
    def is_tool_result(self, message: W) -> bool:
        """Whether a wire message carries tool results."""

    def is_valid_head(self, message: W) -> bool:
        """Whether a wire message may open a conversation window."""
        return not self.is_tool_result(message)

    @abstractmethod
    def tool_definitions(self, tools: Sequence[Tool]) -> list[Any]:
        """Provider tool definitions advertised on every call."""

    @abstractmethod
    def serialize(self, window: Sequence[W]) -> str:
        """Render a window exactly as it would be sent, for token counting."""

    @abstractmethod
    async def send(
        self, window: Sequence[W], tool_definitions: Sequence[Any], options: ChatOptions
    ) -> tuple[FinishReason, W]:
        """Call the provider with ``window`` and return its normalized finish reason and reply."""

    def count_tokens(self, window: Sequence[W]) -> int:
        return self.tokenizer.count(self.serialize(window))

    def outbound(self, messages: Iterable[ChatMessage]) -> list[W]:
        wire: list[W] = []
        for message in messages:
            if message.has_tool_calls:
                raise ValueError("Tool calls can only be produced by the backend")
            wire.extend(self.to_wire(message))
        return wire

    def normalize(self, finish_reason: FinishReason, reply: W, tools: Mapping[str, Tool]) -> ChatCompletion:
        message = self.from_wire(reply, tools)
        if message.refusal:
            finish_reason = FinishReason.INAPPROPRIATE
        return ChatCompletion(finish_reason=finish_reason, message=message)
