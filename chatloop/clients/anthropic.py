"""Anthropic Messages API backend with rate limiting and retries."""

import asyncio
import base64
import json
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeVar

from anthropic import APIError, AsyncAnthropic
from anthropic.types import ContentBlock as AnthropicContentBlock
from anthropic.types import Message
from pydantic import BaseModel, ConfigDict

from chatloop.clients.base import ChatBackend, ChatOptions, TokenUsage
from chatloop.clients.rate_limit import RateLimiter
from chatloop.models.messages import (
    Author,
    ChatMessage,
    ContentType,
    FilePart,
    FinishReason,
    TextPart,
    ToolCall,
    ToolCallResult,
)
from chatloop.tools.base import Tool
from chatloop.utils.logging import get_logger
from chatloop.utils.tokens import Tokenizer

logger = get_logger(__name__)
T = TypeVar("T")

STOP_REASONS = {
    "end_turn": FinishReason.COMPLETED,
    "stop_sequence": FinishReason.COMPLETED,
    "tool_use": FinishReason.COMPLETED,
    "max_tokens": FinishReason.TRUNCATED,
    "model_context_window_exceeded": FinishReason.TRUNCATED,
    "refusal": FinishReason.INAPPROPRIATE,
    "pause_turn": FinishReason.IN_PROGRESS,
}


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """Image content block, sourced from a URL or base64 data."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["image"] = "image"
    source: dict[str, Any]


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock


class AnthropicMessage(BaseModel):
    """Message format for Anthropic API.

    ``system`` messages never reach the API as messages; they are hoisted into
    the request's system prompt.
    """

    role: Literal["user", "assistant", "system"]
    content: str | list[ContentBlock]


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for the Anthropic backend."""

    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class AnthropicBackend(ChatBackend[AnthropicMessage]):
    """Backend talking to the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        tokenizer: Tokenizer | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        """Initialize Anthropic backend.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Backend configuration
            tokenizer: Tokenizer for window budgets (defaults to the shared one for the model)
            rate_limiter: Limiter to share between backends
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.config = config or AnthropicConfig()
        super().__init__(self.config.model, tokenizer)

        self.client = AsyncAnthropic(api_key=anthropic_api_key)
        self.rate_limiter = rate_limiter or RateLimiter(
            self.config.requests_per_minute, self.config.tokens_per_minute
        )

    def to_wire(self, message: ChatMessage) -> list[AnthropicMessage]:
        if message.has_tool_calls:
            raise ValueError("Tool calls can only be produced by the backend")

        if message.has_tool_results:
            return [
                AnthropicMessage(
                    role="user",
                    content=[self._tool_result_block(r) for r in message.tool_results],
                )
            ]

        if message.author == Author.DEVELOPER:
            return [AnthropicMessage(role="system", content=message.content)]

        blocks: list[ContentBlock] = []
        for part in message.parts:
            match part:
                case TextPart():
                    blocks.append(TextBlock(text=part.text))
                case FilePart():
                    blocks.append(self._image_block(part))
                case _:
                    raise ValueError(f"Unsupported message part: {part.type}")

        role = "assistant" if message.author == Author.BOT else "user"
        return [AnthropicMessage(role=role, content=blocks)]

    def from_wire(self, reply: AnthropicMessage, tools: Mapping[str, Tool]) -> ChatMessage:
        if isinstance(reply.content, str):
            return ChatMessage(author=Author.BOT, parts=reply.content)

        texts = [b.text for b in reply.content if isinstance(b, TextBlock)]
        tool_uses = [b for b in reply.content if isinstance(b, ToolUseBlock)]

        if tool_uses:
            calls = [
                ToolCall(id=b.id, tool_id=b.name, arguments=b.input, tool=tools.get(b.name)) for b in tool_uses
            ]
            # Text emitted next to tool calls is the model thinking aloud
            return ChatMessage(author=Author.BOT, parts=calls, reasoning="\n\n".join(texts) or None)

        return ChatMessage(author=Author.BOT, parts=[TextPart(text=t) for t in texts])

    def system_message(self, text: str) -> AnthropicMessage:
        return AnthropicMessage(role="system", content=text)

    def is_tool_result(self, message: AnthropicMessage) -> bool:
        return (
            message.role == "user"
            and isinstance(message.content, list)
            and any(isinstance(b, ToolResultBlock) for b in message.content)
        )

    def is_valid_head(self, message: AnthropicMessage) -> bool:
        # Conversations must open with a user turn
        return message.role != "assistant" and not self.is_tool_result(message)

    def tool_definitions(self, tools: Sequence[Tool]) -> list[AnthropicTool]:
        definitions = []
        for i, tool in enumerate(tools):
            # Cache control on the last tool caches all tool definitions
            cache_control = CacheControl() if i == len(tools) - 1 else None
            definitions.append(
                AnthropicTool(
                    name=tool.id,
                    description=tool.description,
                    input_schema=tool.json_schema,
                    cache_control=cache_control,
                )
            )
        return definitions

    def serialize(self, window: Sequence[AnthropicMessage]) -> str:
        return json.dumps([m.model_dump(exclude_none=True) for m in window])

    async def send(
        self,
        window: Sequence[AnthropicMessage],
        tool_definitions: Sequence[AnthropicTool],
        options: ChatOptions,
    ) -> tuple[FinishReason, AnthropicMessage]:
        system_prompt = "\n\n".join(str(m.content) for m in window if m.role == "system")
        messages = [m for m in window if m.role != "system"]

        if options.response_format is not None:
            schema = json.dumps(options.response_format.model_json_schema())
            system_prompt = (
                f"{system_prompt}\n\nWhen you answer without calling a tool, reply only with a JSON object "
                f"matching this schema:\n{schema}"
            ).strip()

        estimated_tokens = self.count_tokens(window)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.acquire(estimated_tokens, identifier=f"anthropic:{self.config.model}")

        request_params: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": options.max_new_tokens or self.config.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.config.temperature,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
        }
        if system_prompt:
            request_params["system"] = system_prompt
        if tool_definitions:
            request_params["tools"] = [t.model_dump(exclude_none=True) for t in tool_definitions]

        logger.debug(f"Making Anthropic API call with {len(messages)} messages, {len(tool_definitions)} tools")
        response: Message = await self._request_with_retries(lambda: self.client.messages.create(**request_params))

        if response.usage:
            self.usage.add(
                TokenUsage(
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                    cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
                    cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
                )
            )

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )

        finish_reason = STOP_REASONS.get(response.stop_reason or "", FinishReason.OTHER)
        reply = AnthropicMessage(role="assistant", content=self._convert_content_blocks(response.content))
        return finish_reason, reply

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            last_attempt = attempt == self.config.max_retries - 1
            try:
                return await call()

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                if status_code == 429:
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None and hasattr(response, "headers"):
                        retry_after = int(response.headers.get("retry-after", 60))

                    if retry_after < 120 and not last_attempt:
                        logger.warning(f"Rate limited by Anthropic, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif (status_code is None or status_code >= 500) and not last_attempt:
                    # Server or connection error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                raise

        raise RuntimeError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _convert_content_blocks(self, anthropic_content: list[AnthropicContentBlock]) -> list[ContentBlock]:
        """Convert Anthropic SDK content blocks to our block models."""
        converted_blocks: list[ContentBlock] = []
        for block in anthropic_content:
            block_dict = block.model_dump() if hasattr(block, "model_dump") else dict(block)

            if block_dict.get("type") == "text":
                converted_blocks.append(TextBlock.model_validate(block_dict))
            elif block_dict.get("type") == "tool_use":
                converted_blocks.append(ToolUseBlock.model_validate(block_dict))
            else:
                logger.warning(f"Skipping unsupported content block type: {block_dict.get('type')}")

        return converted_blocks

    def _tool_result_block(self, result: ToolCallResult) -> ToolResultBlock:
        return ToolResultBlock(tool_use_id=result.tool_call_id, content=result.content, is_error=result.is_error)

    def _image_block(self, part: FilePart) -> ImageBlock:
        if part.content_type != ContentType.IMAGE:
            raise ValueError(f"Anthropic backend only supports image files, got {part.mime_type}")
        if part.url is not None:
            return ImageBlock(source={"type": "url", "url": part.url})
        data = part.data
        if data is None:
            data = base64.b64encode(Path(part.path).read_bytes()).decode("ascii")
        return ImageBlock(source={"type": "base64", "media_type": part.mime_type, "data": data})
