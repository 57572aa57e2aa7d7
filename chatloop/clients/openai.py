"""OpenAI Chat Completions backend."""

import base64
import json
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from openai import AsyncOpenAI

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
)
from chatloop.tools.base import Tool
from chatloop.utils.logging import get_logger
from chatloop.utils.tokens import Tokenizer

logger = get_logger(__name__)

FINISH_REASONS = {
    "stop": FinishReason.COMPLETED,
    "tool_calls": FinishReason.COMPLETED,
    "function_call": FinishReason.COMPLETED,
    "length": FinishReason.TRUNCATED,
    "content_filter": FinishReason.INAPPROPRIATE,
}

OpenAIMessage = dict[str, Any]


@dataclass
class OpenAIConfig:
    """Configuration for the OpenAI backend."""

    model: str = "gpt-4.1"
    base_url: str | None = None
    max_retries: int = 3
    timeout: float = 120.0
    # Role used for personality messages; older models only know "system"
    system_role: str = "developer"


class OpenAIBackend(ChatBackend[OpenAIMessage]):
    """Backend talking to the OpenAI Chat Completions API or a compatible server."""

    def __init__(
        self,
        api_key: str | None = None,
        config: OpenAIConfig | None = None,
        tokenizer: Tokenizer | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        openai_api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        self.config = config or OpenAIConfig()
        super().__init__(self.config.model, tokenizer)
        # Only throttled when a limiter is given; the SDK already backs off on 429s
        self.rate_limiter = rate_limiter

        # Retries and timeouts are handled by the SDK's transport
        self.client = AsyncOpenAI(
            api_key=openai_api_key,
            base_url=self.config.base_url,
            max_retries=self.config.max_retries,
            timeout=self.config.timeout,
        )

    def to_wire(self, message: ChatMessage) -> list[OpenAIMessage]:
        if message.has_tool_calls:
            raise ValueError("Tool calls can only be produced by the backend")

        if message.has_tool_results:
            return [
                {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.content} for r in message.tool_results
            ]

        match message.author:
            case Author.DEVELOPER:
                return [{"role": self.config.system_role, "content": message.content}]
            case Author.BOT:
                return [{"role": "assistant", "content": message.content}]

        if not message.files:
            return [{"role": "user", "content": message.text_content}]

        content: list[dict[str, Any]] = []
        for part in message.parts:
            match part:
                case TextPart():
                    content.append({"type": "text", "text": part.text})
                case FilePart():
                    content.append({"type": "image_url", "image_url": {"url": self._image_url(part)}})
                case _:
                    raise ValueError(f"Unsupported message part: {part.type}")
        return [{"role": "user", "content": content}]

    def from_wire(self, reply: OpenAIMessage, tools: Mapping[str, Tool]) -> ChatMessage:
        refusal = reply.get("refusal")
        tool_calls = reply.get("tool_calls") or []

        if tool_calls:
            calls = []
            for tc in tool_calls:
                name = tc["function"]["name"]
                calls.append(
                    ToolCall(
                        id=tc["id"],
                        tool_id=name,
                        arguments=self._decode_arguments(name, tc["function"].get("arguments")),
                        tool=tools.get(name),
                    )
                )
            return ChatMessage(author=Author.BOT, parts=calls, reasoning=reply.get("content") or None)

        content = reply.get("content") or ""
        parts = [TextPart(text=content)] if content else []
        return ChatMessage(author=Author.BOT, parts=parts, refusal=refusal)

    def system_message(self, text: str) -> OpenAIMessage:
        return {"role": self.config.system_role, "content": text}

    def is_tool_result(self, message: OpenAIMessage) -> bool:
        return message.get("role") == "tool"

    def tool_definitions(self, tools: Sequence[Tool]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.id,
                    "description": tool.description,
                    "parameters": tool.json_schema,
                },
            }
            for tool in tools
        ]

    def serialize(self, window: Sequence[OpenAIMessage]) -> str:
        return json.dumps(list(window))

    async def send(
        self,
        window: Sequence[OpenAIMessage],
        tool_definitions: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> tuple[FinishReason, OpenAIMessage]:
        kwargs: dict[str, Any] = {"model": self.config.model, "messages": list(window)}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_new_tokens:
            kwargs["max_completion_tokens"] = options.max_new_tokens
        if tool_definitions:
            kwargs["tools"] = list(tool_definitions)
            if options.parallel_tool_calls is not None:
                kwargs["parallel_tool_calls"] = options.parallel_tool_calls
        if options.response_format is not None:
            kwargs["response_format"] = {"type": "json_object"}

        if self.rate_limiter is not None:
            estimated_tokens = self.count_tokens(window)
            await self.rate_limiter.acquire(estimated_tokens, identifier=f"openai:{self.config.model}")

        logger.debug(f"Making OpenAI API call with {len(window)} messages, {len(tool_definitions)} tools")
        response = await self.client.chat.completions.create(**kwargs)

        if response.usage:
            self.usage.add(
                TokenUsage(
                    input_tokens=response.usage.prompt_tokens,
                    output_tokens=response.usage.completion_tokens,
                    total_tokens=response.usage.total_tokens,
                )
            )

        choice = response.choices[0]
        logger.debug(f"Response received - Finish reason: {choice.finish_reason}")

        reply: OpenAIMessage = {"role": "assistant", "content": choice.message.content}
        if choice.message.tool_calls:
            reply["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                }
                for tc in choice.message.tool_calls
            ]
        refusal = getattr(choice.message, "refusal", None)
        if refusal:
            reply["refusal"] = refusal

        return FINISH_REASONS.get(choice.finish_reason or "", FinishReason.OTHER), reply

    def _decode_arguments(self, tool_name: str, raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Malformed arguments for tool {tool_name}: {e}")
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def _image_url(self, part: FilePart) -> str:
        if part.content_type != ContentType.IMAGE:
            raise ValueError(f"OpenAI backend only supports image files, got {part.mime_type}")
        if part.url is not None:
            return part.url
        data = part.data
        if data is None:
            data = base64.b64encode(Path(part.path).read_bytes()).decode("ascii")
        return f"data:{part.mime_type};base64,{data}"
