"""Backend wrapping any LangChain chat model."""

import json
from collections.abc import Mapping, Sequence
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    messages_to_dict,
)

from chatloop.clients.anthropic import STOP_REASONS
from chatloop.clients.base import ChatBackend, ChatOptions, TokenUsage
from chatloop.clients.openai import FINISH_REASONS
from chatloop.models.messages import Author, ChatMessage, ContentType, FilePart, FinishReason, TextPart, ToolCall
from chatloop.tools.base import Tool
from chatloop.utils.logging import get_logger
from chatloop.utils.tokens import Tokenizer

logger = get_logger(__name__)

FINISH_REASON_KEYS = ("finish_reason", "stop_reason")


class LangChainBackend(ChatBackend[BaseMessage]):
    """Backend over a LangChain ``BaseChatModel``.

    Generation options such as temperature are configured on the wrapped model.
    """

    def __init__(self, chat_model: BaseChatModel, tokenizer: Tokenizer | None = None):
        model_name = getattr(chat_model, "model_name", None) or getattr(chat_model, "model", None) or "gpt-4"
        super().__init__(str(model_name), tokenizer)
        self.chat_model = chat_model

    def to_wire(self, message: ChatMessage) -> list[BaseMessage]:
        if message.has_tool_calls:
            raise ValueError("Tool calls can only be produced by the backend")

        if message.has_tool_results:
            return [
                ToolMessage(
                    content=r.content,
                    tool_call_id=r.tool_call_id,
                    name=r.tool_id,
                    status="error" if r.is_error else "success",
                )
                for r in message.tool_results
            ]

        match message.author:
            case Author.DEVELOPER:
                return [SystemMessage(content=message.content)]
            case Author.BOT:
                return [AIMessage(content=message.content)]

        if not message.files:
            return [HumanMessage(content=message.text_content)]

        content: list[str | dict[str, Any]] = []
        for part in message.parts:
            match part:
                case TextPart():
                    content.append({"type": "text", "text": part.text})
                case FilePart() if part.content_type == ContentType.IMAGE and part.url is not None:
                    content.append({"type": "image_url", "image_url": {"url": part.url}})
                case FilePart() if part.content_type == ContentType.IMAGE and part.data is not None:
                    url = f"data:{part.mime_type};base64,{part.data}"
                    content.append({"type": "image_url", "image_url": {"url": url}})
                case _:
                    raise ValueError(f"Unsupported message part for LangChain models: {part.content}")
        return [HumanMessage(content=content)]

    def from_wire(self, reply: BaseMessage, tools: Mapping[str, Tool]) -> ChatMessage:
        tool_calls = getattr(reply, "tool_calls", None) or []
        # .text is a method in older langchain-core releases and a str property in newer ones
        text = reply.text if isinstance(reply.text, str) else reply.text()

        if tool_calls:
            calls = [
                ToolCall(id=tc["id"], tool_id=tc["name"], arguments=tc.get("args") or {}, tool=tools.get(tc["name"]))
                for tc in tool_calls
            ]
            return ChatMessage(author=Author.BOT, parts=calls, reasoning=text or None)

        refusal = reply.additional_kwargs.get("refusal")
        return ChatMessage(author=Author.BOT, parts=[TextPart(text=text)] if text else [], refusal=refusal)

    def system_message(self, text: str) -> BaseMessage:
        return SystemMessage(content=text)

    def is_tool_result(self, message: BaseMessage) -> bool:
        return isinstance(message, ToolMessage)

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

    def serialize(self, window: Sequence[BaseMessage]) -> str:
        return json.dumps(messages_to_dict(list(window)), default=str)

    async def send(
        self,
        window: Sequence[BaseMessage],
        tool_definitions: Sequence[dict[str, Any]],
        options: ChatOptions,
    ) -> tuple[FinishReason, BaseMessage]:
        model = self.chat_model.bind_tools(list(tool_definitions)) if tool_definitions else self.chat_model

        logger.debug(f"Invoking {type(self.chat_model).__name__} with {len(window)} messages")
        response = await model.ainvoke(list(window))

        usage = getattr(response, "usage_metadata", None)
        if usage:
            self.usage.add(
                TokenUsage(
                    input_tokens=usage.get("input_tokens", 0),
                    output_tokens=usage.get("output_tokens", 0),
                    total_tokens=usage.get("total_tokens", 0),
                )
            )

        return self._finish_reason(response), response

    def _finish_reason(self, response: BaseMessage) -> FinishReason:
        metadata = getattr(response, "response_metadata", None) or {}
        for key in FINISH_REASON_KEYS:
            reason = metadata.get(key)
            if reason:
                return FINISH_REASONS.get(reason) or STOP_REASONS.get(reason) or FinishReason.OTHER
        # Models that report nothing are assumed to have finished normally
        return FinishReason.COMPLETED
