"""Test helpers: an in-memory scripted backend and a few tools."""

import json
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from pydantic import BaseModel, Field

from chatloop.clients.base import ChatBackend, ChatOptions
from chatloop.models.messages import Author, ChatMessage, FinishReason, ToolCall
from chatloop.tools.base import FunctionTool, Tool

Reply = str | ChatMessage | Exception | tuple[FinishReason, ChatMessage] | Callable[[list[ChatMessage]], Any]


class WordTokenizer:
    """Counts whitespace separated words; predictable for budget tests."""

    def count(self, text: str) -> int:
        return len(text.split())


class ScriptedBackend(ChatBackend[ChatMessage]):
    """Backend whose wire format is ChatMessage itself, replying from a script.

    Each scripted reply is a string (bot text), a ChatMessage, a
    (FinishReason, ChatMessage) pair, an exception to raise, or a callable
    receiving the window and returning any of those.
    """

    def __init__(self, replies: Sequence[Reply] = ()):
        super().__init__("scripted", WordTokenizer())
        self.replies: list[Reply] = list(replies)
        self.windows: list[list[ChatMessage]] = []
        self.tool_definitions_sent: list[list[Any]] = []
        self.options_sent: list[ChatOptions] = []

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    def to_wire(self, message: ChatMessage) -> list[ChatMessage]:
        if message.has_tool_calls:
            raise ValueError("Tool calls can only be produced by the backend")
        return [message]

    def from_wire(self, reply: ChatMessage, tools: Mapping[str, Tool]) -> ChatMessage:
        if not reply.has_tool_calls:
            return reply
        parts = tuple(c.model_copy(update={"tool": tools.get(c.tool_id)}) for c in reply.tool_calls)
        return reply.model_copy(update={"parts": parts})

    def system_message(self, text: str) -> ChatMessage:
        return ChatMessage.developer(text)

    def is_tool_result(self, message: ChatMessage) -> bool:
        return message.has_tool_results

    def tool_definitions(self, tools: Sequence[Tool]) -> list[str]:
        return [t.id for t in tools]

    def serialize(self, window: Sequence[ChatMessage]) -> str:
        return "\n".join(f"{m.author}: {m.content}" for m in window)

    async def send(
        self, window: Sequence[ChatMessage], tool_definitions: Sequence[Any], options: ChatOptions
    ) -> tuple[FinishReason, ChatMessage]:
        self.windows.append(list(window))
        self.tool_definitions_sent.append(list(tool_definitions))
        self.options_sent.append(options)

        if not self.replies:
            raise AssertionError("No scripted reply left")
        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(list(window))

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return FinishReason.COMPLETED, ChatMessage.bot(reply)
        if isinstance(reply, ChatMessage):
            return FinishReason.COMPLETED, reply
        return reply


def tool_calls(*calls: tuple[str, str, dict[str, Any]]) -> ChatMessage:
    """Bot message requesting tools, from (call id, tool id, arguments) triples."""
    return ChatMessage(
        author=Author.BOT,
        parts=[ToolCall(id=call_id, tool_id=tool_id, arguments=arguments) for call_id, tool_id, arguments in calls],
    )


def step_json(status: str, thought: str = "thinking", observation: str = "observed") -> str:
    return json.dumps({"status": status, "thought": thought, "observation": observation})


class EmailParams(BaseModel):
    """Parameters to send an email."""

    thought: str = Field(description="Why the tool is called.")
    to: str = Field(description="Recipient.")


class LookupParams(BaseModel):
    """Parameters to look up a city."""

    thought: str = Field(description="Why the tool is called.")
    city: str = Field(description="City name.")


class PlainParams(BaseModel):
    """Parameters without a thought."""

    text: str


def make_email_tool(sent: list[str] | None = None) -> FunctionTool:
    def send_email(args: EmailParams) -> str:
        if sent is not None:
            sent.append(args.to)
        return f"Email sent to {args.to}"

    return FunctionTool("send_email", "Sends an email.", EmailParams, send_email)


def make_failing_tool() -> FunctionTool:
    async def lookup(args: LookupParams) -> str:
        raise RuntimeError(f"city {args.city} not found")

    return FunctionTool("lookup", "Looks up a city.", LookupParams, lookup)

