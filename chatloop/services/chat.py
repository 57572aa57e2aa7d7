"""Conversation manager: history, window trimming, personality and tools for one agent."""

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Generic, TypeVar

from cuid2 import cuid_wrapper

from chatloop.clients.base import ChatBackend, ChatOptions
from chatloop.config import ChatConfig
from chatloop.errors import ContextTooSmallError, EndpointError, UnsatisfiableContextError
from chatloop.models.messages import ChatCompletion, ChatMessage, ToolCall, check_results_match
from chatloop.tools.base import Tool
from chatloop.tools.capability import Capability, Toolset
from chatloop.tools.registry import ToolAddedEvent, ToolRegistry, ToolRemovedEvent
from chatloop.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

ChatInput = str | ChatMessage | Sequence[ChatMessage]


W = TypeVar("W")


class ChatAgent(Generic[W]):
    """An agent holding one conversation with a backend.

    History is kept in the backend's wire format. Before every call the history
    plus the new messages are trimmed to a window that fits the step and token
    limits; the personality, if any, is put on top of that window. History is
    updated only after a successful call.

    An agent is not meant to be shared by concurrent callers; overlapping calls
    are serialized by a per-agent lock.
    """

    def __init__(
        self,
        backend: ChatBackend[W],
        id: str | None = None,
        personality: str | None = None,
        config: ChatConfig | None = None,
    ):
        config = config or ChatConfig()
        self.id = id or cuid()
        self.backend = backend
        self.personality = personality
        self.options = ChatOptions(temperature=config.temperature, max_new_tokens=config.max_new_tokens)

        self._max_history_length = config.max_history_length
        self._max_conversation_steps = config.max_conversation_steps
        self._max_conversation_tokens = config.max_conversation_tokens

        self.registry = ToolRegistry(self)
        self._tool_definitions: list[Any] | None = None

        self._history: list[W] = []
        self._pending_calls: tuple[ToolCall, ...] = ()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, backend={type(self.backend).__name__})"

    @property
    def history(self) -> tuple[W, ...]:
        return tuple(self._history)

    @property
    def max_history_length(self) -> int:
        return self._max_history_length

    @max_history_length.setter
    def max_history_length(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_history_length must be at least 1")
        self._max_history_length = value

    @property
    def max_conversation_steps(self) -> int | None:
        return self._max_conversation_steps

    @max_conversation_steps.setter
    def max_conversation_steps(self, value: int | None) -> None:
        if value is not None and value < 1:
            raise ValueError("max_conversation_steps must be at least 1")
        self._max_conversation_steps = value

    @property
    def max_conversation_tokens(self) -> int | None:
        return self._max_conversation_tokens

    @max_conversation_tokens.setter
    def max_conversation_tokens(self, value: int | None) -> None:
        if value is not None and value < 1:
            raise ValueError("max_conversation_tokens must be at least 1")
        self._max_conversation_tokens = value

    @property
    def base_tokens(self) -> int:
        """Tokens taken by the personality message alone."""
        if not self.personality:
            return 0
        return self.backend.count_tokens([self.backend.system_message(self.personality)])

    # Tools

    @property
    def tools(self) -> Mapping[str, Tool]:
        return self.registry.tools

    def get_tool(self, tool_id: str) -> Tool | None:
        return self.registry.get_tool(tool_id)

    def add_capability(self, capability: Capability) -> None:
        self.registry.add_capability(capability)

    def add_tools(self, tools: Iterable[Tool], capability_id: str = "tools") -> None:
        self.registry.add_capability(Toolset(tools, id=capability_id))

    def remove_capability(self, capability: Capability | str) -> None:
        self.registry.remove_capability(capability)

    def clear_capabilities(self) -> None:
        self.registry.clear()

    def validate_tool(self, tool: Tool) -> None:
        """Check a tool meets this agent's parameter contract; raise ToolContractError if not."""

    def on_tool_added(self, event: ToolAddedEvent) -> None:
        self._tool_definitions = None

    def on_tool_removed(self, event: ToolRemovedEvent) -> None:
        self._tool_definitions = None

    @property
    def tool_definitions(self) -> list[Any]:
        if self._tool_definitions is None:
            self._tool_definitions = self.backend.tool_definitions(list(self.registry.tools.values()))
        return self._tool_definitions

    # Conversation

    def clear_conversation(self) -> None:
        self._history.clear()
        self._pending_calls = ()

    async def chat(self, messages: ChatInput) -> ChatCompletion:
        """Continue the conversation with new messages.

        Raises:
            ContextError: If no valid window can be built; nothing is sent
            EndpointError: If the backend call fails; history is left untouched
        """
        new_messages = self._as_messages(messages)
        async with self._lock:
            self._check_tool_results(new_messages)
            outbound = self.backend.outbound(new_messages)
            window = self.trim_conversation([*self._history, *outbound])

            completion, reply = await self._call(window)

            self._history.extend(outbound)
            self._history.append(reply)
            excess = len(self._history) - self._max_history_length
            if excess > 0:
                del self._history[:excess]

            self._pending_calls = tuple(completion.tool_calls)
            return completion

    async def complete(self, messages: ChatInput) -> ChatCompletion:
        """One-off completion; personality and limits apply but history is neither read nor changed."""
        new_messages = self._as_messages(messages)
        async with self._lock:
            window = self.trim_conversation(self.backend.outbound(new_messages))
            completion, _ = await self._call(window)
            return completion

    async def run(self, message: ChatInput, max_turns: int = 10) -> ChatCompletion:
        """Chat, executing requested tools and returning their results until the model stops calling tools.

        Returns the last completion, which still carries tool calls if ``max_turns`` was reached.
        """
        logger.info(f"Agent {self.id} starting tool loop with {len(self.tools)} tools, max_turns: {max_turns}")
        completion = await self.chat(message)
        turns = 1
        while completion.has_tool_calls and turns < max_turns:
            logger.info(f"LLM wants to use {len(completion.tool_calls)} tools")
            results = await self.registry.execute_all(completion.tool_calls, parallel=True)
            completion = await self.chat(ChatMessage.from_tool_results(results, completion.tool_calls))
            turns += 1

        if completion.has_tool_calls:
            logger.warning(f"Agent {self.id} tool loop reached max turns ({max_turns})")
        else:
            logger.info(f"Agent {self.id} tool loop completed in {turns} turns")
        return completion

    def trim_conversation(self, messages: Sequence[W]) -> list[W]:
        """Select the window of ``messages`` to send, personality included.

        Raises:
            UnsatisfiableContextError: If only tool results without their calls are left
            ContextTooSmallError: If not even the last message fits the limits
        """
        start = 0
        while start < len(messages) and self.backend.is_tool_result(messages[start]):
            start += 1
        if start == len(messages):
            raise UnsatisfiableContextError("Messages contain only tool call results without corresponding calls")
        candidates = list(messages[start:])

        max_steps = self._max_conversation_steps
        max_tokens = self._max_conversation_tokens
        first = len(candidates)
        steps = 0
        while first > 0:
            if max_steps is not None and steps >= max_steps:
                break
            # Count the whole suffix at once; wire overhead is not additive per message
            if max_tokens is not None and self.backend.count_tokens(candidates[first - 1 :]) > max_tokens:
                break
            first -= 1
            steps += 1

        if steps == 0:
            raise ContextTooSmallError("Context too small to fit a single message")

        # The cut may have separated tool results from their calls
        while first < len(candidates) and not self.backend.is_valid_head(candidates[first]):
            first += 1
        if first == len(candidates):
            raise UnsatisfiableContextError("No message in the window can open a conversation")

        window = candidates[first:]
        if first > 0 or start > 0:
            logger.warning(f"Trimmed conversation from {len(messages)} to {len(window)} messages")

        if self.personality:
            window.insert(0, self.backend.system_message(self.personality))
        return window

    async def _call(self, window: list[W]) -> tuple[ChatCompletion, W]:
        logger.debug(f"Agent {self.id} calling backend with {len(window)} messages")
        try:
            finish_reason, reply = await self.backend.send(window, self.tool_definitions, self.options)
            completion = self.backend.normalize(finish_reason, reply, self.registry.tools)
        except EndpointError:
            raise
        except Exception as e:
            logger.error(f"Backend call failed for agent {self.id}: {e}")
            raise EndpointError(f"Backend call failed: {e}") from e

        logger.debug(f"Agent {self.id} got reply - Finish reason: {completion.finish_reason}")
        return completion, reply

    def _as_messages(self, messages: ChatInput) -> list[ChatMessage]:
        if isinstance(messages, str):
            return [ChatMessage.user(messages)]
        if isinstance(messages, ChatMessage):
            return [messages]
        result = list(messages)
        if not result:
            raise ValueError("At least one message is required")
        return result

    def _check_tool_results(self, messages: Sequence[ChatMessage]) -> None:
        results = [r for m in messages for r in m.tool_results]
        if not results:
            return
        if not self._pending_calls:
            raise ValueError("Tool call results were provided but no tool calls are pending")
        check_results_match(self._pending_calls, results)
