"""Per-agent tool registry and dispatch."""

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Protocol

from chatloop.errors import ToolInitializationError
from chatloop.models.messages import ToolCall, ToolCallResult
from chatloop.tools.base import Tool
from chatloop.tools.capability import Capability
from chatloop.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolAddedEvent:
    """A tool has been attached to an agent."""

    tool: Tool


@dataclass(frozen=True)
class ToolRemovedEvent:
    """A tool has been detached from an agent."""

    tool: Tool


class ToolOwner(Protocol):
    """What a registry needs from the agent that owns it."""

    id: str

    def validate_tool(self, tool: Tool) -> None: ...

    def on_tool_added(self, event: ToolAddedEvent) -> None: ...

    def on_tool_removed(self, event: ToolRemovedEvent) -> None: ...


class ToolRegistry:
    """Tools available to one agent, keyed by tool id.

    The map changes only through capabilities being added or removed.
    """

    def __init__(self, owner: ToolOwner):
        self.owner = owner
        self._tools: dict[str, Tool] = {}
        self._capabilities: dict[str, Capability] = {}

    @property
    def tools(self) -> Mapping[str, Tool]:
        return MappingProxyType(self._tools)

    @property
    def capabilities(self) -> Mapping[str, Capability]:
        return MappingProxyType(self._capabilities)

    def get_tool(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)

    def has_tool(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def get_tool_names(self) -> list[str]:
        return list(self._tools)

    def add_capability(self, capability: Capability) -> None:
        """Attach a capability and all of its tools.

        Every tool is checked against the owner's parameter contract before
        anything changes; on failure the registry is left as it was and the
        capability is closed. Only then is a capability with the same id removed.
        """
        if self._capabilities.get(capability.id) is capability:
            raise ToolInitializationError(f"Capability {capability.id} is already attached to agent {self.owner.id}")

        capability.init(self.owner)
        try:
            new_tools = [capability.new_tool_instance(tool_id) for tool_id in capability.tool_ids]
            for tool in new_tools:
                self.owner.validate_tool(tool)
        except Exception:
            capability.close()
            raise

        if capability.id in self._capabilities:
            self.remove_capability(capability.id)

        added: list[Tool] = []
        try:
            for tool in new_tools:
                tool.capability = capability
                self._put_tool(tool)
                added.append(tool)
        except Exception:
            for tool in added:
                self._drop_tool(tool)
            capability.close()
            raise

        self._capabilities[capability.id] = capability
        logger.debug(f"Agent {self.owner.id} gained capability {capability.id} with tools {capability.tool_ids}")

    def remove_capability(self, capability: Capability | str) -> None:
        """Detach a capability, closing its tools and then the capability itself."""
        capability_id = capability if isinstance(capability, str) else capability.id
        removed = self._capabilities.pop(capability_id, None)
        if removed is None:
            return

        for tool in [t for t in self._tools.values() if t.capability is removed]:
            self._drop_tool(tool)
        removed.close()
        logger.debug(f"Agent {self.owner.id} lost capability {capability_id}")

    def clear(self) -> None:
        for capability_id in list(self._capabilities):
            self.remove_capability(capability_id)

    def _put_tool(self, tool: Tool) -> None:
        tool.init(self.owner)
        old = self._tools.get(tool.id)
        self._tools[tool.id] = tool
        if old is not None and old is not tool:
            old.close()
            self.owner.on_tool_removed(ToolRemovedEvent(old))
        self.owner.on_tool_added(ToolAddedEvent(tool))

    def _drop_tool(self, tool: Tool) -> None:
        if self._tools.get(tool.id) is tool:
            del self._tools[tool.id]
        tool.close()
        self.owner.on_tool_removed(ToolRemovedEvent(tool))

    def resolve(self, call: ToolCall) -> ToolCall:
        """Attach the registered tool to ``call`` if the backend did not."""
        if call.tool is not None:
            return call
        tool = self._tools.get(call.tool_id)
        if tool is None:
            return call
        return call.model_copy(update={"tool": tool})

    async def execute(self, call: ToolCall) -> ToolCallResult:
        """Execute a tool call, converting any failure into an error result."""
        call = self.resolve(call)
        if call.tool is None:
            logger.error(f"Unknown tool requested: {call.tool_id}")
            return ToolCallResult.from_call(call, f"Error: Unknown tool {call.tool_id}", is_error=True)

        logger.debug(f"Executing tool: {call.tool_id} with input: {dict(call.arguments)}")
        try:
            result = await call.execute()
        except Exception as e:
            logger.error(f"Tool {call.tool_id} failed: {e}")
            return ToolCallResult.from_exception(call, e)

        logger.debug(f"Tool {call.tool_id} returned: {result.content[:100]}")
        return result

    async def execute_all(self, calls: Sequence[ToolCall], parallel: bool = True) -> list[ToolCallResult]:
        """Execute a batch of calls; all results are collected before returning."""
        if parallel:
            return list(await asyncio.gather(*(self.execute(call) for call in calls)))
        return [await self.execute(call) for call in calls]
