"""Tools, capabilities and per-agent tool dispatch."""

from chatloop.tools.base import FunctionTool, ParameterType, Tool, ToolParameter, ToolState
from chatloop.tools.capability import Capability, Toolset
from chatloop.tools.registry import ToolAddedEvent, ToolRegistry, ToolRemovedEvent

__all__ = [
    "Capability",
    "FunctionTool",
    "ParameterType",
    "Tool",
    "ToolAddedEvent",
    "ToolParameter",
    "ToolRegistry",
    "ToolRemovedEvent",
    "ToolState",
    "Toolset",
]
