"""Capabilities: named bundles of tools attached to an agent as a unit."""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any

from chatloop.errors import ToolInitializationError, ToolStateError
from chatloop.tools.base import Tool

ToolFactory = Callable[[], Tool]


class Capability(ABC):
    """A named group of tools an agent gains or loses together.

    Any object can become a tool provider by implementing this interface, for
    example an agent exposing itself as a tool to another agent.
    """

    def __init__(self, id: str, description: str = ""):
        self.id = id
        self.description = description
        self.agent: Any = None
        self.initialized = False
        self.closed = False

    @property
    @abstractmethod
    def tool_ids(self) -> list[str]:
        """Ids of the tools this capability provides."""

    @abstractmethod
    def new_tool_instance(self, tool_id: str) -> Tool:
        """Create the tool that will be attached to the owning agent."""

    def init(self, agent: Any) -> None:
        if self.initialized:
            raise ToolInitializationError(f"Capability {self.id} is already initialized")
        if self.closed:
            raise ToolInitializationError(f"Capability {self.id} is already closed")
        self.agent = agent
        self.initialized = True

    def close(self) -> None:
        self.closed = True


class Toolset(Capability):
    """Capability built from tool instances or zero-argument tool factories."""

    def __init__(self, tools: Iterable[Tool | ToolFactory] = (), id: str = "tools", description: str = ""):
        super().__init__(id, description)
        self._factories: dict[str, ToolFactory] = {}
        self._prototypes: dict[str, Tool] = {}
        for tool in tools:
            self.add_tool(tool)

    def add_tool(self, tool: Tool | ToolFactory) -> None:
        if self.initialized:
            raise ToolStateError(f"Cannot add tools to capability {self.id} after it is attached")
        if isinstance(tool, Tool):
            instance = tool
            factory: ToolFactory = lambda t=tool: t  # noqa: E731
        else:
            # Build once to learn the id; that instance is handed out first
            instance = tool()
            factory = tool
        if instance.id in self._factories:
            raise ValueError(f"Duplicate tool id {instance.id} in capability {self.id}")
        self._factories[instance.id] = factory
        self._prototypes[instance.id] = instance

    @property
    def tool_ids(self) -> list[str]:
        return list(self._factories)

    def new_tool_instance(self, tool_id: str) -> Tool:
        if not self.initialized or self.closed:
            raise ToolStateError(f"Capability {self.id} must be initialized before it provides tools")
        if tool_id not in self._factories:
            raise KeyError(f"Capability {self.id} has no tool {tool_id}")
        prototype = self._prototypes.pop(tool_id, None)
        if prototype is not None:
            return prototype
        return self._factories[tool_id]()
