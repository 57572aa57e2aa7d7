"""ReAct agent: an executor and a critic working on one command at a time."""

import asyncio
from collections.abc import Iterable
from typing import Generic, TypeVar

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

from chatloop.clients.base import ChatBackend
from chatloop.config import ReactConfig
from chatloop.models.messages import ToolCall, ToolCallResult
from chatloop.models.steps import Step, StepStatus
from chatloop.react.critic import CriticModule
from chatloop.react.executor import ExecutorModule
from chatloop.tools.base import Tool, parameters_from_model
from chatloop.tools.capability import Capability
from chatloop.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


W = TypeVar("W")


class ReactAgent(Generic[W]):
    """Autonomous agent that plans, calls tools and checks its own conclusions.

    ``execute`` calls are serialized; a new command resets the step trail.
    """

    def __init__(
        self,
        backend: ChatBackend[W],
        tools: Iterable[Tool] = (),
        id: str | None = None,
        context: str = "",
        examples: str = "",
        config: ReactConfig | None = None,
    ):
        self.id = id or cuid()
        self.backend = backend
        self.context = context
        self.examples = examples
        self.config = config or ReactConfig()

        self.executor: ExecutorModule[W] = ExecutorModule(self, tools, self.config)
        self.critic: CriticModule[W] = CriticModule(self)
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ReactAgent(id={self.id!r})"

    @property
    def command(self) -> str | None:
        return self.executor.command

    @property
    def steps(self) -> tuple[Step, ...]:
        return self.executor.steps

    @property
    def last_step(self) -> Step | None:
        return self.executor.last_step

    def add_capability(self, capability: Capability) -> None:
        self.executor.add_capability(capability)

    def remove_capability(self, capability: Capability | str) -> None:
        self.executor.remove_capability(capability)

    async def execute(self, command: str) -> Step:
        """Carry out ``command`` and return the final step."""
        async with self._lock:
            logger.info(f"Agent {self.id} executing command: {command}")
            step = await self.executor.execute(command)
            logger.info(f"Agent {self.id} finished with status {step.status} after {len(self.steps)} steps")
            return step

    def as_tool(self, description: str, id: str | None = None) -> "ReactAgentTool":
        """Expose this agent as a tool other agents can delegate to."""
        return ReactAgentTool(self, description, id)


class AgentToolParameters(BaseModel):
    """Parameters needed to delegate work to an agent."""

    thought: str = Field(description="Your reasoning about why this tool has been called.")
    question: str = Field(description="A question this tool must answer or a command it must execute.")


class ReactAgentTool(Tool):
    """Tool facade over a ReactAgent.

    The steps the agent took for each call are kept until the caller collects
    them with ``steps_for``.
    """

    def __init__(self, agent: ReactAgent, description: str, id: str | None = None):
        super().__init__(id or agent.id, description, parameters_from_model(AgentToolParameters))
        self.react_agent = agent
        self._steps_by_call: dict[str, list[Step]] = {}

    async def run(self, call: ToolCall) -> ToolCallResult:
        step = await self.react_agent.execute(self.get_string(call, "question"))
        self._steps_by_call[call.id] = [s.model_copy(deep=True) for s in self.react_agent.steps]

        if step.status == StepStatus.ERROR:
            return ToolCallResult.from_call(call, f"ERROR: {step.observation}", is_error=True)
        return ToolCallResult.from_call(call, step.observation)

    def steps_for(self, call_id: str) -> list[Step]:
        return self._steps_by_call.pop(call_id, [])
