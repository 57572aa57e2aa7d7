"""Critic: reviews the executor's trail and suggests corrections."""

import json
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, TypeVar

from chatloop.errors import ChatLoopError
from chatloop.models.steps import Step, steps_to_json
from chatloop.react.prompts import (
    CONTINUE_SUGGESTION,
    CRITIC_TURN,
    REVIEW_CONCLUSIONS_TEMPLATE,
    REVIEW_TOOL_CALL_TEMPLATE,
)
from chatloop.services.chat import ChatAgent
from chatloop.tools.base import Tool, to_json_schema
from chatloop.utils.logging import get_logger
from chatloop.utils.text import fill_slots

if TYPE_CHECKING:
    from chatloop.react.agent import ReactAgent

logger = get_logger(__name__)


W = TypeVar("W")


class CriticModule(ChatAgent[W]):
    """Tool-free reviewer of an executor's steps.

    Its only output is a suggestion: either ``CONTINUE`` or a correction for the
    executor's next step. It never calls tools and never touches the trail.
    """

    def __init__(self, agent: "ReactAgent[W]"):
        super().__init__(agent.backend, id=f"{agent.id}-critic")
        self.agent = agent
        self.options.temperature = 0.0

    async def review_tool_call(self, steps: Sequence[Step]) -> str:
        """Look for tool-call loops and failed calls with missing or wrong parameters."""
        return await self.review(REVIEW_TOOL_CALL_TEMPLATE, steps)

    async def review_conclusions(self, steps: Sequence[Step]) -> str:
        """Look for premature completion and claims of work no tool call backs up."""
        return await self.review(REVIEW_CONCLUSIONS_TEMPLATE, steps)

    async def review(self, template: str, steps: Sequence[Step]) -> str:
        executor = self.agent.executor
        slots = {
            "command": executor.command,
            "executor_id": executor.id,
            "context": self.agent.context,
            "tools": describe_tools(executor.tools.values()),
            "steps": steps_to_json(steps, complete=True, indent=2),
        }
        self.personality = fill_slots(template, slots)
        self.clear_conversation()

        try:
            reply = await self.chat(fill_slots(CRITIC_TURN, slots))
        except ChatLoopError as e:
            logger.error(f"Critic {self.id} failed, letting the executor continue: {e}")
            return CONTINUE_SUGGESTION

        suggestion = reply.text.strip() or CONTINUE_SUGGESTION
        logger.debug(f"Critic {self.id} suggestion: {suggestion}")
        return suggestion


def describe_tools(tools: Iterable[Tool]) -> str:
    """Describe tools for the critic, leaving out the executor-only ``thought`` parameter."""
    sections = []
    for tool in tools:
        params = [p for p in tool.parameters if p.name != "thought"]
        sections.append(
            "## Tool\n\n"
            f"### Tool ID: {tool.id}\n"
            f"### Tool Description\n{tool.description}\n"
            f"### Tool Parameters (as JSON schema)\n{json.dumps(to_json_schema(params), indent=2)}\n"
        )
    return "\n".join(sections)
