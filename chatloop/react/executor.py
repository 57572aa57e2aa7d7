"""Executor: runs the step-by-step ReAct loop for one command."""

import json
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, TypeVar

from pydantic import ValidationError

from chatloop.config import ReactConfig
from chatloop.errors import ChatLoopError, ToolContractError
from chatloop.models.messages import ChatCompletion, FinishReason, ToolCall
from chatloop.models.steps import Step, StepStatus, ToolCallStep, parse_step, steps_to_json
from chatloop.react.prompts import (
    CONTINUE_SUGGESTION,
    EXECUTOR_TEMPLATE,
    EXECUTOR_TURN,
    INITIAL_SUGGESTION,
    KEEP_GOING_SUGGESTION,
    START_OBSERVATION,
    START_THOUGHT,
)
from chatloop.services.chat import ChatAgent
from chatloop.tools.base import Tool
from chatloop.utils.logging import get_logger
from chatloop.utils.text import fill_slots

if TYPE_CHECKING:
    from chatloop.react.agent import ReactAgent

logger = get_logger(__name__)

THOUGHT_PARAMETER = "thought"


W = TypeVar("W")


class ExecutorModule(ChatAgent[W]):
    """Drives a command to completion by alternating model calls and tool calls.

    The whole step trail is sent again on every iteration instead of relying on
    conversation history, so the trail is the only state of the loop.
    """

    def __init__(self, agent: "ReactAgent[W]", tools: Iterable[Tool] = (), config: ReactConfig | None = None):
        config = config or ReactConfig()
        super().__init__(agent.backend, id=f"{agent.id}-executor")
        self.agent = agent
        self.max_steps = config.max_steps
        self.check_last_step = config.check_last_step

        self.options.temperature = config.temperature
        self.options.response_format = Step
        self.options.parallel_tool_calls = config.parallel_tool_calls

        self.command: str | None = None
        self._steps: list[Step] = []

        tools = list(tools)
        if tools:
            self.add_tools(tools)

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    @property
    def last_step(self) -> Step | None:
        return self._steps[-1] if self._steps else None

    def validate_tool(self, tool: Tool) -> None:
        if THOUGHT_PARAMETER not in tool.parameter_names:
            raise ToolContractError(
                f'All tools available to ReAct agents must accept a "{THOUGHT_PARAMETER}" parameter; '
                f"tool {tool.id} does not"
            )

    async def execute(self, command: str) -> Step:
        """Execute ``command`` and return the last step of the trail."""
        self.command = command
        self._steps.clear()

        slots = {
            "command": command,
            "id": self.id,
            "context": self.agent.context,
            "examples": self.agent.examples,
        }
        self.personality = fill_slots(EXECUTOR_TEMPLATE, slots)

        self._add_step(
            Step(
                actor=self.id,
                status=StepStatus.IN_PROGRESS,
                thought=fill_slots(START_THOUGHT, slots),
                observation=START_OBSERVATION,
            )
        )

        suggestion = INITIAL_SUGGESTION
        while len(self._steps) < self.max_steps and self.last_step.status == StepStatus.IN_PROGRESS:
            self.clear_conversation()
            message = fill_slots(EXECUTOR_TURN, {"steps": steps_to_json(self._steps), "suggestion": suggestion})

            try:
                reply = await self.chat(message)
            except ChatLoopError as e:
                logger.error(f"Executor {self.id} could not call the model: {e}")
                self._add_step(
                    ToolCallStep(
                        actor=self.id,
                        status=StepStatus.ERROR,
                        thought="I could not reach the language model to decide the next step.",
                        action="The language model was called but the call failed.",
                        action_input=message,
                        observation=str(e),
                    )
                )
                break

            if reply.finish_reason != FinishReason.COMPLETED:
                self._add_step(
                    ToolCallStep(
                        actor=self.id,
                        status=StepStatus.ERROR,
                        thought="The language model did not return a complete answer.",
                        action="The language model was called but its reply was not complete.",
                        action_input=message,
                        observation=f"Response finish reason: {reply.finish_reason.value}",
                    )
                )
                break

            if reply.has_tool_calls:
                suggestion = await self._run_tools(reply.tool_calls)
            else:
                suggestion = await self._record_step(reply)

        if self.last_step.status == StepStatus.IN_PROGRESS:
            self._add_step(
                Step(
                    actor=self.id,
                    status=StepStatus.ERROR,
                    thought=f"Execution was stopped because it exceeded maximum number of steps ({self.max_steps}).",
                    observation="I probably entered some kind of loop.",
                )
            )
            logger.error(f"Executor {self.id} exceeded {self.max_steps} steps for command: {command}")

        return self.last_step

    async def _run_tools(self, calls: Sequence[ToolCall]) -> str:
        from chatloop.react.agent import ReactAgentTool

        results = await self.registry.execute_all(calls, parallel=self.options.parallel_tool_calls is not False)

        with_error = False
        for call, result in zip(calls, results, strict=True):
            arguments = dict(call.arguments)
            thought = arguments.pop(THOUGHT_PARAMETER, None)
            tool = call.tool or self.get_tool(call.tool_id)
            action_steps = tool.steps_for(call.id) if isinstance(tool, ReactAgentTool) else []

            self._add_step(
                ToolCallStep(
                    actor=self.id,
                    status=StepStatus.IN_PROGRESS,
                    thought=str(thought) if thought is not None else "No thought passed explicitly.",
                    action=f'The tool "{call.tool_id}" has been called',
                    action_input=json.dumps(arguments, default=str),
                    action_steps=action_steps,
                    observation=result.content,
                )
            )
            with_error |= result.is_error

        if with_error and len(self._steps) < self.max_steps:
            return await self.agent.critic.review_tool_call(self._steps)
        return CONTINUE_SUGGESTION

    async def _record_step(self, reply: ChatCompletion) -> str:
        try:
            step = parse_step(reply.text)
            step.actor = self.id
        except ValidationError as e:
            step = Step(
                actor=self.id,
                status=StepStatus.ERROR,
                thought=f"I stopped because I encountered this error: {e}",
                observation=reply.text,
            )
        self._add_step(step)

        if step.status == StepStatus.IN_PROGRESS:
            return KEEP_GOING_SUGGESTION

        if not self.check_last_step:
            return CONTINUE_SUGGESTION

        suggestion = await self.agent.critic.review_conclusions(self._steps)
        if "continue" not in suggestion.lower():
            # The critic disagrees with the conclusion; keep the loop going
            step.status = StepStatus.IN_PROGRESS
        return suggestion

    def _add_step(self, step: Step) -> None:
        self._steps.append(step)
        logger.debug(f"Executor {self.id} step: {step.model_dump_json(indent=2)}")
