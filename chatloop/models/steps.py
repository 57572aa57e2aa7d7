"""Execution steps recorded by the ReAct executor."""

import json
from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator

from chatloop.utils.text import strip_code_fences


class StepStatus(StrEnum):
    """Status of an execution step."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class Step(BaseModel):
    """One execution step performed while carrying out a command."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    status: StepStatus = Field(
        default=StepStatus.IN_PROGRESS,
        description=(
            "COMPLETED when the command has been fully executed, ERROR when execution cannot continue, "
            "IN_PROGRESS otherwise."
        ),
    )
    actor: str = Field(
        default="",
        description="Who performed this step. It is filled in automatically and can be left empty.",
    )
    thought: str = Field(description="Your reasoning behind this step.")
    observation: str = Field(description="What this step produced: outcomes, data, error messages.")

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if value is None:
            return StepStatus.IN_PROGRESS
        if isinstance(value, str):
            return value.strip().upper().replace(" ", "_").replace("-", "_")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status != StepStatus.IN_PROGRESS


class ToolCallStep(Step):
    """A step in which a tool was invoked."""

    action: str = Field(description="The action taken in this step, typically a tool invocation.")
    action_input: str = Field(description="Input passed to the action, as JSON.")
    action_steps: list[SerializeAsAny[Step]] = Field(
        default_factory=list,
        description="Steps performed by another agent when the action was delegated to it.",
    )


def step_to_dict(step: Step, complete: bool = False) -> dict[str, Any]:
    """Render one step as a JSON-compatible dict.

    The compact rendering leaves out nested ``action_steps``.
    """
    exclude = None if complete else {"action_steps"}
    return step.model_dump(mode="json", exclude=exclude)


def steps_to_json(steps: Sequence[Step], complete: bool = False, indent: int | None = None) -> str:
    """Render a step trail as a JSON array."""
    return json.dumps([step_to_dict(s, complete=complete) for s in steps], indent=indent)


def parse_step(text: str) -> Step:
    """Parse a step emitted by the model, tolerating a surrounding code fence.

    Raises:
        pydantic.ValidationError: If the text is not a valid step
    """
    return Step.model_validate_json(strip_code_fences(text))
