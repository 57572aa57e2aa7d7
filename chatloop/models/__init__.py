"""Data models shared by every chatloop component."""

from chatloop.models.messages import (
    Author,
    ChatCompletion,
    ChatMessage,
    ContentType,
    FilePart,
    FinishReason,
    MessagePart,
    TextPart,
    ToolCall,
    ToolCallResult,
)
from chatloop.models.steps import Step, StepStatus, ToolCallStep, parse_step, steps_to_json

__all__ = [
    "Author",
    "ChatCompletion",
    "ChatMessage",
    "ContentType",
    "FilePart",
    "FinishReason",
    "MessagePart",
    "Step",
    "StepStatus",
    "TextPart",
    "ToolCall",
    "ToolCallResult",
    "ToolCallStep",
    "parse_step",
    "steps_to_json",
]
