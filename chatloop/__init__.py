"""Provider-agnostic LLM conversations, tool dispatch and a self-reviewing ReAct executor."""

__version__ = "0.1.0"

from chatloop.config import ChatConfig, ReactConfig  # noqa: E402
from chatloop.models.messages import ChatCompletion, ChatMessage, FinishReason, ToolCall, ToolCallResult  # noqa: E402
from chatloop.models.steps import Step, StepStatus, ToolCallStep  # noqa: E402
from chatloop.react.agent import ReactAgent  # noqa: E402
from chatloop.services.chat import ChatAgent  # noqa: E402
from chatloop.tools.base import FunctionTool, Tool, ToolParameter  # noqa: E402
from chatloop.tools.capability import Capability, Toolset  # noqa: E402

__all__ = [
    "Capability",
    "ChatAgent",
    "ChatConfig",
    "ChatCompletion",
    "ChatMessage",
    "FinishReason",
    "FunctionTool",
    "ReactAgent",
    "ReactConfig",
    "Step",
    "StepStatus",
    "Tool",
    "ToolCall",
    "ToolCallResult",
    "ToolCallStep",
    "ToolParameter",
    "Toolset",
    "__version__",
]
