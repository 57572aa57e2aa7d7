"""Exception hierarchy for chatloop."""


class ChatLoopError(Exception):
    """Base class for all chatloop errors."""


class ContextError(ChatLoopError, ValueError):
    """The conversation window cannot be built from the current history and limits."""


class UnsatisfiableContextError(ContextError):
    """Only tool results without their originating calls are left in the window."""


class ContextTooSmallError(ContextError):
    """Not even the latest message fits within the configured limits."""


class EndpointError(ChatLoopError):
    """A backend call failed.

    The original exception is always available as ``__cause__``.
    """


class ToolInitializationError(ChatLoopError):
    """A tool or capability could not be attached to an agent."""


class ToolContractError(ToolInitializationError, ValueError):
    """A tool does not declare the parameters its owning agent requires."""


class ToolStateError(ChatLoopError, RuntimeError):
    """A tool was used outside of its initialized lifetime."""
