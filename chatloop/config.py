"""Runtime configuration for agents."""

import os
from dataclasses import dataclass

ENV_PREFIX = "CHATLOOP_"


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ChatConfig:
    """Configuration for a conversational agent."""

    # Entries kept in the stored history
    max_history_length: int = 1000
    # Per-call window limits; None means unbounded
    max_conversation_steps: int | None = None
    max_conversation_tokens: int | None = None

    temperature: float | None = None
    max_new_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_history_length < 1:
            raise ValueError("max_history_length must be at least 1")
        if self.max_conversation_steps is not None and self.max_conversation_steps < 1:
            raise ValueError("max_conversation_steps must be at least 1")
        if self.max_conversation_tokens is not None and self.max_conversation_tokens < 1:
            raise ValueError("max_conversation_tokens must be at least 1")

    @classmethod
    def from_env(cls) -> "ChatConfig":
        """Build a configuration from CHATLOOP_* environment variables."""
        return cls(
            max_history_length=_env_int("MAX_HISTORY_LENGTH", 1000),
            max_conversation_steps=_env_int("MAX_CONVERSATION_STEPS", None),
            max_conversation_tokens=_env_int("MAX_CONVERSATION_TOKENS", None),
            temperature=_env_float("TEMPERATURE", None),
            max_new_tokens=_env_int("MAX_NEW_TOKENS", None),
        )


@dataclass
class ReactConfig:
    """Configuration for the ReAct executor and its critic."""

    max_steps: int = 40
    check_last_step: bool = True
    temperature: float = 0.0
    parallel_tool_calls: bool = True

    def __post_init__(self) -> None:
        if self.max_steps < 2:
            raise ValueError("max_steps must be at least 2")

    @classmethod
    def from_env(cls) -> "ReactConfig":
        """Build a configuration from CHATLOOP_* environment variables."""
        return cls(
            max_steps=_env_int("MAX_STEPS", 40),
            check_last_step=_env_bool("CHECK_LAST_STEP", True),
            temperature=_env_float("REACT_TEMPERATURE", 0.0),
            parallel_tool_calls=_env_bool("PARALLEL_TOOL_CALLS", True),
        )
