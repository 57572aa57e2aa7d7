"""Provider-agnostic chat messages and tool calls."""

import json
import mimetypes
from collections.abc import Iterable, Mapping, Sequence
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chatloop.errors import ToolStateError
from chatloop.utils.text import strip_code_fences

T = TypeVar("T", bound=BaseModel)


class Author(StrEnum):
    """Who wrote a message."""

    USER = "user"
    BOT = "bot"
    DEVELOPER = "developer"


class FinishReason(StrEnum):
    """Normalized outcome of one backend call."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    INAPPROPRIATE = "inappropriate"
    OTHER = "other"


class ContentType(StrEnum):
    """Broad category of a file, from its MIME type."""

    AUDIO = "audio"
    IMAGE = "image"
    TEXT = "text"
    VIDEO = "video"
    GENERIC = "generic"

    @classmethod
    def from_mime_type(cls, mime_type: str) -> "ContentType":
        major = mime_type.split("/")[0].lower()
        try:
            return cls(major)
        except ValueError:
            return cls.GENERIC


class FrozenDict(dict):
    """A dict that refuses mutation after construction."""

    def _readonly(self, *args: Any, **kwargs: Any) -> None:
        raise TypeError("FrozenDict is immutable")

    __setitem__ = _readonly
    __delitem__ = _readonly
    __ior__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly

    def __hash__(self) -> int:  # type: ignore[override]
        return hash(tuple(sorted((k, _hashable(v)) for k, v in self.items())))

    def __copy__(self) -> "FrozenDict":
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> "FrozenDict":
        return self

    def __reduce__(self) -> tuple[Any, ...]:
        return (FrozenDict, (dict(self),))


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


def deep_freeze(value: Any) -> Any:
    """Recursively convert dicts, lists and sets into immutable equivalents."""
    if isinstance(value, FrozenDict):
        return value
    if isinstance(value, Mapping):
        return FrozenDict({k: deep_freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(deep_freeze(v) for v in value)
    if isinstance(value, set | frozenset):
        return frozenset(deep_freeze(v) for v in value)
    return value


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str

    @property
    def content(self) -> str:
        return self.text


class FilePart(BaseModel):
    """A file attached to a message, referenced by URL, local path or inline base64 data."""

    model_config = ConfigDict(frozen=True)

    type: Literal["file"] = "file"
    mime_type: str = "application/octet-stream"
    url: str | None = None
    path: str | None = None
    data: str | None = None
    name: str | None = None

    @model_validator(mode="after")
    def _check_source(self) -> "FilePart":
        sources = [s for s in (self.url, self.path, self.data) if s is not None]
        if len(sources) != 1:
            raise ValueError("A file part needs exactly one of url, path or data")
        return self

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> "FilePart":
        file = Path(path)
        if not file.is_file():
            raise ValueError(f"File must be a readable regular file: {file}")
        guessed, _ = mimetypes.guess_type(file.name)
        return cls(
            mime_type=mime_type or guessed or "application/octet-stream",
            path=str(file.resolve()),
            name=file.name,
        )

    @classmethod
    def from_url(cls, url: str, mime_type: str | None = None) -> "FilePart":
        guessed, _ = mimetypes.guess_type(url)
        return cls(mime_type=mime_type or guessed or "application/octet-stream", url=url)

    @property
    def content_type(self) -> ContentType:
        return ContentType.from_mime_type(self.mime_type)

    @property
    def is_local(self) -> bool:
        return self.path is not None

    @property
    def content(self) -> str:
        if self.path is not None:
            return f"[File: {self.path}, Content: {self.mime_type}]"
        if self.url is not None:
            return f"[File URL: {self.url}, Content: {self.mime_type}]"
        return f"[File: {self.name or 'inline'}, Content: {self.mime_type}]"


class ToolCall(BaseModel):
    """A request from the model to invoke a tool."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    tool_id: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    # Resolved local tool; None when the backend named a tool we do not have
    tool: Any = Field(default=None, exclude=True, repr=False)

    @field_validator("arguments", mode="after")
    @classmethod
    def _freeze_arguments(cls, value: dict[str, Any]) -> dict[str, Any]:
        return deep_freeze(value)

    @property
    def content(self) -> str:
        return f"Call to {self.tool_id} with arguments {json.dumps(self.arguments, default=str)}"

    async def execute(self) -> "ToolCallResult":
        """Invoke the resolved tool with this call."""
        if self.tool is None:
            raise ToolStateError(f"Tool {self.tool_id} is not available")
        return await self.tool.invoke(self)


class ToolCallResult(BaseModel):
    """Outcome of a tool call, sent back to the model."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call_result"] = "tool_call_result"
    tool_call_id: str
    tool_id: str
    result: Any = None
    is_error: bool = False

    @field_validator("result", mode="after")
    @classmethod
    def _freeze_result(cls, value: Any) -> Any:
        return deep_freeze(value)

    @classmethod
    def from_call(cls, call: ToolCall, result: Any, is_error: bool = False) -> "ToolCallResult":
        return cls(tool_call_id=call.id, tool_id=call.tool_id, result=result, is_error=is_error)

    @classmethod
    def from_exception(cls, call: ToolCall, exc: BaseException) -> "ToolCallResult":
        return cls(tool_call_id=call.id, tool_id=call.tool_id, result=f"Error: {exc!s}", is_error=True)

    @property
    def content(self) -> str:
        if isinstance(self.result, str):
            return self.result
        if self.result is None:
            return ""
        return json.dumps(self.result, default=str)


MessagePart = Annotated[TextPart | FilePart | ToolCall | ToolCallResult, Field(discriminator="type")]


class ChatMessage(BaseModel):
    """One turn in a conversation.

    A message carrying tool calls holds nothing but tool calls, and a message
    carrying tool results holds nothing but tool results.
    """

    model_config = ConfigDict(frozen=True)

    author: Author
    parts: tuple[MessagePart, ...] = ()
    refusal: str | None = None
    reasoning: str | None = None

    @field_validator("parts", mode="before")
    @classmethod
    def _coerce_parts(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (TextPart(text=value),)
        if isinstance(value, BaseModel):
            return (value,)
        if isinstance(value, list | tuple):
            return tuple(TextPart(text=v) if isinstance(v, str) else v for v in value)
        return value

    @model_validator(mode="after")
    def _check_parts(self) -> "ChatMessage":
        calls = [p for p in self.parts if isinstance(p, ToolCall)]
        results = [p for p in self.parts if isinstance(p, ToolCallResult)]

        if calls:
            if len(calls) != len(self.parts):
                raise ValueError("A message with tool calls cannot contain other parts")
            if self.author != Author.BOT:
                raise ValueError("Only the bot can request tool calls")
            ids = [c.id for c in calls]
            if len(set(ids)) != len(ids):
                raise ValueError("Tool call ids must be unique within a message")

        if results:
            if len(results) != len(self.parts):
                raise ValueError("A message with tool call results cannot contain other parts")
            if self.author == Author.BOT:
                raise ValueError("Tool call results cannot be authored by the bot")
            ids = [r.tool_call_id for r in results]
            if len(set(ids)) != len(ids):
                raise ValueError("Tool call results must answer distinct calls")

        return self

    @classmethod
    def user(cls, content: str | Sequence[Any]) -> "ChatMessage":
        return cls(author=Author.USER, parts=content)

    @classmethod
    def bot(cls, content: str | Sequence[Any]) -> "ChatMessage":
        return cls(author=Author.BOT, parts=content)

    @classmethod
    def developer(cls, content: str | Sequence[Any]) -> "ChatMessage":
        return cls(author=Author.DEVELOPER, parts=content)

    @classmethod
    def from_tool_results(
        cls, results: Iterable[ToolCallResult], calls: Sequence[ToolCall] | None = None
    ) -> "ChatMessage":
        """Build the message answering a batch of tool calls.

        When ``calls`` is given, the results must answer exactly that batch.
        """
        results = tuple(results)
        if not results:
            raise ValueError("At least one tool call result is required")
        if calls is not None:
            check_results_match(calls, results)
        return cls(author=Author.USER, parts=results)

    @property
    def content(self) -> str:
        return "\n\n".join(p.content for p in self.parts)

    @property
    def text_content(self) -> str:
        return "\n\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def tool_results(self) -> list[ToolCallResult]:
        return [p for p in self.parts if isinstance(p, ToolCallResult)]

    @property
    def files(self) -> list[FilePart]:
        return [p for p in self.parts if isinstance(p, FilePart)]

    @property
    def has_tool_calls(self) -> bool:
        return any(isinstance(p, ToolCall) for p in self.parts)

    @property
    def has_tool_results(self) -> bool:
        return any(isinstance(p, ToolCallResult) for p in self.parts)


def check_results_match(calls: Sequence[ToolCall], results: Sequence[ToolCallResult]) -> None:
    """Raise ValueError unless ``results`` answer ``calls`` one to one."""
    if len(calls) != len(results):
        raise ValueError(f"Expected {len(calls)} tool call results, got {len(results)}")
    expected = {c.id for c in calls}
    received = {r.tool_call_id for r in results}
    if expected != received:
        raise ValueError(f"Tool call results {sorted(received)} do not match calls {sorted(expected)}")


class ChatCompletion(BaseModel):
    """Normalized reply from a backend."""

    model_config = ConfigDict(frozen=True)

    finish_reason: FinishReason
    message: ChatMessage

    @property
    def text(self) -> str:
        return self.message.text_content

    @property
    def tool_calls(self) -> list[ToolCall]:
        return self.message.tool_calls

    @property
    def has_tool_calls(self) -> bool:
        return self.message.has_tool_calls

    @property
    def refusal(self) -> str | None:
        return self.message.refusal

    def parse(self, model: type[T]) -> T:
        """Parse the reply text as JSON into ``model``."""
        return model.model_validate_json(strip_code_fences(self.text))
