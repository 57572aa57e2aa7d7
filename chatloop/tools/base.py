"""Base types and definitions for tools."""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from chatloop.errors import ToolInitializationError, ToolStateError
from chatloop.models.messages import ToolCall, ToolCallResult

if TYPE_CHECKING:
    from chatloop.tools.capability import Capability

_MISSING: Any = object()


class ParameterType(StrEnum):
    """JSON-Schema type of a tool parameter."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"


class ToolParameter(BaseModel):
    """One parameter a tool accepts."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = True
    description: str | None = None
    enum: tuple[Any, ...] | None = None

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema


def to_json_schema(parameters: Iterable[ToolParameter]) -> dict[str, Any]:
    """JSON schema of the object holding all ``parameters``."""
    parameters = list(parameters)
    return {
        "type": "object",
        "properties": {p.name: p.to_json_schema() for p in parameters},
        "required": [p.name for p in parameters if p.required],
    }


def _resolve(schema: dict[str, Any], defs: Mapping[str, Any]) -> dict[str, Any]:
    if "$ref" in schema:
        resolved = dict(defs[schema["$ref"].rsplit("/", 1)[-1]])
        resolved.update({k: v for k, v in schema.items() if k != "$ref"})
        return resolved
    if "allOf" in schema and len(schema["allOf"]) == 1:
        resolved = _resolve(schema["allOf"][0], defs)
        resolved.update({k: v for k, v in schema.items() if k != "allOf"})
        return resolved
    if "anyOf" in schema:
        options = [o for o in schema["anyOf"] if o.get("type") != "null"]
        if len(options) == 1:
            resolved = _resolve(options[0], defs)
            resolved.update({k: v for k, v in schema.items() if k != "anyOf"})
            return resolved
    return schema


def parameters_from_model(model: type[BaseModel]) -> list[ToolParameter]:
    """Derive tool parameters from the fields of a pydantic model.

    Only scalar fields (strings, numbers, booleans and enums of those) are supported.
    """
    schema = model.model_json_schema()
    defs = schema.get("$defs", {})
    required = set(schema.get("required", []))

    parameters = []
    for name, prop in schema.get("properties", {}).items():
        prop = _resolve(prop, defs)
        enum = prop.get("enum")
        json_type = prop.get("type")
        if json_type is None and enum:
            json_type = "string" if all(isinstance(v, str) for v in enum) else None
        try:
            param_type = ParameterType(json_type)
        except ValueError:
            raise ValueError(f"Unsupported type {json_type!r} for parameter {name} of {model.__name__}") from None

        parameters.append(
            ToolParameter(
                name=name,
                type=param_type,
                required=name in required,
                description=prop.get("description"),
                enum=tuple(enum) if enum else None,
            )
        )
    return parameters


class ToolState(StrEnum):
    """Lifecycle state of a tool."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    CLOSED = "closed"


class Tool(ABC):
    """A named, schema-described callable an agent can invoke.

    A tool must be initialized with its owning agent before it can be invoked,
    and can be initialized only once.
    """

    def __init__(self, id: str, description: str = "", parameters: Iterable[ToolParameter] = ()):
        self.id = id
        self.description = description
        self.parameters: tuple[ToolParameter, ...] = tuple(parameters)
        self.capability: Capability | None = None
        self.agent: Any = None
        self.state = ToolState.UNINITIALIZED

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, state={self.state.value})"

    @property
    def is_initialized(self) -> bool:
        return self.state == ToolState.INITIALIZED

    @property
    def is_closed(self) -> bool:
        return self.state == ToolState.CLOSED

    @property
    def parameter_names(self) -> set[str]:
        return {p.name for p in self.parameters}

    @property
    def json_schema(self) -> dict[str, Any]:
        return to_json_schema(self.parameters)

    def init(self, agent: Any) -> None:
        """Attach the tool to its owning agent."""
        if self.state == ToolState.INITIALIZED:
            raise ToolInitializationError(f"Tool {self.id} is already initialized")
        if self.state == ToolState.CLOSED:
            raise ToolInitializationError(f"Tool {self.id} is already closed")
        self.agent = agent
        self.state = ToolState.INITIALIZED

    def close(self) -> None:
        """Release the tool. A closed tool cannot be used again."""
        self.state = ToolState.CLOSED

    async def invoke(self, call: ToolCall) -> ToolCallResult:
        """Run the tool for ``call``.

        Exceptions raised by the tool propagate; dispatchers turn them into error results.
        """
        if self.state != ToolState.INITIALIZED:
            raise ToolStateError(f"Tool {self.id} must be initialized before it is invoked (state: {self.state})")
        result = await self.run(call)
        if isinstance(result, ToolCallResult):
            return result
        return ToolCallResult.from_call(call, result)

    @abstractmethod
    async def run(self, call: ToolCall) -> Any:
        """Tool body. Returns the result value or a ready ToolCallResult."""

    def get_string(self, call: ToolCall, name: str, default: Any = _MISSING) -> str:
        value = self._get(call, name, default)
        return value if value is None else str(value)

    def get_int(self, call: ToolCall, name: str, default: Any = _MISSING) -> int:
        value = self._get(call, name, default)
        if value is None or (isinstance(value, int) and not isinstance(value, bool)):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise ValueError(f"Parameter {name} of tool {self.id} is expected to be an integer: {value!r}")

    def get_float(self, call: ToolCall, name: str, default: Any = _MISSING) -> float:
        value = self._get(call, name, default)
        if value is None:
            return value
        if isinstance(value, int | float) and not isinstance(value, bool):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise ValueError(f"Parameter {name} of tool {self.id} is expected to be a number: {value!r}")

    def get_bool(self, call: ToolCall, name: str, default: Any = _MISSING) -> bool:
        value = self._get(call, name, default)
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValueError(f"Parameter {name} of tool {self.id} is expected to be a boolean: {value!r}")

    def _get(self, call: ToolCall, name: str, default: Any) -> Any:
        if name in call.arguments:
            return call.arguments[name]
        if default is _MISSING:
            raise ValueError(f"Missing required parameter {name} for tool {self.id}")
        return default


ToolHandler = Callable[[BaseModel], Any | Awaitable[Any]]


class FunctionTool(Tool):
    """Tool wrapping a plain function whose arguments are described by a pydantic model.

    The handler receives the validated arguments model and may be sync or async.
    """

    def __init__(self, id: str, description: str, params_model: type[BaseModel], handler: ToolHandler):
        super().__init__(id, description, parameters_from_model(params_model))
        self.params_model = params_model
        self.handler = handler

    def parse_input(self, raw_input: Mapping[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.params_model.model_validate(dict(raw_input))

    async def run(self, call: ToolCall) -> Any:
        result = self.handler(self.parse_input(call.arguments))
        if inspect.isawaitable(result):
            result = await result
        return result
