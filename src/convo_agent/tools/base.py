"""Base interfaces for tools."""

from __future__ import annotations

import abc
import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from convo_agent.agent.types import ChatMessage, JsonValue
from convo_agent.tools.schema import strictify_schema


@dataclass(slots=True)
class ToolSpec:
    """Machine-readable description of a tool."""

    name: str
    description: str
    input_schema: Mapping[str, JsonValue]
    instructions: list[str] = field(default_factory=list)

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def to_openai(self, *, strict: bool = False) -> dict[str, Any]:
        function: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": strictify_schema(self.input_schema) if strict else dict(self.input_schema),
        }
        if strict:
            function["strict"] = True
        return {"type": "function", "function": function}


@dataclass(slots=True, frozen=True)
class JsonReturn:
    """Tool output serialized as one JSON tool message."""

    value: JsonValue
    kind: Literal["json"] = "json"


@dataclass(slots=True, frozen=True)
class MessagesReturn:
    """Tool output expanded into several messages following the tool message."""

    parts: list[ChatMessage]
    kind: Literal["messages"] = "messages"

    @classmethod
    async def from_factory(cls, factory: MessageFactory) -> MessagesReturn:
        return cls(parts=list(await factory.create()))


class MessageFactory(abc.ABC):
    """Tool return whose messages are only built once the executor asks for them."""

    @abc.abstractmethod
    async def create(self) -> list[ChatMessage]: ...


ToolReturn = JsonReturn | MessagesReturn


async def as_tool_return(value: Any) -> ToolReturn:
    if isinstance(value, (JsonReturn, MessagesReturn)):
        return value
    if isinstance(value, MessageFactory):
        return await MessagesReturn.from_factory(value)
    return JsonReturn(value)


class Tool(Protocol):
    """Tool interface for the executor."""

    spec: ToolSpec

    async def invoke(self, arguments: JsonValue) -> Any: ...


@dataclass(slots=True)
class FunctionTool:
    """Adapt a plain sync or async callable to the :class:`Tool` interface."""

    spec: ToolSpec
    func: Callable[[Any], Any]

    async def invoke(self, arguments: JsonValue) -> Any:
        result = self.func(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def function_tool(
    name: str,
    description: str,
    input_schema: Mapping[str, JsonValue],
    *,
    instructions: list[str] | None = None,
) -> Callable[[Callable[[Any], Any]], FunctionTool]:
    """Decorator building a :class:`FunctionTool` from a function."""

    def decorate(func: Callable[[Any], Any]) -> FunctionTool:
        spec = ToolSpec(
            name=name,
            description=description,
            input_schema=input_schema,
            instructions=list(instructions or []),
        )
        return FunctionTool(spec=spec, func=func)

    return decorate
