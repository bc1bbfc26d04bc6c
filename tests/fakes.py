from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from convo_agent.agent.types import ChatMessage, ModelResponse
from convo_agent.tools.base import ToolSpec


def make_spec(name: str, instructions: list[str] | None = None) -> ToolSpec:
    return ToolSpec(
        name=name,
        description="Test tool",
        input_schema={"type": "object", "properties": {"content": {"type": "string"}}},
        instructions=list(instructions or []),
    )


@dataclass(slots=True)
class RecordingTool:
    spec: ToolSpec
    result: Any = None
    seen_args: list[Any] = field(default_factory=list)

    async def invoke(self, arguments: Any) -> Any:
        self.seen_args.append(arguments)
        return self.result


@dataclass(slots=True)
class EchoTool:
    spec: ToolSpec
    seen_args: list[Any] = field(default_factory=list)

    async def invoke(self, arguments: Any) -> Any:
        self.seen_args.append(arguments)
        return arguments


@dataclass(slots=True)
class FailingTool:
    spec: ToolSpec
    error: Exception = field(default_factory=lambda: RuntimeError("boom"))
    calls: int = 0

    async def invoke(self, arguments: Any) -> Any:
        self.calls += 1
        raise self.error


@dataclass(slots=True)
class FakeClient:
    """Scripted transport; ``responses`` feed ``complete``, ``streams`` feed ``stream``."""

    responses: list[ModelResponse] = field(default_factory=list)
    streams: list[list[Any]] = field(default_factory=list)
    seen_messages: list[list[ChatMessage]] = field(default_factory=list)
    seen_tools: list[list[str]] = field(default_factory=list)
    seen_schemas: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    closed_streams: int = 0
    calls: int = 0

    def _record(self, messages: Sequence[ChatMessage], tools: Sequence[ToolSpec]) -> None:
        self.seen_messages.append(list(messages))
        self.seen_tools.append([tool.name for tool in tools])
        self.calls += 1

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str,
        abort_signal: Any = None,
    ) -> ModelResponse:
        self._record(messages, tools)
        return self.responses[self.calls - 1]

    async def complete_structured(
        self,
        messages: Sequence[ChatMessage],
        schema: dict[str, Any],
        *,
        schema_name: str = "response",
        model: str,
        abort_signal: Any = None,
    ) -> ModelResponse:
        self._record(messages, ())
        self.seen_schemas.append((schema_name, schema))
        return self.responses[self.calls - 1]

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str,
        abort_signal: Any = None,
    ) -> AsyncIterator[Any]:
        self._record(messages, tools)
        return self._fragments(self.streams[self.calls - 1])

    async def _fragments(self, fragments: list[Any]) -> AsyncIterator[Any]:
        try:
            for fragment in fragments:
                yield fragment
        finally:
            self.closed_streams += 1


def text_fragment(content: str) -> dict[str, Any]:
    return {"choices": [{"delta": {"content": content}, "finish_reason": None}]}


def finish_fragment(reason: str) -> dict[str, Any]:
    return {"choices": [{"delta": {}, "finish_reason": reason}]}


def usage_fragment(prompt_tokens: int, completion_tokens: int) -> dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def tool_fragment(
    *,
    index: int | None = None,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {"function": {}}
    if index is not None:
        delta["index"] = index
    if call_id is not None:
        delta["id"] = call_id
    if name is not None:
        delta["function"]["name"] = name
    if arguments is not None:
        delta["function"]["arguments"] = arguments
    return {"choices": [{"delta": {"tool_calls": [delta]}, "finish_reason": None}]}


def tool_message_contents(messages: Sequence[ChatMessage]) -> list[Any]:
    return [message.content for message in messages if message.role == "tool"]


@dataclass(slots=True)
class CountingModerator:
    seen: list[int] = field(default_factory=list)

    def observe(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        self.seen.append(len(messages))
        return messages
