"""Shared conversation message and tool-call types."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol

if TYPE_CHECKING:
    from convo_agent.agent.abort import AbortSignal
    from convo_agent.agent.usage import TokenUsage, UsageData
    from convo_agent.tools.base import ToolSpec

JsonValue = Any
Role = Literal["system", "user", "assistant", "tool"]


def get_attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


@dataclass(slots=True)
class ToolCall:
    """Tool call emitted by the model; ``arguments_text`` is unparsed JSON."""

    id: str
    name: str
    arguments_text: str = ""

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_text},
        }


@dataclass(slots=True)
class ChatMessage:
    """Normalized chat message exchanged with the model."""

    role: Role
    content: str | list[dict[str, Any]] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role="user", content=content)

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role="system", content=content)

    def text(self) -> str:
        """Return the textual content, joining text parts of structured content."""
        if isinstance(self.content, str):
            return self.content
        if not self.content:
            return ""
        return " ".join(
            str(part.get("text", "")) for part in self.content if part.get("type") == "text"
        )

    def to_openai(self) -> dict[str, Any]:
        content: Any = self.content
        if isinstance(content, list):
            content = [dict(part) for part in content]
        payload: dict[str, Any] = {"role": self.role, "content": content}
        if self.name:
            payload["name"] = self.name
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        return payload


@dataclass(slots=True)
class ModelResponse:
    """Blocking model response normalized for the conversation loop."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    raw: Any | None = None


@dataclass(slots=True)
class ResponseChunk:
    """Item of a streaming response: a content delta or a finish marker."""

    content: str | None = None
    finish_reason: str | None = None

    def to_dict(self) -> dict[str, str]:
        if self.finish_reason is not None:
            return {"finishReason": self.finish_reason}
        return {"content": self.content or ""}


@dataclass(slots=True)
class ToolInvocationRecord:
    """Ledger entry describing one attempted tool call."""

    id: str
    name: str
    started_at: datetime
    finished_at: datetime
    input: JsonValue
    ok: bool
    data: JsonValue | None = None
    error: str | None = None


@dataclass(slots=True)
class ToolInvocationEvent:
    """Progress event for a tool call; ``record`` is set once it finished."""

    type: Literal["started", "finished"]
    id: str
    name: str
    started_at: datetime
    input: JsonValue = None
    record: ToolInvocationRecord | None = None


@dataclass(slots=True)
class GenerateResult:
    """Final result of a blocking conversation call."""

    message: str
    usage: UsageData
    tool_invocations: list[ToolInvocationRecord] = field(default_factory=list)


class MessageModerator(Protocol):
    """Pure transform applied to the full message list before each request."""

    def observe(self, messages: list[ChatMessage]) -> list[ChatMessage]: ...


class ChatTransport(Protocol):
    """Provider transport used by the conversation loop."""

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str,
        abort_signal: AbortSignal | None = None,
    ) -> ModelResponse: ...

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[Any]: ...

    async def complete_structured(
        self,
        messages: Sequence[ChatMessage],
        schema: dict[str, Any],
        *,
        schema_name: str = "response",
        model: str,
        abort_signal: AbortSignal | None = None,
    ) -> ModelResponse: ...
