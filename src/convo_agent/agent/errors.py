"""Errors raised by the conversation loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from convo_agent.agent.types import ToolInvocationRecord
    from convo_agent.agent.usage import UsageData


class ConversationError(Exception):
    """Base class for failures of a conversation call."""


class MaxToolCallsExceededError(ConversationError):
    def __init__(self, max_tool_calls: int, requested: int) -> None:
        super().__init__(
            f"Max tool calls ({max_tool_calls}) reached, "
            f"round would bring the total to {requested}. Stopping execution."
        )
        self.max_tool_calls = max_tool_calls
        self.requested = requested


class EmptyResponseError(ConversationError):
    """The model finished without tool calls and without any text."""


class MalformedFragmentError(ConversationError):
    """A streamed response fragment did not have the expected shape."""


class RequestAbortedError(ConversationError):
    """The caller's abort signal fired while the call was in flight."""


class StructuredOutputError(ConversationError):
    """A structured answer was not valid JSON for the requested schema."""


class ToolInvocationError(ConversationError):
    """A tool raised while executing; the original exception is the cause."""

    def __init__(
        self,
        tool_name: str,
        call_id: str,
        *,
        tool_invocations: list[ToolInvocationRecord],
        usage: UsageData | None = None,
    ) -> None:
        super().__init__(f"Tool {tool_name!r} failed for call {call_id}")
        self.tool_name = tool_name
        self.call_id = call_id
        self.tool_invocations = tool_invocations
        self.usage = usage
