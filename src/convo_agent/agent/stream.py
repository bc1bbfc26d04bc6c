"""Reassembly of streamed chat-completion fragments.

The reassembler is a single-pass state machine fed one fragment at a time.
Text deltas are surfaced immediately; tool-call deltas are stitched together
until the provider signals that the tool-call phase is over and the trailing
usage summary arrives.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from convo_agent.agent.errors import MalformedFragmentError
from convo_agent.agent.types import ToolCall, get_attr
from convo_agent.agent.usage import TokenUsage, UsageAccumulator

LOGGER = structlog.get_logger(__name__)

TOOL_CALLS_FINISH_REASON = "tool_calls"
TERMINAL_FINISH_REASONS = frozenset({"stop", "length", "content_filter"})


@dataclass(slots=True, frozen=True)
class TextDelta:
    content: str


@dataclass(slots=True, frozen=True)
class FinishSignal:
    reason: str


@dataclass(slots=True, frozen=True)
class ToolRoundReady:
    calls: list[ToolCall]
    text: str = ""


@dataclass(slots=True, frozen=True)
class StreamComplete:
    text: str = ""


StreamEvent = TextDelta | FinishSignal | ToolRoundReady | StreamComplete


@dataclass(slots=True)
class StreamAssemblyState:
    accumulated_calls: list[ToolCall] = field(default_factory=list)
    current_call: ToolCall | None = None
    calls_by_index: dict[int, ToolCall] = field(default_factory=dict)
    finished_tool_phase: bool = False
    output_terminated: bool = False
    text_parts: list[str] = field(default_factory=list)
    done: bool = False


class ChunkReassembler:
    """Turn fragments of one streamed response into :data:`StreamEvent` values.

    A tool-call delta carrying an id starts a new call; a delta without an id
    continues the call registered under its ``index``, or the current call
    when the delta has no known index. Argument fragments are concatenated
    verbatim.
    """

    def __init__(self, usage: UsageAccumulator, *, service_tier: str | None = None) -> None:
        self._usage = usage
        self._service_tier = service_tier
        self.state = StreamAssemblyState()

    @property
    def done(self) -> bool:
        return self.state.done

    def process(self, fragment: Any) -> list[StreamEvent]:
        if self.state.done:
            return []
        choices = get_attr(fragment, "choices", None) if fragment is not None else None
        if fragment is None or choices is None:
            raise MalformedFragmentError(f"Received invalid fragment: {fragment!r}")

        events: list[StreamEvent] = []
        choice = choices[0] if choices else None
        delta = get_attr(choice, "delta", None) if choice is not None else None

        content = get_attr(delta, "content", None) if delta is not None else None
        if content:
            self.state.text_parts.append(content)
            events.append(TextDelta(content))

        tool_call_deltas = get_attr(delta, "tool_calls", None) if delta is not None else None
        if tool_call_deltas:
            self._handle_tool_call_deltas(tool_call_deltas)

        finish_reason = get_attr(choice, "finish_reason", None) if choice is not None else None
        if finish_reason == TOOL_CALLS_FINISH_REASON:
            self.state.finished_tool_phase = True
        elif finish_reason in TERMINAL_FINISH_REASONS:
            if finish_reason == "length":
                LOGGER.info("stream.max_output_tokens_reached")
            elif finish_reason == "content_filter":
                LOGGER.warning("stream.content_filtered")
            self.state.output_terminated = True
            events.append(FinishSignal(finish_reason))

        usage = get_attr(fragment, "usage", None)
        if usage:
            self._usage.add_usage(TokenUsage.from_provider(usage), service_tier=self._service_tier)
            events.extend(self._settle())

        return events

    def close(self) -> list[StreamEvent]:
        """Handle exhaustion of the fragment source."""
        if self.state.done:
            return []
        if not (self.state.finished_tool_phase or self.state.output_terminated):
            raise MalformedFragmentError("Fragment stream ended before a finish reason was received")
        LOGGER.debug("stream.closed_without_usage")
        return self._settle()

    def _settle(self) -> list[StreamEvent]:
        text = "".join(self.state.text_parts)
        if self.state.finished_tool_phase:
            self.state.done = True
            return [ToolRoundReady(calls=self._flush_calls(), text=text)]
        if self.state.output_terminated:
            self.state.done = True
            return [StreamComplete(text=text)]
        return []

    def _handle_tool_call_deltas(self, deltas: Any) -> None:
        for delta in deltas:
            call_id = get_attr(delta, "id", None)
            index = get_attr(delta, "index", None)
            function = get_attr(delta, "function", None)
            name = get_attr(function, "name", None) or ""
            arguments = get_attr(function, "arguments", None) or ""

            if call_id:
                if self.state.current_call is not None:
                    self.state.accumulated_calls.append(self.state.current_call)
                call = ToolCall(id=str(call_id), name=name, arguments_text=arguments)
                self.state.current_call = call
                if isinstance(index, int):
                    self.state.calls_by_index[index] = call
                continue

            target = self.state.calls_by_index.get(index) if isinstance(index, int) else None
            if target is None:
                target = self.state.current_call
            if target is None:
                raise MalformedFragmentError(
                    f"Tool call delta without an id before any tool call started: {delta!r}"
                )
            target.name += name
            target.arguments_text += arguments

    def _flush_calls(self) -> list[ToolCall]:
        if self.state.current_call is not None:
            self.state.accumulated_calls.append(self.state.current_call)
            self.state.current_call = None
        calls = [call for call in self.state.accumulated_calls if call.id and call.name]
        self.state.accumulated_calls = []
        self.state.calls_by_index = {}
        return calls
