from __future__ import annotations

import pytest

from convo_agent.agent.errors import MalformedFragmentError
from convo_agent.agent.stream import (
    ChunkReassembler,
    FinishSignal,
    StreamComplete,
    TextDelta,
    ToolRoundReady,
)
from convo_agent.agent.types import ToolCall
from convo_agent.agent.usage import TokenUsage, UsageAccumulator

from fakes import finish_fragment, text_fragment, tool_fragment, usage_fragment


def _feed(reassembler: ChunkReassembler, fragments: list[dict]) -> list:
    events: list = []
    for fragment in fragments:
        events.extend(reassembler.process(fragment))
    return events


def test_text_deltas_finish_and_usage() -> None:
    usage = UsageAccumulator("gpt-4o-mini")
    reassembler = ChunkReassembler(usage)

    events = _feed(
        reassembler,
        [text_fragment("Hel"), text_fragment("lo"), finish_fragment("stop"), usage_fragment(7, 2)],
    )

    assert events == [
        TextDelta("Hel"),
        TextDelta("lo"),
        FinishSignal("stop"),
        StreamComplete(text="Hello"),
    ]
    assert reassembler.done
    assert usage.request_count == 1
    assert usage.total_usage == TokenUsage(input_tokens=7, output_tokens=2, total_tokens=9)


def test_tool_call_arguments_are_concatenated() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    events = _feed(
        reassembler,
        [
            tool_fragment(index=0, call_id="call-1", name="echo", arguments='{"con'),
            tool_fragment(index=0, arguments='tent":'),
            tool_fragment(index=0, arguments='"hi"}'),
            finish_fragment("tool_calls"),
        ],
    )
    assert events == []
    assert reassembler.state.finished_tool_phase

    events = reassembler.process(usage_fragment(1, 1))

    assert events == [
        ToolRoundReady(calls=[ToolCall(id="call-1", name="echo", arguments_text='{"content":"hi"}')])
    ]


def test_interleaved_tool_calls_attach_by_index() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    _feed(
        reassembler,
        [
            tool_fragment(index=0, call_id="a", name="first", arguments='{"x":'),
            tool_fragment(index=1, call_id="b", name="second", arguments='{"y":'),
            tool_fragment(index=0, arguments="1}"),
            tool_fragment(index=1, arguments="2}"),
            finish_fragment("tool_calls"),
        ],
    )

    (ready,) = reassembler.close()

    assert isinstance(ready, ToolRoundReady)
    assert ready.calls == [
        ToolCall(id="a", name="first", arguments_text='{"x":1}'),
        ToolCall(id="b", name="second", arguments_text='{"y":2}'),
    ]


def test_delta_without_index_continues_current_call() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    _feed(
        reassembler,
        [
            tool_fragment(call_id="a", name="first"),
            tool_fragment(arguments="{}"),
            tool_fragment(call_id="b", name="second", arguments="{"),
            tool_fragment(arguments="}"),
            finish_fragment("tool_calls"),
        ],
    )
    (ready,) = reassembler.close()

    assert [(call.id, call.arguments_text) for call in ready.calls] == [("a", "{}"), ("b", "{}")]


def test_text_before_tool_calls_is_kept_with_the_round() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    events = _feed(
        reassembler,
        [
            text_fragment("Let me check."),
            tool_fragment(index=0, call_id="a", name="lookup", arguments="{}"),
            finish_fragment("tool_calls"),
            usage_fragment(1, 1),
        ],
    )

    assert events[0] == TextDelta("Let me check.")
    assert events[-1] == ToolRoundReady(
        calls=[ToolCall(id="a", name="lookup", arguments_text="{}")], text="Let me check."
    )


def test_calls_without_a_name_are_dropped() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    _feed(
        reassembler,
        [
            tool_fragment(index=0, call_id="a", arguments="{}"),
            tool_fragment(index=1, call_id="b", name="kept", arguments="{}"),
            finish_fragment("tool_calls"),
        ],
    )
    (ready,) = reassembler.close()

    assert [call.id for call in ready.calls] == ["b"]


def test_continuation_before_any_call_is_malformed() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    with pytest.raises(MalformedFragmentError):
        reassembler.process(tool_fragment(arguments="{}"))


@pytest.mark.parametrize("fragment", [None, {"usage": None}, {"choices": None}])
def test_fragment_without_choices_is_malformed(fragment: object) -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    with pytest.raises(MalformedFragmentError):
        reassembler.process(fragment)


@pytest.mark.parametrize("reason", ["length", "content_filter"])
def test_other_terminal_finish_reasons(reason: str) -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))

    events = _feed(reassembler, [text_fragment("partial"), finish_fragment(reason)])

    assert events == [TextDelta("partial"), FinishSignal(reason)]
    assert reassembler.state.output_terminated
    assert not reassembler.done
    assert reassembler.close() == [StreamComplete(text="partial")]


def test_close_before_finish_is_malformed() -> None:
    reassembler = ChunkReassembler(UsageAccumulator("m"))
    reassembler.process(text_fragment("cut off"))

    with pytest.raises(MalformedFragmentError):
        reassembler.close()


def test_fragments_after_completion_are_ignored() -> None:
    usage = UsageAccumulator("m")
    reassembler = ChunkReassembler(usage)
    _feed(reassembler, [finish_fragment("stop"), usage_fragment(1, 1)])

    assert reassembler.process(text_fragment("late")) == []
    assert reassembler.process(usage_fragment(5, 5)) == []
    assert reassembler.close() == []
    assert usage.request_count == 1
