from __future__ import annotations

import pytest

from convo_agent.agent.history import MessageHistory
from convo_agent.agent.types import ChatMessage, ToolCall


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _tool_round(call_id: str) -> list[ChatMessage]:
    return [
        ChatMessage(role="assistant", tool_calls=[ToolCall(id=call_id, name="lookup")]),
        ChatMessage(role="tool", content="{}", tool_call_id=call_id),
    ]


def test_push_and_read_back_in_order() -> None:
    history = MessageHistory([ChatMessage.system("rules")])
    history.push([ChatMessage.user("hi"), ChatMessage(role="assistant", content="hello")])

    assert [message.role for message in history.get_messages()] == ["system", "user", "assistant"]
    assert len(history) == 3
    assert history.to_string() == "rules. hi. hello"


def test_max_messages_keeps_system_messages() -> None:
    history = MessageHistory([ChatMessage.system("rules")], max_messages=3)

    history.push([ChatMessage.user(str(number)) for number in range(4)])

    assert [message.content for message in history.get_messages()] == ["rules", "2", "3"]


def test_pruning_drops_orphaned_tool_results() -> None:
    history = MessageHistory(max_messages=2)
    history.push([ChatMessage.user("q"), *_tool_round("call-1")])

    history.push([ChatMessage.user("next")])

    assert [message.content for message in history.get_messages()] == ["next"]


def test_age_based_pruning() -> None:
    clock = FakeClock()
    history = MessageHistory([ChatMessage.system("rules")], max_age_seconds=10, clock=clock)
    history.push([ChatMessage.user("old")])
    clock.now = 8
    history.push([ChatMessage.user("new")])
    clock.now = 15

    removed = history.prune()

    assert removed == 1
    assert [message.content for message in history.get_messages()] == ["rules", "new"]


def test_set_messages_keeps_known_timestamps() -> None:
    clock = FakeClock()
    history = MessageHistory(max_age_seconds=10, clock=clock)
    old = ChatMessage.user("old")
    history.push([old])
    clock.now = 20

    history.set_messages([old, ChatMessage.user("fresh")])
    history.prune()

    assert [message.content for message in history.get_messages()] == ["fresh"]


def test_remove_by_identity_and_drop_tool_results() -> None:
    first, second = ChatMessage.user("same"), ChatMessage.user("same")
    history = MessageHistory([first, second, *_tool_round("call-1")])
    assistant = history.get_messages()[2]

    assert history.remove(second)
    assert history.get_messages()[0] is first
    assert history.remove(assistant)
    assert [message.role for message in history.get_messages()] == ["user"]
    assert not history.remove(ChatMessage.user("missing"))


def test_clear() -> None:
    history = MessageHistory([ChatMessage.system("rules"), ChatMessage.user("hi")])

    history.clear()
    assert [message.role for message in history.get_messages()] == ["system"]

    history.clear(keep_system=False)
    assert history.get_messages() == []


def test_invalid_max_messages() -> None:
    with pytest.raises(ValueError):
        MessageHistory(max_messages=0)
