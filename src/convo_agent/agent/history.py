"""Message history with optional size and age based pruning."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import structlog

from convo_agent.agent.types import ChatMessage

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class _Entry:
    message: ChatMessage
    added_at: float


class MessageHistory:
    """Ordered conversation messages owned by a single conversation.

    When limits are set, pruning drops the oldest non-system messages first.
    System messages are never pruned, and tool messages whose originating
    assistant tool call was pruned are dropped with it.
    """

    def __init__(
        self,
        messages: Iterable[ChatMessage] = (),
        *,
        max_messages: int | None = None,
        max_age_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_messages is not None and max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self._max_messages = max_messages
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: list[_Entry] = []
        self.push(messages)

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, messages: Iterable[ChatMessage]) -> None:
        now = self._clock()
        self._entries.extend(_Entry(message, now) for message in messages)
        self.prune()

    def get_messages(self) -> list[ChatMessage]:
        return [entry.message for entry in self._entries]

    def set_messages(self, messages: Iterable[ChatMessage]) -> None:
        """Replace the content, keeping the timestamps of messages already known."""
        known = {id(entry.message): entry.added_at for entry in self._entries}
        now = self._clock()
        self._entries = [_Entry(message, known.get(id(message), now)) for message in messages]

    def remove(self, message: ChatMessage) -> bool:
        """Remove ``message`` (by identity) and any tool results answering it."""
        for position, entry in enumerate(self._entries):
            if entry.message is message:
                del self._entries[position]
                self._entries = _drop_orphaned_tool_messages(self._entries)
                return True
        return False

    def clear(self, *, keep_system: bool = True) -> None:
        if keep_system:
            self._entries = [entry for entry in self._entries if entry.message.role == "system"]
        else:
            self._entries = []

    def prune(self) -> int:
        before = len(self._entries)
        entries = self._entries

        if self._max_age_seconds is not None:
            cutoff = self._clock() - self._max_age_seconds
            entries = [
                entry
                for entry in entries
                if entry.message.role == "system" or entry.added_at >= cutoff
            ]

        if self._max_messages is not None and len(entries) > self._max_messages:
            excess = len(entries) - self._max_messages
            kept: list[_Entry] = []
            for entry in entries:
                if excess > 0 and entry.message.role != "system":
                    excess -= 1
                    continue
                kept.append(entry)
            entries = kept

        self._entries = _drop_orphaned_tool_messages(entries)
        removed = before - len(self._entries)
        if removed:
            LOGGER.debug("history.pruned", removed=removed, remaining=len(self._entries))
        return removed

    def to_string(self) -> str:
        return ". ".join(text for entry in self._entries if (text := entry.message.text()))


def _drop_orphaned_tool_messages(entries: list[_Entry]) -> list[_Entry]:
    issued: set[str] = set()
    kept: list[_Entry] = []
    for entry in entries:
        message = entry.message
        if message.role == "assistant":
            issued.update(call.id for call in message.tool_calls)
        elif message.role == "tool" and message.tool_call_id not in issued:
            continue
        kept.append(entry)
    return kept
