"""Ordered record of every tool invocation attempted during one call."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

import structlog

from convo_agent.agent.types import ToolInvocationEvent, ToolInvocationRecord

LOGGER = structlog.get_logger(__name__)

ToolInvocationCallback = Callable[[ToolInvocationEvent], None]


@dataclass(slots=True)
class InvocationLedger:
    records: list[ToolInvocationRecord] = field(default_factory=list)
    on_event: ToolInvocationCallback | None = None

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ToolInvocationRecord]:
        return iter(self.records)

    def started(self, event: ToolInvocationEvent) -> None:
        self._notify(event)

    def append(self, record: ToolInvocationRecord) -> None:
        self.records.append(record)
        self._notify(
            ToolInvocationEvent(
                type="finished",
                id=record.id,
                name=record.name,
                started_at=record.started_at,
                input=record.input,
                record=record,
            )
        )

    def snapshot(self) -> list[ToolInvocationRecord]:
        return list(self.records)

    def _notify(self, event: ToolInvocationEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as exc:
            LOGGER.warning("ledger.callback_failed", event_type=event.type, error=str(exc))
