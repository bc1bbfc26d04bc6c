"""Optional ambient access to the accumulator of the enclosing call.

The runner always passes its accumulator explicitly. This module only lets
nested code (for example a tool that starts its own conversation) find the
accumulator of the call it runs under.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from convo_agent.agent.usage import UsageAccumulator

_ACCUMULATORS: ContextVar[dict[str, UsageAccumulator] | None] = ContextVar(
    "convo_agent_usage_accumulators", default=None
)


def current_usage_accumulator(model: str) -> UsageAccumulator | None:
    accumulators = _ACCUMULATORS.get()
    if not accumulators:
        return None
    return accumulators.get(model)


@contextmanager
def usage_context(accumulator: UsageAccumulator) -> Iterator[UsageAccumulator]:
    parent = _ACCUMULATORS.get() or {}
    token = _ACCUMULATORS.set({**parent, accumulator.model: accumulator})
    try:
        yield accumulator
    finally:
        _ACCUMULATORS.reset(token)
