"""Cooperative cancellation for conversation calls."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from convo_agent.agent.errors import RequestAbortedError

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")


class AbortSignal:
    """One-shot abort flag shared between a caller and an in-flight call.

    Once :meth:`abort` is called, :meth:`race` cancels whatever it is awaiting
    and every later :meth:`raise_if_aborted` raises :class:`RequestAbortedError`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def abort(self, reason: str = "Request aborted") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        LOGGER.info("abort.requested", reason=reason)

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise RequestAbortedError(self._reason or "Request aborted")

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first, then cancel it."""
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self.raise_if_aborted()
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise RequestAbortedError(self._reason or "Request aborted")


async def guarded(awaitable: Awaitable[T], signal: AbortSignal | None) -> T:
    if signal is None:
        return await awaitable
    return await signal.race(awaitable)
