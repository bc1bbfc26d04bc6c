"""Tool execution helpers with argument parsing, tracing and result shaping."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, assert_never

import structlog

from convo_agent.agent.types import (
    ChatMessage,
    JsonValue,
    ToolCall,
    ToolInvocationEvent,
    ToolInvocationRecord,
)
from convo_agent.infra.tracing import tool_span
from convo_agent.tools.base import JsonReturn, MessagesReturn, as_tool_return
from convo_agent.tools.registry import ToolRegistry

LOGGER = structlog.get_logger(__name__)

NONEXISTENT_FUNCTION_ERROR = "Assistant attempted to call nonexistent function"
NO_RETURN_VALUE_RESULT = "Function with no return value executed successfully"
MESSAGES_FOLLOW_NOTICE = "The return data from this function is provided in the following messages"


@dataclass(slots=True)
class ToolCallOutcome:
    """Result of one tool call, applied to shared state by the caller."""

    call: ToolCall
    record: ToolInvocationRecord
    messages: list[ChatMessage] = field(default_factory=list)
    counted_tool: str | None = None
    error: Exception | None = None


def parse_arguments(arguments_text: str) -> JsonValue:
    """Parse tool arguments; blank text gives ``{}``, invalid JSON the raw text."""
    if not arguments_text or not arguments_text.strip():
        return {}
    try:
        return json.loads(arguments_text)
    except json.JSONDecodeError:
        return arguments_text


def _json_default(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ToolExecutor:
    """Execute tool calls and normalize their results into tool messages.

    Tool failures are captured in the returned outcome rather than raised so
    that callers can apply ledger records in call order before failing.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def execute(
        self,
        call: ToolCall,
        *,
        on_started: Callable[[ToolInvocationEvent], None] | None = None,
    ) -> ToolCallOutcome:
        started_at = _now()
        arguments = parse_arguments(call.arguments_text)
        tool = self._registry.resolve(call.name)
        name = tool.spec.name if tool is not None else call.name.rsplit(".", 1)[-1]

        if on_started is not None:
            on_started(
                ToolInvocationEvent(
                    type="started", id=call.id, name=name, started_at=started_at, input=arguments
                )
            )

        if tool is None:
            LOGGER.error("tool.not_found", tool=call.name, call_id=call.id)
            record = ToolInvocationRecord(
                id=call.id,
                name=name,
                started_at=started_at,
                finished_at=_now(),
                input=arguments,
                ok=False,
                error=NONEXISTENT_FUNCTION_ERROR,
            )
            content = dump_json({"error": NONEXISTENT_FUNCTION_ERROR, "functionName": name})
            return ToolCallOutcome(
                call=call,
                record=record,
                messages=[ChatMessage(role="tool", content=content, tool_call_id=call.id)],
            )

        with tool_span("tool.execute", tool_name=name, call_id=call.id):
            LOGGER.info("tool.execute_start", tool=name, call_id=call.id, arguments=arguments)
            try:
                value = await tool.invoke(arguments)
                messages, data = await self._to_messages(call, value)
            except Exception as exc:
                LOGGER.exception("tool.execute_failed", tool=name, call_id=call.id, error=str(exc))
                record = ToolInvocationRecord(
                    id=call.id,
                    name=name,
                    started_at=started_at,
                    finished_at=_now(),
                    input=arguments,
                    ok=False,
                    error=str(exc) or type(exc).__name__,
                )
                return ToolCallOutcome(call=call, record=record, counted_tool=name, error=exc)

        LOGGER.info("tool.execute_end", tool=name, call_id=call.id, messages=len(messages))
        record = ToolInvocationRecord(
            id=call.id,
            name=name,
            started_at=started_at,
            finished_at=_now(),
            input=arguments,
            ok=True,
            data=data,
        )
        return ToolCallOutcome(call=call, record=record, messages=messages, counted_tool=name)

    async def execute_concurrently(
        self,
        calls: Sequence[ToolCall],
        *,
        on_started: Callable[[ToolInvocationEvent], None] | None = None,
    ) -> list[ToolCallOutcome]:
        """Fan out every call of a round; outcomes keep the order of ``calls``."""
        return list(
            await asyncio.gather(*(self.execute(call, on_started=on_started) for call in calls))
        )

    async def execute_sequentially(
        self,
        calls: Sequence[ToolCall],
        *,
        on_started: Callable[[ToolInvocationEvent], None] | None = None,
    ) -> list[ToolCallOutcome]:
        """Run calls one by one, stopping after the first failing tool."""
        outcomes: list[ToolCallOutcome] = []
        for call in calls:
            outcome = await self.execute(call, on_started=on_started)
            outcomes.append(outcome)
            if outcome.error is not None:
                break
        return outcomes

    async def _to_messages(self, call: ToolCall, value: Any) -> tuple[list[ChatMessage], JsonValue]:
        if value is None:
            content = dump_json({"result": NO_RETURN_VALUE_RESULT})
            return [ChatMessage(role="tool", content=content, tool_call_id=call.id)], None

        result = await as_tool_return(value)
        if isinstance(result, JsonReturn):
            if result.value is None:
                return await self._to_messages(call, None)
            content = dump_json(result.value)
            return [ChatMessage(role="tool", content=content, tool_call_id=call.id)], result.value
        elif isinstance(result, MessagesReturn):
            if not result.parts:
                return await self._to_messages(call, None)
            parts = [
                dataclasses.replace(part, tool_call_id=part.tool_call_id or call.id)
                if part.role == "tool"
                else part
                for part in result.parts
            ]
            notice = ChatMessage(role="tool", content=MESSAGES_FOLLOW_NOTICE, tool_call_id=call.id)
            return [notice, *parts], [part.to_openai() for part in parts]
        else:
            assert_never(result)
