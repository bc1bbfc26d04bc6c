"""LiteLLM-backed chat transport with fixed-delay rate-limit retries."""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import litellm
import structlog
from litellm import acompletion

from convo_agent.agent.abort import AbortSignal, guarded
from convo_agent.agent.types import ChatMessage, ModelResponse, ToolCall, get_attr
from convo_agent.agent.usage import TokenUsage
from convo_agent.infra.tracing import llm_span
from convo_agent.tools.base import ToolSpec
from convo_agent.tools.schema import strictify_schema

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")


def _parse_tool_calls(tool_calls: Iterable[Any]) -> list[ToolCall]:
    parsed: list[ToolCall] = []
    for idx, raw_call in enumerate(tool_calls):
        call_id = _get_call_id(raw_call, idx)
        function = get_attr(raw_call, "function", None)
        if function is None:
            name = get_attr(raw_call, "name", "")
            arguments = get_attr(raw_call, "arguments", "")
        else:
            name = get_attr(function, "name", "")
            arguments = get_attr(function, "arguments", "")
        parsed.append(
            ToolCall(
                id=str(call_id),
                name=str(name or ""),
                arguments_text=arguments if isinstance(arguments, str) else "",
            )
        )
    return parsed


def _get_call_id(raw_call: Any, idx: int) -> str:
    return get_attr(raw_call, "id", None) or get_attr(raw_call, "call_id", None) or f"call_{idx}"


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_coerce_text(item) for item in value)
    if isinstance(value, dict):
        text = value.get("text")
        return text if isinstance(text, str) else ""
    return ""


def _extract_response_payload(response: Any) -> ModelResponse:
    choices = get_attr(response, "choices", []) or []
    choice = choices[0] if choices else {}
    message = get_attr(choice, "message", {}) or {}
    raw_tool_calls = get_attr(message, "tool_calls", None) or []
    usage = get_attr(response, "usage", None)
    return ModelResponse(
        text=_coerce_text(get_attr(message, "content", "")),
        tool_calls=_parse_tool_calls(raw_tool_calls),
        usage=TokenUsage.from_provider(usage) if usage else None,
        finish_reason=get_attr(choice, "finish_reason", None),
        raw=response,
    )


def _describe_latest(messages: Sequence[ChatMessage]) -> dict[str, Any]:
    if not messages:
        return {}
    latest = messages[-1]
    if latest.role == "tool":
        return {"returning_tool_output": latest.tool_call_id}
    text = latest.text()
    return {"request_content": text[:200]} if text else {}


_RETRY_AFTER_HEADERS = (
    "retry-after",
    "retry-after-ms",
    "x-ratelimit-reset-tokens",
    "x-ratelimit-reset-requests",
)
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_MESSAGE_HINTS = (
    re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?s)"'),
    re.compile(r"try again in (\d+(?:\.\d+)?(?:ms|s|m|h)(?:\d+(?:\.\d+)?(?:ms|s))*)", re.IGNORECASE),
)


def _parse_duration(value: str, *, default_unit: str = "s") -> float | None:
    value = value.strip()
    try:
        return float(value) * _DURATION_UNITS[default_unit]
    except ValueError:
        pass
    parts = _DURATION_PART.findall(value)
    if not parts:
        return None
    return sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in parts)


def _response_headers(exc: Exception) -> dict[str, str]:
    headers: dict[str, str] = {}
    response = getattr(exc, "response", None)
    for source in (getattr(response, "headers", None), getattr(exc, "litellm_response_headers", None)):
        if not source:
            continue
        for key, value in source.items():
            headers[str(key).lower()] = str(value)
    return headers


def retry_after_seconds(exc: Exception) -> int | None:
    """Seconds the provider asks us to wait, rounded up.

    An explicit ``retry_after`` attribute wins, then response headers, then
    hints embedded in the error message.
    """
    value = getattr(exc, "retry_after", None)
    if isinstance(value, (int, float)) and value >= 0:
        return int(math.ceil(value))

    headers = _response_headers(exc)
    for name in _RETRY_AFTER_HEADERS:
        raw = headers.get(name)
        if raw is None:
            continue
        seconds = _parse_duration(raw, default_unit="ms" if name.endswith("-ms") else "s")
        if seconds is not None:
            return int(math.ceil(seconds))

    message = str(exc)
    for pattern in _MESSAGE_HINTS:
        match = pattern.search(message)
        if match:
            seconds = _parse_duration(match.group(1))
            if seconds is not None:
                return int(math.ceil(seconds))
    return None


@dataclass(slots=True)
class LiteLLMChatClient:
    """Chat-completions transport.

    A rate-limited request is retried unchanged after a fixed delay, so the
    conversation loop only ever sees a response or a non-retryable error.
    Retries are unbounded unless ``max_rate_limit_retries`` is set.
    """

    model: str
    temperature: float = 0
    timeout_seconds: int = 30
    rate_limit_retry_delay_seconds: float = 15.0
    max_rate_limit_retries: int | None = None
    strict_tool_schemas: bool = False

    def _payload(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        model: str | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.model,
            "temperature": self.temperature,
            "timeout": self.timeout_seconds,
            "messages": [message.to_openai() for message in messages],
        }
        if tools:
            payload["tools"] = [tool.to_openai(strict=self.strict_tool_schemas) for tool in tools]
            payload["tool_choice"] = "auto"
        return payload

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ModelResponse:
        payload = self._payload(messages, tools, model)
        LOGGER.info("llm.request", model=payload["model"], stream=False, **_describe_latest(messages))
        LOGGER.debug("llm.request_messages", messages=payload["messages"])

        with llm_span("llm.complete", model=payload["model"], messages=len(messages)):
            raw = await self._with_rate_limit_retry(lambda: acompletion(**payload), abort_signal)
        response = _extract_response_payload(raw)

        if response.tool_calls:
            LOGGER.info(
                "llm.response_tool_calls",
                functions=[call.name for call in response.tool_calls],
            )
        else:
            LOGGER.info("llm.response", chars=len(response.text))
        if response.usage is None:
            LOGGER.info("llm.usage_missing", model=payload["model"])
        return response

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
        *,
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[Any]:
        payload = self._payload(messages, tools, model)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        LOGGER.info("llm.request", model=payload["model"], stream=True, **_describe_latest(messages))

        with llm_span("llm.stream_open", model=payload["model"], messages=len(messages)):
            return await self._with_rate_limit_retry(lambda: acompletion(**payload), abort_signal)

    async def complete_structured(
        self,
        messages: Sequence[ChatMessage],
        schema: dict[str, Any],
        *,
        schema_name: str = "response",
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ModelResponse:
        """Request a JSON answer constrained by ``schema``; tools are never offered."""
        payload = self._payload(messages, (), model)
        payload["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": schema_name, "schema": strictify_schema(schema), "strict": True},
        }
        LOGGER.info("llm.request", model=payload["model"], stream=False, schema=schema_name)

        with llm_span("llm.complete_structured", model=payload["model"], messages=len(messages)):
            raw = await self._with_rate_limit_retry(lambda: acompletion(**payload), abort_signal)
        response = _extract_response_payload(raw)
        LOGGER.info("llm.response", chars=len(response.text), schema=schema_name)
        return response

    async def _with_rate_limit_retry(
        self,
        send: Callable[[], Awaitable[T]],
        abort_signal: AbortSignal | None,
    ) -> T:
        attempt = 0
        while True:
            if abort_signal is not None:
                abort_signal.raise_if_aborted()
            try:
                return await guarded(send(), abort_signal)
            except litellm.RateLimitError as exc:
                cap = self.max_rate_limit_retries
                if cap is not None and attempt >= cap:
                    LOGGER.warning("llm.rate_limited_giving_up", attempts=attempt + 1, error=str(exc))
                    raise
                attempt += 1
                LOGGER.warning(
                    "llm.rate_limited_retrying",
                    retry_delay_s=self.rate_limit_retry_delay_seconds,
                    provider_retry_after_s=retry_after_seconds(exc),
                    attempt=attempt,
                    error=str(exc),
                )
                await guarded(asyncio.sleep(self.rate_limit_retry_delay_seconds), abort_signal)
