"""Trace helpers for provider requests and tool execution."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.trace import Span


@contextmanager
def _span(name: str, attributes: dict[str, object]) -> Iterator[Span]:
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


@contextmanager
def tool_span(name: str, **attributes: object) -> Iterator[None]:
    with _span(name, attributes):
        yield


@contextmanager
def llm_span(name: str, **attributes: object) -> Iterator[Span]:
    with _span(name, attributes) as span:
        yield span
