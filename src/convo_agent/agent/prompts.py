"""Prompt-shaped helpers built on top of :class:`ConversationRunner`."""

from __future__ import annotations

import inspect
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from convo_agent.agent.abort import AbortSignal, guarded
from convo_agent.agent.errors import StructuredOutputError
from convo_agent.agent.runner import ConversationRunner, MessageInput, UsageCallback, normalize_messages
from convo_agent.agent.types import ChatMessage
from convo_agent.agent.usage import UsageAccumulator, UsageData

LOGGER = structlog.get_logger(__name__)

_CODE_FENCE = re.compile(r"```([\s\S]+?)```")
_JSON_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_JSON_FENCE_END = re.compile(r"\s*```$")

CODE_SYSTEM_MESSAGES = (
    "Return only the code and exclude example usage, markdown, explanations, comments and notes.",
    "Write code in python.",
    "Annotate the types of all function parameters.",
    "Do not omit function implementations.",
)

LIST_SYSTEM_MESSAGES = (
    "Return only the list and exclude example usage, markdown and all explanations, comments and notes.",
    "Separate each item in the list by a ;",
)


def parse_code_from_markdown(text: str) -> str:
    """Keep only the contents of fenced code blocks, separated by blank lines."""
    if not _CODE_FENCE.search(text):
        return text

    lines: list[str] = []
    in_block = False
    for line in text.split("\n"):
        if line.startswith("```"):
            in_block = not in_block
            if not in_block:
                lines.append("")
            continue
        if in_block:
            lines.append(line)

    if lines:
        lines.pop()
    return "\n".join(lines)


def update_code_description(code: str, description: str) -> str:
    return f"Update this code:\n\n{code}\n\n{description}"


async def generate_code(
    runner: ConversationRunner,
    messages: Sequence[MessageInput],
    *,
    model: str | None = None,
    include_system_messages: bool = True,
) -> str:
    if include_system_messages:
        runner.history.push([ChatMessage.system(text) for text in CODE_SYSTEM_MESSAGES])
    result = await runner.generate_response(messages, model=model)
    return parse_code_from_markdown(result.message)


async def update_code(
    runner: ConversationRunner,
    code: str,
    description: str,
    *,
    model: str | None = None,
    include_system_messages: bool = True,
) -> str:
    return await generate_code(
        runner,
        [update_code_description(code, description)],
        model=model,
        include_system_messages=include_system_messages,
    )


async def generate_list(
    runner: ConversationRunner,
    messages: Sequence[MessageInput],
    *,
    model: str | None = None,
    include_system_messages: bool = True,
) -> list[str]:
    if include_system_messages:
        runner.history.push([ChatMessage.system(text) for text in LIST_SYSTEM_MESSAGES])
    result = await runner.generate_response(messages, model=model)
    return [item.strip() for item in result.message.split(";")]


async def generate_concise_answer(
    runner: ConversationRunner,
    context: str,
    request: str,
    *,
    model: str | None = None,
) -> str:
    """Answer ``request`` from ``context`` without conversational filler."""
    messages = [
        ChatMessage.system(f"Context: {context}\n\nRequest: {request}"),
        ChatMessage.system(
            "Provide only the requested information without any additional "
            "explanation or conversational elements."
        ),
    ]
    result = await runner.generate_response(messages, model=model)
    return result.message.strip()


def parse_json_from_markdown(text: str) -> str:
    """Strip a surrounding ```json fence that some models add despite structured output."""
    text = text.strip()
    text = _JSON_FENCE_START.sub("", text, count=1)
    return _JSON_FENCE_END.sub("", text, count=1).strip()


@dataclass(slots=True)
class ObjectResult:
    object: Any
    usage: UsageData


async def generate_object(
    runner: ConversationRunner,
    messages: Sequence[MessageInput],
    schema: type[BaseModel] | dict[str, Any],
    *,
    schema_name: str | None = None,
    model: str | None = None,
    record_in_history: bool = True,
    abort_signal: AbortSignal | None = None,
    on_usage: UsageCallback | None = None,
) -> ObjectResult:
    """Ask for one JSON answer matching ``schema``, without offering any tools.

    ``schema`` is either a pydantic model, whose instance is returned, or a
    JSON schema, in which case the parsed JSON value is returned.
    """
    resolved_model = model or runner.model
    pending = normalize_messages(messages)
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        json_schema = schema.model_json_schema()
        adapter: TypeAdapter[Any] = TypeAdapter(schema)
        name = schema_name or schema.__name__
    else:
        json_schema = dict(schema)
        adapter = TypeAdapter(Any)
        name = schema_name or "response"

    response = await guarded(
        runner.client.complete_structured(
            [*runner.history.get_messages(), *pending],
            json_schema,
            schema_name=name,
            model=resolved_model,
            abort_signal=abort_signal,
        ),
        abort_signal,
    )
    usage = UsageAccumulator(resolved_model)
    if response.usage is not None:
        usage.add_usage(response.usage)

    try:
        value = adapter.validate_json(parse_json_from_markdown(response.text))
    except ValidationError as exc:
        LOGGER.warning("prompts.object_invalid", schema=name, error=str(exc))
        raise StructuredOutputError(f"Response did not match the {name} schema") from exc

    runner.history.push([message for message in pending if message.role == "user"])
    if record_in_history and isinstance(value, (dict, list, BaseModel)):
        content = adapter.dump_json(value).decode()
        runner.history.push([ChatMessage(role="assistant", content=content)])

    if on_usage is not None:
        delivered = on_usage(usage.usage_data, [])
        if inspect.isawaitable(delivered):
            await delivered
    return ObjectResult(object=value, usage=usage.usage_data)
