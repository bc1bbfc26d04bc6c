from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pydantic import BaseModel

from convo_agent.agent.errors import StructuredOutputError
from convo_agent.agent.prompts import (
    generate_code,
    generate_concise_answer,
    generate_list,
    generate_object,
    parse_code_from_markdown,
    parse_json_from_markdown,
    update_code,
)
from convo_agent.agent.runner import ConversationRunner
from convo_agent.agent.types import ChatMessage, ModelResponse, ToolInvocationRecord
from convo_agent.agent.usage import TokenUsage, UsageData

from fakes import FakeClient


def test_parse_code_from_markdown() -> None:
    text = "Here you go:\n```python\nx = 1\n```\nand\n```\ny = 2\n```\nDone."

    assert parse_code_from_markdown(text) == "x = 1\n\ny = 2"
    assert parse_code_from_markdown("plain = True") == "plain = True"


def test_generate_code_adds_instructions_and_strips_fences() -> None:
    client = FakeClient(responses=[ModelResponse(text="```python\ndef f() -> int:\n    return 1\n```")])
    runner = ConversationRunner(client=client)

    code = asyncio.run(generate_code(runner, ["write f"]))

    assert code == "def f() -> int:\n    return 1"
    roles = [message.role for message in client.seen_messages[0]]
    assert roles == ["system", "system", "system", "system", "user"]


def test_update_code_wraps_the_request() -> None:
    client = FakeClient(responses=[ModelResponse(text="y = 2")])
    runner = ConversationRunner(client=client)

    code = asyncio.run(update_code(runner, "y = 1", "Set y to 2", include_system_messages=False))

    assert code == "y = 2"
    assert client.seen_messages[0][-1].content == "Update this code:\n\ny = 1\n\nSet y to 2"


def test_generate_list_splits_on_semicolons() -> None:
    client = FakeClient(responses=[ModelResponse(text="apples; pears ;plums")])
    runner = ConversationRunner(client=client)

    assert asyncio.run(generate_list(runner, ["fruit"])) == ["apples", "pears", "plums"]


def test_generate_concise_answer() -> None:
    client = FakeClient(responses=[ModelResponse(text="  42 \n")])
    runner = ConversationRunner(client=client)

    answer = asyncio.run(generate_concise_answer(runner, "The answer is 42.", "What is the answer?"))

    assert answer == "42"
    assert client.seen_messages[0][0].content == "Context: The answer is 42.\n\nRequest: What is the answer?"


class Recipe(BaseModel):
    title: str
    minutes: int


def test_parse_json_from_markdown() -> None:
    assert parse_json_from_markdown('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert parse_json_from_markdown('```\n[1]\n```  ') == "[1]"
    assert parse_json_from_markdown(' {"a": 1} ') == '{"a": 1}'


def test_generate_object_validates_a_model_and_records_history() -> None:
    usage = TokenUsage(input_tokens=12, output_tokens=4, total_tokens=16)
    client = FakeClient(
        responses=[ModelResponse(text='```json\n{"title": "Soup", "minutes": 20}\n```', usage=usage)]
    )
    runner = ConversationRunner(client=client)
    runner.history.push([ChatMessage.system("You write recipes")])
    delivered: list[tuple[UsageData, list[ToolInvocationRecord]]] = []

    async def on_usage(data: UsageData, records: list[ToolInvocationRecord]) -> None:
        delivered.append((data, records))

    result = asyncio.run(generate_object(runner, ["a quick soup"], Recipe, on_usage=on_usage))

    assert result.object == Recipe(title="Soup", minutes=20)
    assert result.usage.total_usage == usage
    assert delivered == [(result.usage, [])]
    name, schema = client.seen_schemas[0]
    assert name == "Recipe"
    assert set(schema["properties"]) == {"title", "minutes"}
    assert client.seen_tools[0] == []
    assert [message.content for message in client.seen_messages[0]] == ["You write recipes", "a quick soup"]
    assert [(message.role, message.content) for message in runner.history.get_messages()] == [
        ("system", "You write recipes"),
        ("user", "a quick soup"),
        ("assistant", '{"title":"Soup","minutes":20}'),
    ]


def test_generate_object_with_a_json_schema_can_skip_history() -> None:
    schema: dict[str, Any] = {"type": "object", "properties": {"tags": {"type": "array", "items": {"type": "string"}}}}
    client = FakeClient(responses=[ModelResponse(text='{"tags": ["a", "b"]}')])
    runner = ConversationRunner(client=client)

    result = asyncio.run(
        generate_object(runner, ["tag it"], schema, schema_name="tags", record_in_history=False)
    )

    assert result.object == {"tags": ["a", "b"]}
    assert client.seen_schemas[0] == ("tags", schema)
    assert [message.role for message in runner.history.get_messages()] == ["user"]


def test_generate_object_rejects_invalid_json() -> None:
    client = FakeClient(responses=[ModelResponse(text='{"title": "Soup"}')])
    runner = ConversationRunner(client=client)

    with pytest.raises(StructuredOutputError, match="Recipe"):
        asyncio.run(generate_object(runner, ["soup"], Recipe))

    assert runner.history.get_messages() == []
