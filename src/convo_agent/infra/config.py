"""Configuration helpers for the conversation agent."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Literal, TypeVar

import orjson
import pydantic.dataclasses as pydantic_dataclasses
from pydantic import TypeAdapter

SETTINGS_ENV_VAR = "CONVO_AGENT_SETTINGS"

_SettingsT = TypeVar("_SettingsT")


@pydantic_dataclasses.dataclass(frozen=True)
class LoggingSettings:
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = False


@pydantic_dataclasses.dataclass(frozen=True)
class LlmSettings:
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 30
    temperature: float = 0
    rate_limit_retry_delay_seconds: float = 15.0
    max_rate_limit_retries: int | None = None
    strict_tool_schemas: bool = False


@pydantic_dataclasses.dataclass(frozen=True)
class ConversationSettings:
    max_tool_calls: int = 50
    max_history_messages: int | None = None
    max_history_age_seconds: float | None = None
    enforce_limits: bool = False
    token_limit: int = 50_000


@pydantic_dataclasses.dataclass(frozen=True)
class AppSettings:
    title: str = "Conversation Agent"
    description: str = ""
    version: str = "0.1.0"
    api_prefix: str = "/v1"
    cors_origins: list[str] = dataclasses.field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    service_name: str = "convo-agent"
    metadata: dict[str, str] = dataclasses.field(default_factory=dict)
    logging: LoggingSettings = LoggingSettings()
    llm: LlmSettings = LlmSettings()
    conversation: ConversationSettings = ConversationSettings()


def load_app_settings(settings_type: type[_SettingsT], path: str | Path | None) -> _SettingsT:
    """Load settings from a JSON file; ``path`` falls back to ``$CONVO_AGENT_SETTINGS``.

    Without either, the defaults of ``settings_type`` are returned.
    """
    resolved = path or os.environ.get(SETTINGS_ENV_VAR)
    adapter = TypeAdapter(settings_type)
    if not resolved:
        return adapter.validate_python({})
    return adapter.validate_python(orjson.loads(Path(resolved).read_bytes()))
