from __future__ import annotations

from pathlib import Path

import orjson
import pytest
import structlog
from pydantic import ValidationError

from convo_agent.infra.config import SETTINGS_ENV_VAR, AppSettings, load_app_settings
from convo_agent.infra.logging import configure_logging


def test_defaults_without_a_settings_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(SETTINGS_ENV_VAR, raising=False)

    settings = load_app_settings(AppSettings, None)

    assert settings.api_prefix == "/v1"
    assert settings.llm.model == "gpt-4o-mini"
    assert settings.llm.max_rate_limit_retries is None
    assert settings.conversation.max_tool_calls == 50
    assert settings.conversation.enforce_limits is False
    assert settings.conversation.token_limit == 50_000


def test_settings_file_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "settings.json"
    path.write_bytes(
        orjson.dumps(
            {
                "port": 9000,
                "logging": {"level": "DEBUG", "json_logs": True},
                "llm": {"model": "openai/gpt-4.1", "rate_limit_retry_delay_seconds": 1.5},
                "conversation": {"max_tool_calls": 5, "max_history_messages": 40, "enforce_limits": True},
            }
        )
    )
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(path))

    settings = load_app_settings(AppSettings, None)

    assert settings.port == 9000
    assert settings.llm.model == "openai/gpt-4.1"
    assert settings.llm.rate_limit_retry_delay_seconds == 1.5
    assert settings.conversation.max_history_messages == 40
    assert settings.conversation.enforce_limits is True
    configure_logging(settings.logging)
    structlog.reset_defaults()


def test_invalid_settings_are_rejected(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_bytes(orjson.dumps({"logging": {"level": "LOUD"}}))

    with pytest.raises(ValidationError):
        load_app_settings(AppSettings, path)
