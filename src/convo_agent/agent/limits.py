"""Keep a conversation under a token limit by having the model summarize it."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from litellm import token_counter

from convo_agent.agent.history import MessageHistory
from convo_agent.agent.types import ChatMessage, MessageModerator
from convo_agent.tools.base import FunctionTool, Tool, ToolSpec

LOGGER = structlog.get_logger(__name__)

DEFAULT_TOKEN_LIMIT = 50_000
SUMMARIZE_TOOL_NAME = "summarizeConversationHistory"
SUMMARY_REQUEST = f"First, call the {SUMMARIZE_TOOL_NAME} function"
SUMMARY_PREFIX = "Previous conversation summary: "

TokenCounter = Callable[[str, str], int]


def count_tokens(model: str, text: str) -> int:
    return token_counter(model=model, text=text)


def tokens_in_conversation(
    history: MessageHistory,
    messages: Sequence[ChatMessage],
    *,
    model: str,
    counter: TokenCounter = count_tokens,
) -> int:
    texts = [history.to_string(), *(message.text() for message in messages)]
    return counter(model, ". ".join(text for text in texts if text))


def summarize_history(history: MessageHistory, summary: str) -> None:
    """Replace everything but the system messages with ``summary``."""
    history.clear(keep_system=True)
    history.push([ChatMessage(role="assistant", content=f"{SUMMARY_PREFIX}{summary}")])
    LOGGER.info("history.summarized", messages=len(history), summary_chars=len(summary))


@dataclass(slots=True)
class HistoryLimitModule:
    """Module giving the model a tool to compact the history it is reading."""

    history: MessageHistory
    name: str = "Conversation"

    def system_messages(self) -> list[str]:
        return []

    def tools(self) -> list[Tool]:
        spec = ToolSpec(
            name=SUMMARIZE_TOOL_NAME,
            description="Clear the conversation history and summarize what was in it",
            input_schema={
                "type": "object",
                "properties": {
                    "summary": {
                        "type": "string",
                        "description": "A 1-3 sentence summary of the current chat history",
                    }
                },
                "required": ["summary"],
            },
        )
        return [FunctionTool(spec=spec, func=self._summarize)]

    def moderators(self) -> list[MessageModerator]:
        return []

    def _summarize(self, arguments: Any) -> None:
        summary = arguments.get("summary", "") if isinstance(arguments, dict) else str(arguments)
        summarize_history(self.history, str(summary))
