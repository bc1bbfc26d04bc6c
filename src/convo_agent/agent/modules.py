"""Conversation modules bundle instructions, tools and moderators under one name."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from convo_agent.agent.types import MessageModerator
from convo_agent.tools.base import Tool


class ConversationModule(Protocol):
    """A named capability plugged into a runner when it is built."""

    name: str

    def system_messages(self) -> Sequence[str] | str: ...

    def tools(self) -> Sequence[Tool]: ...

    def moderators(self) -> Sequence[MessageModerator]: ...


@dataclass(slots=True)
class StaticModule:
    """Module whose parts are fixed when it is created."""

    name: str
    instructions: Sequence[str] | str = ()
    module_tools: Sequence[Tool] = field(default_factory=list)
    module_moderators: Sequence[MessageModerator] = field(default_factory=list)

    def system_messages(self) -> Sequence[str] | str:
        return self.instructions

    def tools(self) -> Sequence[Tool]:
        return self.module_tools

    def moderators(self) -> Sequence[MessageModerator]:
        return self.module_moderators


def module_system_message(module: ConversationModule) -> str | None:
    """Join a module's instructions into one system message, or None if it has none."""
    instructions = module.system_messages()
    if isinstance(instructions, str):
        instructions = [instructions]
    instructions = [text for text in instructions if text]
    if not instructions:
        return None
    return f"The following are instructions from the {module.name} module:\n" + ". ".join(instructions)
