"""Tool registry and name resolution helpers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from convo_agent.tools.base import Tool, ToolSpec


@dataclass(slots=True)
class ToolRegistry:
    """Registry for available tools.

    Tools may be registered under a dotted, namespaced name and still be
    invoked by their short name.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: Tool) -> None:
        name = tool.spec.name
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> Tool | None:
        """Exact match first, then match on the name with namespaces stripped."""
        tool = self._tools.get(name)
        if tool is not None:
            return tool
        short_name = name.rsplit(".", 1)[-1]
        for tool in self._tools.values():
            if tool.spec.short_name == short_name:
                return tool
        return None

    def list_specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def instructions_message(
        self,
        group: str | None = None,
        specs: Sequence[ToolSpec] | None = None,
    ) -> str | None:
        """Render tool instructions as one system message, or None if there are none.

        ``specs`` narrows the message to a subset of tools, e.g. one module's.
        """
        paragraphs = [
            f"{spec.name}: {'. '.join(spec.instructions)}."
            for spec in (self.list_specs() if specs is None else specs)
            if spec.instructions
        ]
        if not paragraphs:
            return None
        scope = f" in the {group} module" if group else ""
        return f"The following are instructions from functions{scope}: " + " ".join(paragraphs)
