"""JSON-schema helpers for provider strict mode."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

_COMBINATORS = ("oneOf", "anyOf", "allOf")
_DEFINITION_KEYS = ("$defs", "definitions")


def strictify_schema(schema: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``schema`` usable with strict structured outputs.

    Every object gets ``additionalProperties: false`` and a ``required`` list
    naming all of its properties; missing ``type`` keys are inferred from
    object or array keywords.
    """
    root = copy.deepcopy(dict(schema or {}))
    _visit(root)
    return root


def _visit(node: Any) -> None:
    if not isinstance(node, dict):
        return

    if "type" not in node:
        if "properties" in node or "additionalProperties" in node or "patternProperties" in node:
            node["type"] = "object"
        elif "items" in node or "prefixItems" in node:
            node["type"] = "array"

    node_type = node.get("type")
    types = node_type if isinstance(node_type, list) else [node_type] if node_type else []

    if "object" in types:
        node["additionalProperties"] = False
        properties = node.get("properties")
        if isinstance(properties, dict):
            required = list(node.get("required") or [])
            node["required"] = list(dict.fromkeys([*required, *properties]))
            for child in properties.values():
                _visit(child)
        pattern_properties = node.get("patternProperties")
        if isinstance(pattern_properties, dict):
            for child in pattern_properties.values():
                _visit(child)
        for key in _DEFINITION_KEYS:
            definitions = node.get(key)
            if isinstance(definitions, dict):
                for child in definitions.values():
                    _visit(child)

    if "array" in types:
        items = node.get("items")
        if isinstance(items, list):
            for child in items:
                _visit(child)
        else:
            _visit(items)
        for child in node.get("prefixItems") or []:
            _visit(child)

    for key in _COMBINATORS:
        for child in node.get(key) or []:
            _visit(child)
