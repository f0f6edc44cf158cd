"""Template resolution for node configuration.

Replaces ``{{source.path}}`` tokens with run-time values:

- ``{{task.field.sub}}`` resolves against the triggering entity snapshot
- ``{{nodes.<nodeId>.field}}`` resolves against a previous node's output

A string that is exactly one token keeps the resolved value's native type
(number, bool, dict, list). Tokens embedded in longer strings are replaced by
their string form. Unresolvable tokens are left verbatim, braces included.
"""

import copy
import re
from typing import Any

from dagflow.core.utils import stringify_value

# A whole-string token may not contain braces, so "{{a}} and {{b}}" is
# interpolated rather than treated as the single token "a}} and {{b".
_SINGLE_TOKEN = re.compile(r"\{\{([^{}]+)\}\}")
_TOKEN = re.compile(r"\{\{(.+?)\}\}")


class _Unresolved:
    def __repr__(self) -> str:
        return "<unresolved>"


UNRESOLVED = _Unresolved()


def resolve_path(source: Any, path: list[str]) -> Any:
    """Walk ``path`` through nested dicts (and lists, by integer index)."""
    current = source
    for key in path:
        if isinstance(current, dict):
            if key not in current:
                return UNRESOLVED
            current = current[key]
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return UNRESOLVED
            current = current[index]
        else:
            return UNRESOLVED
    return current


def resolve_token(
    token: str,
    node_outputs: dict[str, Any],
    entity: dict[str, Any] | None,
) -> Any:
    """Resolve one token body (without braces), or return UNRESOLVED."""
    token = token.strip()
    if token.startswith("task."):
        if entity is None:
            return UNRESOLVED
        return resolve_path(entity, token[len("task.") :].split("."))
    if token.startswith("nodes."):
        node_id, *path = token[len("nodes.") :].split(".")
        if node_id not in node_outputs or node_outputs[node_id] is None:
            return UNRESOLVED
        return resolve_path(node_outputs[node_id], path)
    return UNRESOLVED


def resolve_templates(
    value: Any,
    node_outputs: dict[str, Any],
    entity: dict[str, Any] | None,
) -> Any:
    """Return a copy of ``value`` with every template token resolved.

    Args:
        value: Any JSON-like value (dict, list, str or primitive)
        node_outputs: Map of node id -> recorded output for the current run
        entity: Snapshot of the triggering entity, or None

    Returns:
        A new structure; the input is never mutated.
    """
    if isinstance(value, str):
        return _resolve_string(value, node_outputs, entity)
    if isinstance(value, list):
        return [resolve_templates(item, node_outputs, entity) for item in value]
    if isinstance(value, dict):
        return {key: resolve_templates(item, node_outputs, entity) for key, item in value.items()}
    return value


def _resolve_string(text: str, node_outputs: dict[str, Any], entity: dict[str, Any] | None) -> Any:
    single = _SINGLE_TOKEN.fullmatch(text)
    if single:
        resolved = resolve_token(single.group(1), node_outputs, entity)
        return text if resolved is UNRESOLVED else copy.deepcopy(resolved)

    def substitute(match: re.Match) -> str:
        resolved = resolve_token(match.group(1), node_outputs, entity)
        return match.group(0) if resolved is UNRESOLVED else stringify_value(resolved)

    return _TOKEN.sub(substitute, text)
