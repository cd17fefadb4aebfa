"""Agent-context merging and tolerant lookups into loosely-typed caller maps."""

from __future__ import annotations

import copy
from typing import Any, Iterable, List, Mapping, Optional, Sequence

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def merge_agent_context(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any] | None,
) -> Optional[dict[str, Any]]:
    """Merge per-call ``incoming`` context over the session's ``existing`` context.

    Top-level keys are replaced by ``incoming``; the ``automation`` sub-map is
    merged key by key so that hints from earlier turns survive.  Neither input
    is mutated.  Returns ``None`` when both inputs are empty.
    """

    if not existing and not incoming:
        return None
    if not existing:
        return copy.deepcopy(dict(incoming or {}))
    if not incoming:
        return copy.deepcopy(dict(existing))

    merged = copy.deepcopy(dict(existing))
    merged.update(copy.deepcopy(dict(incoming)))

    previous = existing.get("automation")
    current = incoming.get("automation")
    if isinstance(previous, Mapping) and isinstance(current, Mapping):
        automation = copy.deepcopy(dict(previous))
        automation.update(copy.deepcopy(dict(current)))
        merged["automation"] = automation
    return merged


def as_mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


def get_nested(source: Any, path: str | Sequence[str]) -> Any:
    """Walk ``source`` along a dotted ``path``; missing segments yield ``None``."""
    segments = path.split(".") if isinstance(path, str) else list(path)
    current = source
    for segment in segments:
        mapping = as_mapping(current)
        if mapping is None or segment not in mapping:
            return None
        current = mapping[segment]
    return current


def find_string(source: Any, paths: Iterable[str]) -> Optional[str]:
    """Return the first non-blank string found at any of ``paths``."""
    for path in paths:
        value = get_nested(source, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def to_boolean(value: Any) -> Optional[bool]:
    """Interpret flags supplied as booleans, numbers or strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
    return None


def find_boolean(source: Any, paths: Iterable[str]) -> Optional[bool]:
    for path in paths:
        flag = to_boolean(get_nested(source, path))
        if flag is not None:
            return flag
    return None


def ensure_string_list(value: Any) -> Optional[List[str]]:
    """Normalise a string or list of strings into a de-blanked list."""
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [item.strip() for item in value if isinstance(item, str)]
    else:
        return None
    cleaned = [item for item in items if item]
    return cleaned or None


__all__ = [
    "as_mapping",
    "ensure_string_list",
    "find_boolean",
    "find_string",
    "get_nested",
    "merge_agent_context",
    "to_boolean",
]
