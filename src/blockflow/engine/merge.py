"""Data helpers shared by the orchestrator, adapters and blocks.

deep_merge is how multi-parent node inputs are combined:
    - dict + dict: merged key by key, recursively
    - list + list: concatenated (left items first)
    - anything else: right value overwrites

Neither argument is mutated.
"""

from __future__ import annotations

import copy
from typing import Any

# Sentinel distinguishing "path missing" from "value is None"
MISSING: Any = object()


def deep_merge(left: Any, right: Any) -> Any:
    """Merge ``right`` into ``left`` and return a new structure.

    Example:
        >>> deep_merge({"a": [1], "meta": {"x": 1}}, {"a": [2], "meta": {"y": 2}})
        {'a': [1, 2], 'meta': {'x': 1, 'y': 2}}
    """
    if isinstance(left, dict) and isinstance(right, dict):
        merged = {key: copy.deepcopy(value) for key, value in left.items()}
        for key, value in right.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    if isinstance(left, list) and isinstance(right, list):
        return copy.deepcopy(left) + copy.deepcopy(right)

    return copy.deepcopy(right)


def merge_all(values: list[Any]) -> Any:
    """Fold deep_merge over ``values`` in order. Empty list -> None."""
    if not values:
        return None
    merged = copy.deepcopy(values[0])
    for value in values[1:]:
        merged = deep_merge(merged, value)
    return merged


def get_path(data: Any, path: str | list[str], default: Any = None) -> Any:
    """Resolve a dotted path (``user.address.city``, ``rows.0.id``) into ``data``.

    Dict keys are looked up by name and list elements by integer index.
    ``length`` on a list or string yields its length when no such key exists.
    Any missing segment returns ``default``.
    """
    parts = path.split(".") if isinstance(path, str) else list(path)
    current = data
    for part in parts:
        if part == "":
            return default
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            if part == "length":
                current = len(current)
            else:
                try:
                    current = current[int(part)]
                except (ValueError, IndexError):
                    return default
        elif isinstance(current, str) and part == "length":
            current = len(current)
        else:
            return default
    return current
