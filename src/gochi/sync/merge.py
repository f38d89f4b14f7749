"""Nested-dict helpers for game state patches.

Paths are dot-separated keys ("userData.points"). Dicts merge key by key;
lists and scalars are replaced whole. None of these functions mutate their
inputs.
"""

from __future__ import annotations

import copy
from typing import Any

_MISSING = object()


def split_path(path: str) -> list[str]:
    return [part for part in path.split(".") if part] if path else []


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Return `target` with `source` merged over it."""
    result = copy.deepcopy(target)
    for key, value in source.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def build_nested_patch(path: str, value: Any) -> dict[str, Any]:
    """Wrap `value` under `path`. An empty path requires a dict value."""
    parts = split_path(path)
    if not parts:
        if not isinstance(value, dict):
            msg = "A root-level patch must be a dict"
            raise TypeError(msg)
        return copy.deepcopy(value)
    patch: Any = copy.deepcopy(value)
    for part in reversed(parts):
        patch = {part: patch}
    return patch


def get_nested(state: dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = state
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_nested(state: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    return deep_merge(state, build_nested_patch(path, value)) if split_path(path) else copy.deepcopy(value)


def delete_nested(state: dict[str, Any], path: str) -> dict[str, Any]:
    """Return `state` without the key at `path`. Missing paths are a no-op."""
    parts = split_path(path)
    result = copy.deepcopy(state)
    if not parts:
        return result
    node: Any = result
    for part in parts[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(part), dict):
            return result
        node = node[part]
    node.pop(parts[-1], None)
    return result


def leaf_paths(patch: dict[str, Any], prefix: str = "") -> set[str]:
    """Dotted paths of every non-dict value (and empty dict) in `patch`."""
    paths: set[str] = set()
    for key, value in patch.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            paths |= leaf_paths(value, path)
        else:
            paths.add(path)
    return paths


def changed_paths(base: dict[str, Any], current: dict[str, Any]) -> set[str]:
    """Leaf paths whose value differs between `base` and `current`, including removals."""
    paths: set[str] = set()
    for path in leaf_paths(base) | leaf_paths(current):
        if get_nested(base, path, _MISSING) != get_nested(current, path, _MISSING):
            paths.add(path)
    return paths


def paths_overlap(a: str, b: str) -> bool:
    """True if one path equals or contains the other."""
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")
