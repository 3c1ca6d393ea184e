"""
Guard helpers - normalize and merge ACL row filters into predicate trees.

Guards are filters that the client cannot override or bypass. They are
added by the server based on ACL rules and merged into the where-clause
of every read, connect, update and delete.
"""

from __future__ import annotations

from typing import Any, Optional


LOGICAL_KEYS = ("AND", "OR")


def clean_filter(value: Any) -> Any:
    """
    Recursively clean a filter tree.

    - drops None entries from lists
    - drops empty AND/OR lists
    - unwraps an AND/OR holding a single condition
    - returns None when nothing is left

    Explicit null comparisons ({"deletedAt": None}) are kept.
    """
    if not isinstance(value, (dict, list)):
        return value

    if isinstance(value, list):
        cleaned_list = [clean_filter(item) for item in value]
        cleaned_list = [item for item in cleaned_list if item is not None]
        return cleaned_list or None

    cleaned: dict[str, Any] = {}
    for key, item in value.items():
        if item is None:
            cleaned[key] = None
            continue

        if isinstance(item, (dict, list)):
            cleaned_item = clean_filter(item)
            if cleaned_item is None:
                continue
            if key in LOGICAL_KEYS and isinstance(cleaned_item, list) and not cleaned_item:
                continue
            cleaned[key] = cleaned_item
        else:
            cleaned[key] = item

    return _unwrap_single(cleaned) if cleaned else None


def simplify_nested_filter(value: Any, parent_entity: str) -> Any:
    """
    Drop conditions that reference the parent entity.

    When a list relation is fetched from inside its parent, a target filter
    like {"Post": {...}, "published": True} is already satisfied by the
    parent context; only {"published": True} is kept.
    """
    if not isinstance(value, (dict, list)):
        return value

    if isinstance(value, list):
        simplified_list = [simplify_nested_filter(item, parent_entity) for item in value]
        simplified_list = [item for item in simplified_list if item is not None]
        return simplified_list or None

    simplified: dict[str, Any] = {}
    for key, item in value.items():
        if key == parent_entity:
            continue
        if key in LOGICAL_KEYS:
            nested = simplify_nested_filter(item, parent_entity)
            if isinstance(nested, list) and nested:
                simplified[key] = nested
        else:
            simplified[key] = item

    return _unwrap_single(simplified)


def merge_guard(where: Optional[dict[str, Any]], guard: Optional[dict[str, Any]]) -> dict[str, Any]:
    """
    AND a guard filter into a where-clause.

    Keys are merged flat. When both sides constrain the same key with
    different values, both conditions are kept under AND so the guard can
    never be overridden by the caller.
    """
    result = dict(where or {})
    if not guard:
        return result

    conflicts = []
    for key, value in guard.items():
        if key in result and result[key] != value:
            conflicts.append({key: value})
        else:
            result[key] = value

    if conflicts:
        result["AND"] = _as_list(result.get("AND")) + conflicts
    return result


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def _unwrap_single(tree: dict[str, Any]) -> Any:
    if len(tree) == 1:
        key = next(iter(tree))
        if key in LOGICAL_KEYS and isinstance(tree[key], list) and len(tree[key]) == 1:
            return tree[key][0]
    return tree
