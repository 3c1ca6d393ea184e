"""
Relation include resolver - nested fetch plans under access control.

Include specs:

    "ALL"                                   every first-level relation
    "author,comments.author"                dot paths, grouped by first segment
    {"query": "comments", "rule": {"comments": {"published": True}}}

Each included relation becomes True (default shape) or a dict with
optional "where", "omit" and "include" keys. Relations the user cannot
read are dropped without error.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from ..iam.enforcer import AccessEnforcer
from ..iam.guard import clean_filter, merge_guard, simplify_nested_filter
from .defs import RelationDef
from .schema import BaseSchema

logger = logging.getLogger(__name__)

ALL = "ALL"

IncludeEntry = Union[bool, dict[str, Any]]
IncludeSpec = Union[str, dict[str, Any], None]


def split_include(include: IncludeSpec) -> tuple[Optional[str], dict[str, Any]]:
    """Normalize an include spec to (query string, per-relation rules)."""
    if include is None:
        return None, {}
    if isinstance(include, dict):
        return include.get("query"), dict(include.get("rule") or {})
    return include, {}


def group_paths(query: str) -> dict[str, list[str]]:
    """
    Group dot paths by first segment.

    Example:
        group_paths("author,comments.author,comments.post")
        # {"author": [], "comments": ["author", "post"]}
    """
    groups: dict[str, list[str]] = {}
    for raw in query.split(","):
        path = raw.strip()
        if not path:
            continue
        head, _, rest = path.partition(".")
        suffixes = groups.setdefault(head.strip(), [])
        if rest and rest not in suffixes:
            suffixes.append(rest)
    return groups


class IncludeResolver:
    """
    Builds include trees for one schema.

    Usage:
        resolver = IncludeResolver(schema, enforcer)
        include = resolver.resolve("Post", "author,comments", user)
    """

    def __init__(self, schema: BaseSchema, enforcer: AccessEnforcer, max_depth: int = 10):
        self.schema = schema
        self.enforcer = enforcer
        self.max_depth = max_depth

    def available_relations(self, entity: str, include: IncludeSpec) -> list[str]:
        """First-level relation names an include spec makes available."""
        query, _ = split_include(include)
        if not query:
            return []
        if query.strip() == ALL:
            return list(self.schema.build_relationships(entity).keys())
        relations = self.schema.build_relationships(entity)
        return [name for name in group_paths(query) if name in relations]

    def resolve(self, entity: str, include: IncludeSpec, user: Any) -> dict[str, IncludeEntry]:
        """
        Resolve an include spec for entity.

        Args:
            entity: Root entity name
            include: "ALL", a comma list with dot paths, or {"query", "rule"}
            user: Principal the plan is built for

        Returns:
            Include tree ({} when nothing is included)
        """
        query, rules = split_include(include)
        if not query or not query.strip():
            return {}

        if query.strip() == ALL:
            result = self._resolve_all(entity, user)
        else:
            result = self._resolve_paths(entity, group_paths(query), user, depth=1)

        for name, where in rules.items():
            if name in result and where:
                result[name] = self._with_where(result[name], where)

        logger.debug(f"Resolved include for {entity}: {include!r} -> {result}")
        return result

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def relation_entry(
        self,
        parent: str,
        relation: RelationDef,
        user: Any,
        nested: Optional[dict[str, IncludeEntry]] = None,
    ) -> Optional[IncludeEntry]:
        """
        Include entry for one relation, or None when the target is denied.
        """
        decision = self.enforcer.relation_access(relation.target, user)
        if decision.denied:
            logger.warning(f"Dropping relation {parent}.{relation.name}: access denied")
            return None

        entry: dict[str, Any] = {}

        omit = self.enforcer.omit(relation.target, user)
        if omit:
            entry["omit"] = omit

        if relation.is_list and decision.filter:
            where = clean_filter(simplify_nested_filter(decision.filter, parent))
            if where:
                entry["where"] = where

        if nested:
            entry["include"] = nested

        return entry or True

    def _resolve_all(self, entity: str, user: Any) -> dict[str, IncludeEntry]:
        result: dict[str, IncludeEntry] = {}
        for name, relation in self.schema.build_relationships(entity).items():
            entry = self.relation_entry(entity, relation, user)
            if entry is not None:
                result[name] = entry
        return result

    def _resolve_paths(
        self,
        entity: str,
        groups: dict[str, list[str]],
        user: Any,
        depth: int,
    ) -> dict[str, IncludeEntry]:
        relations = self.schema.build_relationships(entity)
        result: dict[str, IncludeEntry] = {}

        for name, suffixes in groups.items():
            relation = relations.get(name)
            if relation is None:
                logger.debug(f"Ignoring unknown relation in include: {entity}.{name}")
                continue

            nested = None
            if suffixes:
                if depth >= self.max_depth:
                    logger.warning(f"Include depth limit reached at {entity}.{name}")
                else:
                    nested = self._resolve_paths(
                        relation.target, group_paths(",".join(suffixes)), user, depth + 1
                    )

            entry = self.relation_entry(entity, relation, user, nested)
            if entry is not None:
                result[name] = entry

        return result

    @staticmethod
    def _with_where(entry: IncludeEntry, where: dict[str, Any]) -> dict[str, Any]:
        result = dict(entry) if isinstance(entry, dict) else {}
        result["where"] = merge_guard(where, result.get("where"))
        return result
