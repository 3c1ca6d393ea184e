"""
Field selection compiler - explicit field lists to one selection tree.

Without a field list the plan uses include/omit; with one, everything goes
through select (the two modes are never mixed):

    compiler.compile("Post", None, "author", user)
    # {"include": {"author": True}}

    compiler.compile("Post", "id,title,author.name", "author", user)
    # {"select": {"id": True, "title": True, "author": {"select": {"name": True}}}}

Also owns pagination and sort helpers (take, skip, sort).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..iam.enforcer import AccessEnforcer
from .defs import RelationDef
from .errors import ValidationError
from .include import IncludeResolver, IncludeSpec, split_include
from .schema import BaseSchema

logger = logging.getLogger(__name__)

SORT_ORDERS = ("asc", "desc")


def parse_fields(fields: str) -> tuple[list[str], dict[str, list[str]]]:
    """
    Split a field list into scalars and relation subfields.

    Example:
        parse_fields("id,name,posts.title,posts.author.name")
        # (["id", "name"], {"posts": ["title", "author.name"]})
    """
    scalars: list[str] = []
    relations: dict[str, list[str]] = {}

    for part in (item.strip() for item in fields.split(",")):
        if not part:
            continue
        head, dot, rest = part.partition(".")
        if not dot:
            if part not in scalars:
                scalars.append(part)
            continue
        subfields = relations.setdefault(head, [])
        if rest not in subfields:
            subfields.append(rest)

    return scalars, relations


class FieldSelectionCompiler:
    """
    Compiles fields + include into the selection part of a query plan.

    Usage:
        compiler = FieldSelectionCompiler(schema, enforcer, resolver, max_limit=500)
        selection = compiler.compile("Post", "id,title", "ALL", user)
    """

    def __init__(
        self,
        schema: BaseSchema,
        enforcer: AccessEnforcer,
        resolver: IncludeResolver,
        max_limit: int = 500,
    ):
        self.schema = schema
        self.enforcer = enforcer
        self.resolver = resolver
        self.max_limit = max_limit

    # =========================================================================
    # Selection
    # =========================================================================

    def compile(
        self,
        entity: str,
        fields: Optional[str],
        include: IncludeSpec,
        user: Any,
    ) -> dict[str, Any]:
        """
        Build the selection part of a plan.

        Args:
            entity: Root entity name
            fields: Comma list with dot notation, or None
            include: Include spec (see IncludeResolver.resolve)
            user: Principal

        Returns:
            {"include"?, "omit"?} without fields, {"select"} with fields

        Raises:
            ValidationError: relation_not_included when a field references
                a relation missing from include, invalid_select_relation when
                a deeper dot path names an unknown relation
        """
        if not fields or not fields.strip():
            return self._include_mode(entity, include, user)

        scalars, relations = parse_fields(fields)
        query, _ = split_include(include)
        available = self.resolver.available_relations(entity, query)

        for name in relations:
            if name not in available:
                raise ValidationError(
                    "relation_not_included",
                    {"relation": name, "hint": f"Add '{name}' to the include parameter"},
                )

        omit = self.enforcer.omit(entity, user)
        select: dict[str, Any] = {name: True for name in scalars if name not in omit}

        all_relations = self.schema.build_relationships(entity)
        for name in available:
            relation = all_relations[name]
            content = self.resolver.relation_entry(entity, relation, user)
            if content is None:
                continue

            subfields = relations.get(name)
            if subfields:
                select[name] = self._relation_select(relation, subfields, content, user)
            elif isinstance(content, dict):
                select[name] = content
            else:
                select[name] = True

        logger.debug(f"Compiled selection for {entity}: fields={fields!r} -> {select}")
        return {"select": select}

    def _include_mode(self, entity: str, include: IncludeSpec, user: Any) -> dict[str, Any]:
        result: dict[str, Any] = {}
        include_tree = self.resolver.resolve(entity, include, user)
        if include_tree:
            result["include"] = include_tree
        omit = self.enforcer.omit(entity, user)
        if omit:
            result["omit"] = omit
        return result

    def _relation_select(
        self,
        relation: RelationDef,
        subfields: list[str],
        content: Any,
        user: Any,
    ) -> dict[str, Any]:
        """
        Select entry for one relation, recursing through deeper dot paths.

        Every hop is checked like a first-level relation: unknown names are
        rejected, denied targets are dropped and their omit fields removed.
        """
        target = relation.target
        scalars, nested = parse_fields(",".join(subfields))
        omit = self.enforcer.omit(target, user)
        select: dict[str, Any] = {name: True for name in scalars if name not in omit}

        relations = self.schema.build_relationships(target)
        for name, paths in nested.items():
            child = relations.get(name)
            if child is None:
                raise ValidationError("invalid_select_relation", {"relation": f"{target}.{name}"})
            child_content = self.resolver.relation_entry(target, child, user)
            if child_content is None:
                continue
            select[name] = self._relation_select(child, paths, child_content, user)

        entry: dict[str, Any] = {"select": select}
        if isinstance(content, dict) and content.get("where"):
            entry["where"] = content["where"]
        return entry

    # =========================================================================
    # Pagination and sort
    # =========================================================================

    def take(self, limit: Any) -> int:
        """Validated page size, clamped to max_limit."""
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationError("invalid_limit", {"limit": limit})
        return min(limit, self.max_limit)

    @staticmethod
    def skip(offset: Any) -> int:
        """Validated offset; anything invalid becomes 0."""
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            return 0
        return offset

    @staticmethod
    def sort(sort_by: str, sort_order: str) -> dict[str, Any]:
        """
        Build an orderBy tree.

        Example:
            sort("author.name", "asc")  # {"author": {"name": "asc"}}
        """
        if not isinstance(sort_by, str):
            raise ValidationError("sortby_must_be_string", {"type": type(sort_by).__name__})
        if sort_order not in SORT_ORDERS:
            raise ValidationError("sortorder_invalid", {"value": sort_order})

        *chain, field_name = [segment.strip() for segment in sort_by.split(".")]
        order: dict[str, Any] = {}
        current = order
        for segment in chain:
            current[segment] = {}
            current = current[segment]
        current[field_name] = sort_order
        return order
