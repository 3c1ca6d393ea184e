"""
Mutation graph transformer - nested payloads to graph operations.

Rewrites a client payload into connect / create / connectOrCreate /
upsert / update / disconnect operations that a storage adapter applies
through relations:

    transformer.create("Post", {"title": "Hi", "authorId": 7}, user)
    # {"title": "Hi", "author": {"connect": {"id": 7}}}

    transformer.update("Post", 1, {"comments": [{"id": 3}, {"body": "new"}]}, user)
    # {"comments": {"connect": [{"id": 3}], "create": [{"body": "new"}]}}

Inputs are never mutated: create and update derive different shapes from
the same nested objects, so every level works on copies.

The target entity's access filter is merged into every connect where, so
a caller can only link records it can read. Payloads that already hold
graph operations pass through unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from ..iam.enforcer import AccessEnforcer
from ..iam.guard import merge_guard
from .defs import RelationDef
from .errors import IAMError, ValidationError
from .schema import BaseSchema

logger = logging.getLogger(__name__)

GRAPH_OPS = (
    "connect",
    "create",
    "disconnect",
    "set",
    "update",
    "upsert",
    "deleteMany",
    "updateMany",
    "createMany",
    "connectOrCreate",
)

MEANINGFUL_OPS = ("connect", "disconnect", "create", "update", "upsert")

DEFAULT_AUDIT_FIELDS = ("createdAt", "createdBy", "updatedAt", "updatedBy")


def is_graph_operation(value: Any) -> bool:
    return isinstance(value, dict) and any(op in value for op in GRAPH_OPS)


def has_meaningful_content(data: dict[str, Any]) -> bool:
    """True when data holds a non-null scalar or a relation operation."""
    for value in data.values():
        if value is None:
            continue
        if isinstance(value, dict):
            if any(value.get(op) for op in MEANINGFUL_OPS):
                return True
            continue
        return True
    return False


def without(data: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    drop = set(fields)
    return {key: value for key, value in data.items() if key not in drop}


class MutationTransformer:
    """
    Transforms create and update payloads for one schema.

    Usage:
        transformer = MutationTransformer(schema, enforcer)
        data = transformer.create("Post", payload, user)
    """

    def __init__(
        self,
        schema: BaseSchema,
        enforcer: AccessEnforcer,
        audit_fields: Iterable[str] = DEFAULT_AUDIT_FIELDS,
        max_depth: int = 10,
    ):
        self.schema = schema
        self.enforcer = enforcer
        self.audit_fields = tuple(audit_fields)
        self.max_depth = max_depth

    # =========================================================================
    # Create
    # =========================================================================

    def create(self, entity: str, data: dict[str, Any], user: Any) -> dict[str, Any]:
        """
        Transform a create payload.

        Args:
            entity: Entity being created
            data: Client payload (not modified)
            user: Principal

        Returns:
            New payload with relation keys rewritten to graph operations

        Raises:
            ValidationError: unexpected_key, max_nesting_depth_exceeded
            IAMError: no_permission_to_create for nested creates
        """
        result = self.strip(entity, data, user)
        fields = self.schema.get_fields(entity)

        for key in list(result.keys()):
            field = fields.get(key)
            if field is None or field.is_relation:
                self._create_relation(entity, result, key, user)
            else:
                self._create_foreign_key(entity, result, key, user)

        return result

    def _create_relation(self, entity: str, result: dict[str, Any], key: str, user: Any) -> None:
        relation = self.schema.get_relation(entity, key)
        if relation is None:
            raise ValidationError("unexpected_key", {"key": key})

        value = result[key]
        if not value:
            return

        if isinstance(value, list):
            result[key] = self._create_many(relation, value, key, user, depth=0)
        else:
            result[key] = self._create_one(relation, value, key, user, depth=0)

    def _create_foreign_key(self, entity: str, result: dict[str, Any], key: str, user: Any) -> None:
        relation = self.schema.relation_for_field(entity, key)
        if relation is None:
            return

        value = result.pop(key)
        if value is not None:
            result[relation.name] = {"connect": self._connect_where(relation, value, user)}

    def _create_many(
        self,
        relation: RelationDef,
        items: list[dict[str, Any]],
        path: str,
        user: Any,
        depth: int,
    ) -> dict[str, Any]:
        self._check_depth(depth)

        target = relation.target
        key_fields = self.schema.get_key_fields(target)
        join_key = self.schema.join_key(relation)
        omit = self.enforcer.omit_fields(target, user)
        # the parent sets back-references itself
        dropped = [*omit, *relation.references]

        creates: list[dict[str, Any]] = []
        connects: list[dict[str, Any]] = []
        connect_or_create: list[dict[str, Any]] = []

        for raw in items:
            self._validate_keys(target, raw, path)
            if join_key:
                self.enforcer.ensure_can_create(target, user, raw)
                creates.append(self._create_item(target, without(raw, dropped), path, user, depth))
                continue

            complete = all(raw.get(k) is not None for k in key_fields)
            if not complete:
                self.enforcer.ensure_can_create(target, user, raw)
                creates.append(self._create_item(target, without(raw, dropped), path, user, depth))
            elif set(raw) <= set(key_fields):
                connects.append(self._guarded(target, self._key_where(relation, raw), user))
            else:
                self.enforcer.ensure_can_create(target, user, raw)
                connect_or_create.append({
                    "where": self._guarded(target, self._key_where(relation, raw), user),
                    "create": self._create_item(target, without(raw, dropped), path, user, depth),
                })

        result: dict[str, Any] = {}
        if creates:
            result["create"] = creates
        if connects:
            result["connect"] = connects
        if connect_or_create:
            result["connectOrCreate"] = connect_or_create
        return result

    def _create_one(
        self,
        relation: RelationDef,
        item: dict[str, Any],
        path: str,
        user: Any,
        depth: int,
    ) -> dict[str, Any]:
        self._check_depth(depth)

        if is_graph_operation(item):
            return dict(item)

        target = relation.target
        self.enforcer.ensure_can_create(target, user, item)

        cleaned = without(item, self.enforcer.omit_fields(target, user))
        self._validate_keys(target, cleaned, path)
        return {"create": self._create_item(target, cleaned, path, user, depth)}

    def _create_item(
        self,
        entity: str,
        item: dict[str, Any],
        path: str,
        user: Any,
        depth: int,
    ) -> dict[str, Any]:
        """Nested create body: foreign keys become connects, relations recurse."""
        result = dict(item)

        for key in list(result.keys()):
            value = result[key]
            child = self.schema.relation_for_field(entity, key)
            if child is not None:
                del result[key]
                if value is not None:
                    result[child.name] = {"connect": self._connect_where(child, value, user)}
                continue

            nested = self.schema.get_relation(entity, key)
            if nested is None or not value or not isinstance(value, (dict, list)):
                continue

            nested_path = f"{path}.{key}"
            if isinstance(value, list):
                result[key] = self._create_many(nested, value, nested_path, user, depth + 1)
            else:
                result[key] = self._create_one(nested, value, nested_path, user, depth + 1)

        return result

    # =========================================================================
    # Update
    # =========================================================================

    def update(self, entity: str, record_id: Any, data: dict[str, Any], user: Any) -> dict[str, Any]:
        """
        Transform an update payload.

        Args:
            entity: Entity being updated
            record_id: Id of the updated record (parent of join-table rows)
            data: Client payload (not modified)
            user: Principal

        Returns:
            New payload with relation keys rewritten to graph operations.
            Primary-key fields are dropped; the record is addressed by record_id.
        """
        result = without(self.strip(entity, data, user), self.schema.get_key_fields(entity))
        fields = self.schema.get_fields(entity)

        for key in list(result.keys()):
            field = fields.get(key)
            if field is None or field.is_relation:
                self._update_relation(entity, result, key, record_id, user)
            else:
                self._update_foreign_key(entity, result, key, user)

        return result

    def _update_relation(
        self,
        entity: str,
        result: dict[str, Any],
        key: str,
        record_id: Any,
        user: Any,
    ) -> None:
        relation = self.schema.get_relation(entity, key)
        if relation is None:
            raise ValidationError("unexpected_key", {"key": key})

        value = result[key]
        if not value:
            return

        if isinstance(value, list):
            result[key] = self._update_many(relation, value, record_id, user, depth=0)
            return

        nested = self._update_one(relation, value, user, depth=0)
        if nested is None:
            del result[key]
        else:
            result[key] = nested

    def _update_foreign_key(self, entity: str, result: dict[str, Any], key: str, user: Any) -> None:
        relation = self.schema.relation_for_field(entity, key)
        if relation is None:
            return

        value = result.pop(key)
        if value is not None:
            result[relation.name] = {"connect": self._connect_where(relation, value, user)}
        else:
            result[relation.name] = {"disconnect": True}

    def _update_many(
        self,
        relation: RelationDef,
        items: list[dict[str, Any]],
        parent_id: Any,
        user: Any,
        depth: int,
    ) -> dict[str, Any]:
        """
        Split to-many items into connect, upsert (or update) and create.

        connect: only key fields; upsert: complete key plus data (or any
        join-table row with data); create: no key. Foreign keys in upsert
        and create bodies become guarded connects, as on create.
        """
        self._check_depth(depth)

        target = relation.target
        key_fields = self.schema.get_key_fields(target)
        join_key = self.schema.join_key(relation)
        omit = self.enforcer.omit_fields(target, user)
        # the parent sets back-references itself
        dropped = [*omit, *relation.references]

        prepared = []
        for raw in items:
            self._validate_keys(target, raw, relation.name)
            prepared.append(self._update_nested(target, raw, user, depth))

        connects: list[dict[str, Any]] = []
        upserts: list[dict[str, Any]] = []
        creates: list[dict[str, Any]] = []

        for item in prepared:
            if self._is_connect_only(item, relation, key_fields, join_key):
                connects.append(item)
            elif join_key or all(item.get(k) is not None for k in key_fields):
                upserts.append(item)
            else:
                creates.append(item)

        for item in creates:
            self.enforcer.ensure_can_create(target, user, item)
        can_create = self.enforcer.can_create(target, user)

        result: dict[str, Any] = {}

        if connects:
            result["connect"] = [
                self._guarded(target, self._item_where(relation, item, parent_id, join_key), user)
                for item in connects
            ]

        if upserts:
            update_filter = self._update_guard(target, user)
            entries = []
            for item in upserts:
                where = merge_guard(self._item_where(relation, item, parent_id, join_key), update_filter)
                body = without(item, dropped)
                update_data = self._link_foreign_keys(target, without(body, key_fields), user, update=True)
                if can_create:
                    create_data = self._link_foreign_keys(target, body, user)
                    entries.append({"where": where, "create": create_data, "update": update_data})
                else:
                    entries.append({"where": where, "data": update_data})
            result["upsert" if can_create else "update"] = entries

        if creates and can_create:
            result["create"] = [self._link_foreign_keys(target, without(item, dropped), user) for item in creates]

        return result

    def _update_one(
        self,
        relation: RelationDef,
        item: dict[str, Any],
        user: Any,
        depth: int,
    ) -> Optional[dict[str, Any]]:
        """
        To-one relation as {"upsert": {"create"?, "update"?}}.

        Returns None when neither shape carries meaningful content.
        """
        self._check_depth(depth)

        if is_graph_operation(item):
            return dict(item)

        target = relation.target
        self.enforcer.ensure_can_create(target, user, item)

        cleaned = without(item, self.enforcer.omit_fields(target, user))
        self._validate_keys(target, cleaned, relation.name)
        processed = self._update_nested(target, cleaned, user, depth)

        create_data = self._link_foreign_keys(target, processed, user)
        update_data = self._link_foreign_keys(
            target, without(processed, self.schema.get_key_fields(target)), user, update=True
        )

        upsert: dict[str, Any] = {}
        if has_meaningful_content(create_data):
            upsert["create"] = create_data
        if has_meaningful_content(update_data):
            upsert["update"] = update_data

        return {"upsert": upsert} if upsert else None

    def _update_nested(self, entity: str, item: dict[str, Any], user: Any, depth: int) -> dict[str, Any]:
        """Recurse into relation-valued keys of an update item."""
        result = dict(item)

        for key, value in item.items():
            relation = self.schema.get_relation(entity, key)
            if relation is None or not value or not isinstance(value, (dict, list)):
                continue

            if isinstance(value, list):
                result[key] = self._update_many(relation, value, None, user, depth + 1)
                continue

            nested = self._update_one(relation, value, user, depth + 1)
            if nested is None:
                del result[key]
            else:
                result[key] = nested

        return result

    # =========================================================================
    # Where-clauses
    # =========================================================================

    def _connect_where(self, relation: RelationDef, value: Any, user: Any) -> dict[str, Any]:
        """Connect where for a singular relation, guarded by the target's access filter."""
        target = relation.target
        key_fields = self.schema.get_key_fields(target)

        if len(key_fields) > 1 and not relation.foreign_key:
            if isinstance(value, dict):
                where = {k: value[k] for k in key_fields if value.get(k) is not None}
            else:
                where = {key_fields[0]: value}
        else:
            where = {self.schema.connect_key(relation): value}

        return self._guarded(target, where, user)

    def _link_foreign_keys(
        self,
        entity: str,
        item: dict[str, Any],
        user: Any,
        update: bool = False,
    ) -> dict[str, Any]:
        """
        New body with foreign-key scalars rewritten to relation operations.

        Non-null values become guarded connects. Null values become
        disconnects on update and are dropped on create.
        """
        result = dict(item)
        for key, value in item.items():
            relation = self.schema.relation_for_field(entity, key)
            if relation is None:
                continue
            del result[key]
            if value is not None:
                result[relation.name] = {"connect": self._connect_where(relation, value, user)}
            elif update:
                result[relation.name] = {"disconnect": True}
        return result

    def _key_where(self, relation: RelationDef, item: dict[str, Any]) -> dict[str, Any]:
        key_fields = self.schema.get_key_fields(relation.target)
        if len(key_fields) > 1:
            return {k: item[k] for k in key_fields}
        return {key_fields[0]: item[key_fields[0]]}

    def _item_where(
        self,
        relation: RelationDef,
        item: dict[str, Any],
        parent_id: Any,
        join_key: Optional[tuple[str, ...]],
    ) -> dict[str, Any]:
        if not join_key:
            return self._key_where(relation, item)

        # join-table rows are addressed by their compound key
        compound = {relation.references[0]: parent_id}
        for name in join_key:
            if name in item:
                compound[name] = item[name]
        return {"_".join(join_key): compound}

    @staticmethod
    def _is_connect_only(
        item: dict[str, Any],
        relation: RelationDef,
        key_fields: tuple[str, ...],
        join_key: Optional[tuple[str, ...]],
    ) -> bool:
        keys = set(item)
        if join_key:
            return keys <= set(join_key)
        if len(key_fields) > 1:
            return keys == set(key_fields)
        return len(keys) == 1 and next(iter(keys)) == key_fields[0]

    # =========================================================================
    # Helpers
    # =========================================================================

    def strip(self, entity: str, data: dict[str, Any], user: Any) -> dict[str, Any]:
        """Copy of data without the user's omit fields and the audit fields."""
        omitted = self.enforcer.omit_fields(entity, user)
        return without(data, [*omitted, *self.audit_fields])

    def _guarded(self, target: str, where: dict[str, Any], user: Any) -> dict[str, Any]:
        decision = self.enforcer.relation_access(target, user)
        if decision.denied:
            raise IAMError("no_permission", {"entity": target})
        return merge_guard(where, decision.filter)

    def _update_guard(self, target: str, user: Any) -> dict[str, Any]:
        decision = self.enforcer.decide(target, user, "update")
        if decision.denied:
            raise IAMError("no_permission_to_update", {"entity": target})
        return decision.filter

    def _validate_keys(self, entity: str, item: dict[str, Any], path: str) -> None:
        if not isinstance(item, dict):
            raise ValidationError("unexpected_key", {"key": path})
        fields = self.schema.get_fields(entity)
        for key in item:
            if key not in fields:
                raise ValidationError("unexpected_key", {"key": f"{path}.{key}"})

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise ValidationError("max_nesting_depth_exceeded", {"depth": self.max_depth})
