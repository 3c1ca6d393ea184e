"""
Schema introspection - entity, field and relation metadata.

The engine never reads schema metadata from a global. Every component
receives a SchemaProvider; results are computed once per entity and
cached (recomputation is idempotent, so concurrent readers are safe).

Graph format accepted by StaticSchema (dict or YAML):

    entities:
      Post:
        keys: [id]
        fields:
          id: {type: int, nullable: false}
          title: {type: string, nullable: false}
          authorId: {type: int}
        relations:
          author: {target: User, cardinality: one, ref: {from_field: authorId, to_field: id}}
          comments: {target: Comment, cardinality: many, references: [postId]}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

import yaml

from .defs import EntityDef, FieldDef, RelationDef
from .errors import GraphConfigError


@runtime_checkable
class SchemaProvider(Protocol):
    """Read-only schema metadata, per entity name."""

    def has_entity(self, entity: str) -> bool: ...

    def get_entity(self, entity: str) -> EntityDef: ...

    def get_fields(self, entity: str) -> Mapping[str, FieldDef]: ...

    def get_scalar_fields(self, entity: str) -> Mapping[str, FieldDef]: ...

    def get_primary_key(self, entity: str) -> str | tuple[str, ...]: ...

    def get_relations(self, entity: str) -> tuple[RelationDef, ...]: ...

    def build_relationships(self, entity: str) -> Mapping[str, RelationDef]: ...


class BaseSchema:
    """
    Memoizing base for schema providers.

    Subclasses implement _load_entity() and entity_names(); every public
    lookup goes through the per-entity cache.
    """

    def __init__(self):
        self._entities: dict[str, EntityDef] = {}

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    def entity_names(self) -> list[str]:
        raise NotImplementedError

    def _load_entity(self, entity: str) -> EntityDef:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # SchemaProvider
    # -------------------------------------------------------------------------

    def has_entity(self, entity: str) -> bool:
        return entity in self.entity_names()

    def get_entity(self, entity: str) -> EntityDef:
        cached = self._entities.get(entity)
        if cached is None:
            if not self.has_entity(entity):
                raise GraphConfigError(f"Unknown entity: {entity}")
            cached = self._load_entity(entity)
            self._entities[entity] = cached
        return cached

    def get_fields(self, entity: str) -> Mapping[str, FieldDef]:
        return self.get_entity(entity).fields

    def get_scalar_fields(self, entity: str) -> Mapping[str, FieldDef]:
        return self.get_entity(entity).scalar_fields

    def get_primary_key(self, entity: str) -> str | tuple[str, ...]:
        return self.get_entity(entity).primary_key

    def get_key_fields(self, entity: str) -> tuple[str, ...]:
        return self.get_entity(entity).keys

    def get_relations(self, entity: str) -> tuple[RelationDef, ...]:
        return tuple(self.get_entity(entity).relations.values())

    def build_relationships(self, entity: str) -> Mapping[str, RelationDef]:
        return self.get_entity(entity).relations

    # -------------------------------------------------------------------------
    # Derived lookups
    # -------------------------------------------------------------------------

    def get_relation(self, entity: str, name: str) -> Optional[RelationDef]:
        return self.get_entity(entity).relations.get(name)

    def relation_for_field(self, entity: str, field_name: str) -> Optional[RelationDef]:
        """Singular relation whose first local join field is field_name."""
        for relation in self.get_entity(entity).relations.values():
            if relation.field == field_name:
                return relation
        return None

    def is_list_relation(self, entity: str, name: str) -> bool:
        relation = self.get_relation(entity, name)
        return relation is not None and relation.is_list

    def join_key(self, relation: RelationDef) -> Optional[tuple[str, ...]]:
        """
        Composite key of a join table reached through a list relation.

        A list relation points at a join table when the target's primary key
        is composite and contains the back-reference field(s).
        """
        if not relation.is_list or not relation.references:
            return None
        keys = self.get_key_fields(relation.target)
        if len(keys) > 1 and all(ref in keys for ref in relation.references):
            return keys
        return None

    def connect_key(self, relation: RelationDef) -> str:
        """Target field used in connect where-clauses for a singular relation."""
        if relation.foreign_key:
            return relation.foreign_key
        return self.get_key_fields(relation.target)[0]


class StaticSchema(BaseSchema):
    """
    Schema provider backed by a graph dict.

    Usage:
        schema = StaticSchema({"entities": {...}})
        schema.get_primary_key("Post")  # "id"
    """

    def __init__(self, graph: dict[str, Any]):
        super().__init__()
        self.graph = graph
        self._raw = graph.get("entities", {})

    def entity_names(self) -> list[str]:
        return list(self._raw.keys())

    def _load_entity(self, entity: str) -> EntityDef:
        raw = self._raw[entity] or {}
        fields: dict[str, FieldDef] = {}
        relations: dict[str, RelationDef] = {}

        keys = tuple(raw.get("keys") or ["id"])

        for name, field_def in (raw.get("fields") or {}).items():
            field_def = field_def or {}
            field_type = field_def.get("type", "string")
            # "int?" shorthand marks a nullable field
            nullable = field_def.get("nullable", field_type.endswith("?"))
            fields[name] = FieldDef(
                name=name,
                type=field_type.rstrip("?"),
                nullable=bool(nullable) and name not in keys,
                unique=bool(field_def.get("unique", False)),
                primary_key=name in keys,
            )

        for name, rel_def in (raw.get("relations") or {}).items():
            relation = _parse_relation(entity, name, rel_def or {})
            relations[name] = relation
            fields[name] = FieldDef(
                name=name,
                kind="relation",
                type=relation.target,
                nullable=rel_def.get("nullable", True) if not relation.is_list else False,
                is_list=relation.is_list,
            )

        missing = [k for k in keys if k not in fields]
        if missing:
            raise GraphConfigError(f"Entity '{entity}' key fields not declared: {missing}")

        return EntityDef(name=entity, keys=keys, fields=fields, relations=relations)


def _parse_relation(entity: str, name: str, rel_def: dict[str, Any]) -> RelationDef:
    target = rel_def.get("target")
    if not target:
        raise GraphConfigError(f"Relation '{entity}.{name}' has no target")

    cardinality = rel_def.get("cardinality", "many")
    if cardinality not in ("one", "many"):
        raise GraphConfigError(f"Relation '{entity}.{name}' has invalid cardinality: {cardinality}")

    ref = rel_def.get("ref")
    if ref:
        fields = (ref["from_field"],)
        references = (ref.get("to_field", "id"),)
    else:
        fields = tuple(rel_def.get("fields") or ())
        references = tuple(rel_def.get("references") or ())

    return RelationDef(
        name=name,
        target=target,
        cardinality=cardinality,
        fields=fields,
        references=references,
    )


def load_graph(path: Path | str) -> StaticSchema:
    """Load a StaticSchema from a YAML graph file."""
    path = Path(path)
    if not path.exists():
        raise GraphConfigError(f"Graph file not found: {path}")
    data = yaml.safe_load(path.read_text()) or {}
    return StaticSchema(data)
