"""
Core dataclass definitions for the crudgraph system.

These describe entities, fields and relations as exposed by a SchemaProvider.
All definitions are frozen: schema metadata is loaded once and shared
read-only between requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal, Mapping, Optional


@dataclass(frozen=True)
class FieldDef:
    """Definition of an entity field."""
    name: str
    kind: Literal["scalar", "relation"] = "scalar"
    type: str = "string"  # int, float, decimal, string, bool, datetime, date, json, enum; target entity for relations
    nullable: bool = True  # False = required
    unique: bool = False
    primary_key: bool = False
    is_list: bool = False

    @property
    def is_relation(self) -> bool:
        return self.kind == "relation"

    @property
    def required(self) -> bool:
        return not self.nullable


@dataclass(frozen=True)
class RelationDef:
    """
    Definition of a relation between entities.

    Owning side (many-to-one / one-to-one):
        fields=("authorId",), references=("id",)

    Inverse side (one-to-many):
        fields=(), references=("postId",)  # back-reference on the target
    """
    name: str
    target: str  # target entity name
    cardinality: Literal["one", "many"]
    fields: tuple[str, ...] = ()  # local join fields
    references: tuple[str, ...] = ()  # target join fields

    @property
    def is_list(self) -> bool:
        return self.cardinality == "many"

    @property
    def field(self) -> Optional[str]:
        """First local join field (the foreign key on this side)."""
        return self.fields[0] if self.fields else None

    @property
    def foreign_key(self) -> Optional[str]:
        """Target field the local foreign key points at."""
        if not self.fields:
            return None
        return self.references[0] if self.references else "id"


@dataclass(frozen=True)
class EntityDef:
    """Complete definition of an entity."""
    name: str
    keys: tuple[str, ...]  # primary key fields
    fields: Mapping[str, FieldDef] = field(default_factory=dict)
    relations: Mapping[str, RelationDef] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "relations", MappingProxyType(dict(self.relations)))

    @property
    def primary_key(self) -> str | tuple[str, ...]:
        """Single field name, or the ordered tuple for composite keys."""
        return self.keys[0] if len(self.keys) == 1 else self.keys

    @property
    def is_composite(self) -> bool:
        return len(self.keys) > 1

    @property
    def key_name(self) -> str:
        """Synthesized key name used in where-clauses ("a_b" for composites)."""
        return "_".join(self.keys)

    @property
    def scalar_fields(self) -> dict[str, FieldDef]:
        return {name: f for name, f in self.fields.items() if not f.is_relation}
