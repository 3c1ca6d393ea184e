"""
Schema provider introspected from SQLAlchemy models.

Usage:
    schema = SQLAlchemySchema({"Post": Post, "User": User})
    schema.get_relations("Post")
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Union

from sqlalchemy import inspect
from sqlalchemy.orm import DeclarativeBase, RelationshipDirection

from ..core.defs import EntityDef, FieldDef, RelationDef
from ..core.schema import BaseSchema

ModelMap = Union[Mapping[str, type], Iterable[type]]


def model_map(models: ModelMap) -> dict[str, type]:
    """Entity name -> model class. Plain iterables use the class names."""
    if isinstance(models, Mapping):
        return dict(models)
    return {model.__name__: model for model in models}


def get_column_type(column) -> str:
    """
    Map SQLAlchemy column type to simple type string.
    """
    type_name = column.type.__class__.__name__.lower()

    if type_name in ("integer", "biginteger", "smallinteger"):
        return "int"
    elif type_name in ("string", "text", "varchar", "uuid"):
        return "string"
    elif type_name in ("boolean",):
        return "bool"
    elif type_name in ("float", "double"):
        return "float"
    elif type_name in ("numeric", "decimal"):
        return "decimal"
    elif type_name in ("datetime", "timestamp"):
        return "datetime"
    elif type_name in ("date",):
        return "date"
    elif type_name in ("json", "jsonb"):
        return "json"
    elif type_name == "enum":
        return "enum"
    else:
        return "string"


class SQLAlchemySchema(BaseSchema):
    """
    Schema provider backed by SQLAlchemy declarative models.

    Relations come from mapper relationships:
    - many-to-one: cardinality "one", local FK columns as fields
    - one-to-many: cardinality "many", back-reference columns as references
    - one-to-one (uselist=False, remote FK): cardinality "one", no local fields
    """

    def __init__(self, models: ModelMap):
        super().__init__()
        self.models = model_map(models)
        self._names = {model: name for name, model in self.models.items()}

    def entity_names(self) -> list[str]:
        return list(self.models.keys())

    def entity_for_model(self, model: type[DeclarativeBase]) -> str:
        return self._names.get(model, model.__name__)

    def _load_entity(self, entity: str) -> EntityDef:
        mapper = inspect(self.models[entity])
        keys = tuple(mapper.get_property_by_column(col).key for col in mapper.primary_key)

        fields: dict[str, FieldDef] = {}
        for prop in mapper.column_attrs:
            column = prop.columns[0]
            fields[prop.key] = FieldDef(
                name=prop.key,
                type=get_column_type(column),
                nullable=bool(column.nullable) and not column.primary_key,
                unique=bool(column.unique),
                primary_key=prop.key in keys,
            )

        relations: dict[str, RelationDef] = {}
        for rel in mapper.relationships:
            relation = self._relation(mapper, rel)
            relations[rel.key] = relation
            nullable = True
            if relation.fields:
                nullable = all(fields[f].nullable for f in relation.fields if f in fields)
            fields[rel.key] = FieldDef(
                name=rel.key,
                kind="relation",
                type=relation.target,
                nullable=nullable and not relation.is_list,
                is_list=relation.is_list,
            )

        return EntityDef(name=entity, keys=keys, fields=fields, relations=relations)

    def _relation(self, mapper: Any, rel: Any) -> RelationDef:
        target = self.entity_for_model(rel.mapper.class_)
        pairs = rel.local_remote_pairs or []

        if rel.direction is RelationshipDirection.MANYTOONE:
            return RelationDef(
                name=rel.key,
                target=target,
                cardinality="one",
                fields=tuple(mapper.get_property_by_column(local).key for local, _ in pairs),
                references=tuple(rel.mapper.get_property_by_column(remote).key for _, remote in pairs),
            )

        if rel.direction is RelationshipDirection.ONETOMANY:
            return RelationDef(
                name=rel.key,
                target=target,
                cardinality="many" if rel.uselist else "one",
                references=tuple(rel.mapper.get_property_by_column(remote).key for _, remote in pairs),
            )

        # many-to-many through a secondary table
        return RelationDef(name=rel.key, target=target, cardinality="many" if rel.uselist else "one")
