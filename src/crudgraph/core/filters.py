"""
Filter parser - compact query-string DSL to predicate tree.

Syntax (comma separated, commas inside [...] are not split):

    name=%john%                 contains
    name=john%                  startsWith
    name=%son                   endsWith
    age=gt:18                   lt: lte: gt: gte: eq: ne:
    price=between:10;100        gte/lte
    createdAt=after:2024-01-01  before: after: from: to: on: between:
    id=[1,2,3]                  in
    id=not:[1,2,3]              notIn
    deletedAt=#NULL             null equality
    deletedAt=not:#NULL         not null
    author.name=%ann%           relation path

Usage:
    parser = FilterParser(schema, "Post")
    where = parser.parse("price=gt:50,author.name=%ann%")
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import unquote

from .errors import ValidationError
from .schema import BaseSchema

logger = logging.getLogger(__name__)


# =============================================================================
# Patterns
# =============================================================================

FILTER_SPLIT = re.compile(r",(?![^\[]*\])")
ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}(T.*)?$")
PURE_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
NUMBER_LIKE = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")
NUMBER_PREFIX = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")

NULL_TOKEN = "#NULL"
NOT_PREFIX = "not:"

NUMERIC_OPS = {
    "lt:": "lt",
    "lte:": "lte",
    "gt:": "gt",
    "gte:": "gte",
    "eq:": "equals",
    "ne:": "not",
    "between:": None,
}

DATE_OPS = ("before:", "after:", "from:", "to:", "on:", "between:")

SIMPLE_DATE_OPS = {
    "before:": "lt",
    "after:": "gt",
    "from:": "gte",
    "to:": "lte",
}


# =============================================================================
# Value helpers
# =============================================================================


def parse_float(value: str) -> Optional[float]:
    """Leading numeric prefix of value, like a lenient float()."""
    match = NUMBER_PREFIX.match(value)
    if not match:
        return None
    return float(match.group(0))


def as_number(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def parse_date(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime. Raises ValueError."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def filter_string(value: str) -> dict[str, str] | bool:
    """String comparator with % wildcards and URL decoding."""
    if value == "true":
        return True
    if value == "false":
        return False

    starts = value.startswith("%")
    ends = value.endswith("%")

    if starts and ends and len(value) > 1:
        return {"contains": unquote(value[1:-1])}
    if starts:
        return {"endsWith": unquote(value[1:])}
    if ends:
        return {"startsWith": unquote(value[:-1])}
    return {"equals": unquote(value)}


def parse_array(value: str) -> list[Any]:
    """[1,2,3] as JSON, falling back to a comma split of the raw text."""
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return parsed
    return [item.strip() for item in value[1:-1].split(",")]


def has_wildcard(items: list[Any]) -> bool:
    return any(isinstance(item, str) and "%" in item for item in items)


def looks_like_number(value: str) -> bool:
    return bool(NUMBER_LIKE.match(value)) or any(value.startswith(op) for op in NUMERIC_OPS)


def looks_like_date_range(value: str) -> bool:
    operands = value[len("between:"):]
    if "-" in value and "T" in value:
        return True
    return any(ISO_DATE.match(part.strip()) for part in operands.split(";"))


def split_range(operands: str) -> tuple[str, str]:
    parts = [part.strip() for part in operands.split(";")]
    start = parts[0] if parts else ""
    end = parts[1] if len(parts) > 1 else ""
    if not start or not end:
        raise ValidationError("between_requires_two_values")
    return start, end


def filter_number(value: str) -> Optional[dict[str, int | float]]:
    """Numeric comparator, or None when value is not numeric."""
    op_token = next((op for op in NUMERIC_OPS if value.startswith(op)), None)
    comparator = "equals"
    operand = value

    if op_token is not None:
        operand = value[len(op_token):]
        if op_token == "between:":
            parts = [part.strip() for part in operand.split(";")]
            start = parse_float(parts[0]) if parts else None
            end = parse_float(parts[1]) if len(parts) > 1 else None
            if start is None or end is None:
                return None
            return {"gte": as_number(start), "lte": as_number(end)}
        comparator = NUMERIC_OPS[op_token]

    number = parse_float(operand)
    if number is None:
        return None
    return {comparator: as_number(number)}


def filter_datetime(value: str) -> Optional[dict[str, datetime]]:
    """
    Date comparator for a date operator, or None.

    Returns None when no date operator is present, and for between:
    with two pure numbers (numeric range).
    """
    op_token = next((op for op in DATE_OPS if value.startswith(op)), None)
    if op_token is None:
        return None

    operand = value[len(op_token):]

    try:
        if op_token in SIMPLE_DATE_OPS:
            return {SIMPLE_DATE_OPS[op_token]: parse_date(operand)}

        if op_token == "on:":
            day = parse_date(operand).replace(hour=0, minute=0, second=0, microsecond=0)
            return {"gte": day, "lt": day + timedelta(days=1)}

        start, end = split_range(operand)
        if PURE_NUMBER.match(start) and PURE_NUMBER.match(end):
            return None
        return {"gte": parse_date(start), "lte": parse_date(end)}
    except ValueError as e:
        raise ValidationError("invalid_date_format", {"value": value, "error": str(e)})


# =============================================================================
# Parser
# =============================================================================


class FilterParser:
    """
    Parses the filter DSL for one root entity.

    Relation paths are resolved through the schema: list relations are
    wrapped in "some", singular relations nest directly.
    """

    def __init__(self, schema: BaseSchema, entity: str):
        self.schema = schema
        self.entity = entity

    def parse(self, q: Optional[str]) -> dict[str, Any]:
        """
        Parse a filter string into a predicate tree.

        Args:
            q: Filter string (e.g. "price=gt:50,name=%lamp%")

        Returns:
            Predicate tree dict ({} for an empty string)
        """
        if not isinstance(q, str) or not q.strip():
            return {}

        result: dict[str, Any] = {}

        for part in FILTER_SPLIT.split(q):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            path = [segment.strip() for segment in key.split(".")]
            field_name = path.pop()

            if not path and field_name not in self.schema.get_fields(self.entity):
                raise ValidationError("invalid_filter_field", {"field": field_name})

            context, entity = self._navigate(result, path)
            self._apply_value(context, field_name, value.strip(), entity)

        logger.debug(f"Parsed filter for {self.entity}: {q!r} -> {result}")
        return result

    # -------------------------------------------------------------------------
    # Relation paths
    # -------------------------------------------------------------------------

    def _navigate(self, root: dict[str, Any], path: list[str]) -> tuple[dict[str, Any], str]:
        context = root
        entity = self.entity

        for relation_name in path:
            relation = self.schema.get_relation(entity, relation_name)
            if relation is None:
                raise ValidationError(
                    "relation_not_exist",
                    {"relation": relation_name, "entity": self.entity},
                )

            existing = context.get(relation.name)
            if existing is None:
                if relation.is_list:
                    context[relation.name] = {"some": {}}
                    context = context[relation.name]["some"]
                else:
                    context[relation.name] = {}
                    context = context[relation.name]
            else:
                context = existing.get("some", existing)

            entity = relation.target

        return context, entity

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def _apply_value(self, context: dict[str, Any], field_name: str, value: str, entity: str) -> None:
        fields = self.schema.get_fields(entity)
        field = fields.get(field_name)
        if field is None:
            raise ValidationError("invalid_filter_field", {"field": field_name, "entity": entity})

        if value == NULL_TOKEN:
            if field.is_relation:
                context[field_name] = {"is": None}
            elif field.required:
                raise ValidationError("field_not_nullable", {"field": field_name})
            else:
                context[field_name] = {"equals": None}
            return

        if value.startswith(NOT_PREFIX):
            self._apply_negated(context, field_name, value[len(NOT_PREFIX):], field)
            return

        if not value:
            return

        self._apply_typed(context, field_name, value)

    def _apply_negated(self, context: dict[str, Any], field_name: str, value: str, field) -> None:
        if value == NULL_TOKEN:
            if field.is_relation:
                context[field_name] = {"isNot": None}
            elif not field.required:
                context[field_name] = {"not": {"equals": None}}
            # required scalars are never null: no constraint
            return

        if value.startswith("[") and value.endswith("]"):
            items = parse_array(value)
            if has_wildcard(items):
                context["NOT"] = _as_list(context.get("NOT")) + [
                    {field_name: filter_string(str(item))} for item in items
                ]
            else:
                context[field_name] = {"notIn": items}
            return

        if value.startswith("between:"):
            self._apply_not_between(context, field_name, value[len("between:"):])
            return

        date_filter = filter_datetime(value)
        if date_filter:
            context[field_name] = {"not": date_filter}
            return

        if looks_like_number(value):
            number_filter = filter_number(value)
            if number_filter:
                context[field_name] = {"not": number_filter}
                return
            if NUMBER_LIKE.match(value):
                context[field_name] = {"not": as_number(float(value))}
                return

        context[field_name] = {"not": filter_string(value)}

    def _apply_not_between(self, context: dict[str, Any], field_name: str, operands: str) -> None:
        start, end = split_range(operands)

        if PURE_NUMBER.match(start) and PURE_NUMBER.match(end):
            low: Any = as_number(float(start))
            high: Any = as_number(float(end))
        else:
            try:
                low = parse_date(start)
                high = parse_date(end)
            except ValueError:
                raise ValidationError("invalid_date_range", {"start": start, "end": end})

        context["NOT"] = _as_list(context.get("NOT")) + [
            {"AND": [{field_name: {"gte": low}}, {field_name: {"lte": high}}]}
        ]

    def _apply_typed(self, context: dict[str, Any], field_name: str, value: str) -> None:
        has_date_op = any(value.startswith(op) for op in DATE_OPS)
        is_iso_date = bool(ISO_DATE.match(value))
        is_date_range = value.startswith("between:") and looks_like_date_range(value)

        if has_date_op or is_iso_date or is_date_range:
            date_filter = filter_datetime(value)
            if date_filter:
                context[field_name] = date_filter
                return

        if looks_like_number(value):
            number_filter = filter_number(value)
            if number_filter:
                context[field_name] = number_filter
                return
            if NUMBER_LIKE.match(value):
                context[field_name] = {"equals": as_number(float(value))}
                return

        if value.startswith("[") and value.endswith("]"):
            items = parse_array(value)
            if has_wildcard(items):
                context["OR"] = _as_list(context.get("OR")) + [
                    {field_name: filter_string(str(item))} for item in items
                ]
            else:
                context[field_name] = {"in": items}
            return

        context[field_name] = filter_string(value)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]
