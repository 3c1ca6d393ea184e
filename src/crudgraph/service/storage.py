"""
SQLAlchemy async storage adapter.

Executes query plans and graph-operation payloads against declarative
models through an AsyncSession:

    storage = SQLAlchemyStorage(get_session_maker(), {"Post": Post, "User": User})
    rows = await storage.find_many("Post", QueryPlan(where={"price": {"gt": 50}}, take=10))

Where-trees use the operator vocabulary the filter parser emits
(equals, contains, startsWith, endsWith, lt/lte/gt/gte, in, notIn, not,
AND/OR/NOT, some/every/none, is/isNot). Engine errors surface as
StorageFault with a FaultCode.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import and_, func, inspect, not_, or_, select, true
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import RelationshipDirection, selectinload

from ..core.error_map import FaultCode
from ..core.errors import StorageFault
from ..core.query_types import QueryPlan
from .schema import ModelMap, model_map

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOGICAL_OPS = ("AND", "OR", "NOT")
LIST_OPS = ("some", "every", "none")
SINGLE_OPS = ("is", "isNot")


# =============================================================================
# Value coercion
# =============================================================================

def coerce_value(column: Any, value: Any) -> Any:
    """
    Coerce a value to match a column type.

    Handles:
    - int/float -> str for String columns
    - str -> date for Date columns (ISO format)
    - str -> datetime for DateTime columns
    - numeric strings for Integer/Float/Numeric columns
    - "true"/"false" for Boolean columns

    Raises:
        StorageFault(INVALID_VALUE): Value cannot be converted
    """
    if value is None:
        return value

    col_type = column.type.__class__.__name__.lower()
    try:
        if col_type in ("string", "text", "varchar"):
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return str(value)
            return value

        if col_type == "date":
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, str):
                return date.fromisoformat(value[:10])
            return value

        if col_type in ("datetime", "timestamp"):
            if isinstance(value, str):
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            if isinstance(value, date) and not isinstance(value, datetime):
                return datetime(value.year, value.month, value.day)
            return value

        if col_type in ("integer", "biginteger", "smallinteger"):
            if isinstance(value, str):
                return int(value)
            if isinstance(value, float) and value.is_integer():
                return int(value)
            return value

        if col_type in ("float", "double"):
            return float(value) if isinstance(value, str) else value

        if col_type in ("numeric", "decimal"):
            return Decimal(value) if isinstance(value, (str, int)) and not isinstance(value, bool) else value

        if col_type == "boolean" and isinstance(value, str):
            lowered = value.lower()
            if lowered in ("true", "false"):
                return lowered == "true"
            raise ValueError(value)
    except (ValueError, InvalidOperation):
        raise StorageFault(
            FaultCode.INVALID_VALUE,
            f"Invalid value for {column.key}: {value!r}",
            {"target": column.key},
        )
    return value


# =============================================================================
# Error mapping
# =============================================================================

_UNIQUE_PATTERNS = (
    re.compile(r"UNIQUE constraint failed: (?P<target>[\w.]+(?:, [\w.]+)*)"),
    re.compile(r"Key \((?P<target>[^)]+)\)=\((?P<value>[^)]*)\) already exists"),
    re.compile(r"Duplicate entry '(?P<value>[^']*)' for key '(?P<target>[^']+)'"),
)


def _unique_meta(message: str, entity: Optional[str]) -> dict[str, Any]:
    meta: dict[str, Any] = {"entity": entity}
    for pattern in _UNIQUE_PATTERNS:
        match = pattern.search(message)
        if match:
            targets = [part.split(".")[-1].strip() for part in match.group("target").split(",")]
            meta["target"] = ", ".join(targets)
            if "value" in match.groupdict() and match.group("value") is not None:
                meta["value"] = match.group("value")
            break
    return meta


def fault_from_exception(error: SQLAlchemyError, entity: Optional[str] = None) -> StorageFault:
    """Map a SQLAlchemy/DBAPI exception to a StorageFault."""
    message = str(getattr(error, "orig", None) or error)
    lowered = message.lower()

    if isinstance(error, IntegrityError):
        if "unique" in lowered or "duplicate" in lowered:
            return StorageFault(FaultCode.UNIQUE_VIOLATION, message, _unique_meta(message, entity))
        if "foreign key" in lowered:
            return StorageFault(FaultCode.FOREIGN_KEY_VIOLATION, message, {"entity": entity})
        if "not null" in lowered or "null value" in lowered:
            return StorageFault(FaultCode.NULL_VIOLATION, message, {"entity": entity})
        return StorageFault(FaultCode.CONSTRAINT_VIOLATION, message, {"entity": entity})

    if isinstance(error, PoolTimeoutError):
        return StorageFault(FaultCode.POOL_TIMEOUT, message)

    if isinstance(error, DataError):
        if "too long" in lowered:
            return StorageFault(FaultCode.VALUE_TOO_LONG, message, {"entity": entity})
        if "out of range" in lowered:
            return StorageFault(FaultCode.VALUE_OUT_OF_RANGE, message, {"entity": entity})
        return StorageFault(FaultCode.INVALID_VALUE, message, {"entity": entity})

    if isinstance(error, OperationalError):
        if "locked" in lowered or "deadlock" in lowered or "could not serialize" in lowered:
            return StorageFault(FaultCode.WRITE_CONFLICT, message)
        if "no such table" in lowered:
            return StorageFault(FaultCode.TABLE_NOT_FOUND, message, {"entity": entity})
        if "no such column" in lowered:
            return StorageFault(FaultCode.COLUMN_NOT_FOUND, message, {"entity": entity})
        if "timeout" in lowered:
            return StorageFault(FaultCode.POOL_TIMEOUT, message)
        return StorageFault(FaultCode.CONNECTION_FAILED, message)

    if isinstance(error, ProgrammingError):
        if "does not exist" in lowered and "relation" in lowered:
            return StorageFault(FaultCode.TABLE_NOT_FOUND, message, {"entity": entity})
        if "does not exist" in lowered and "column" in lowered:
            return StorageFault(FaultCode.COLUMN_NOT_FOUND, message, {"entity": entity})
        return StorageFault(FaultCode.QUERY_VALIDATION, message, {"entity": entity})

    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return StorageFault(FaultCode.CONNECTION_FAILED, message)

    return StorageFault(FaultCode.TRANSACTION_ERROR, message, {"entity": entity})


@asynccontextmanager
async def translate_errors(entity: Optional[str] = None) -> AsyncIterator[None]:
    """Re-raise SQLAlchemy errors raised in the block as StorageFault."""
    try:
        yield
    except SQLAlchemyError as e:
        fault = fault_from_exception(e, entity)
        logger.debug(f"Storage fault {fault.code} on {entity}: {fault}")
        raise fault from e


# =============================================================================
# Session-bound storage
# =============================================================================

class SessionStorage:
    """
    Storage bound to one AsyncSession.

    Inside a transaction (nested=True) every write runs in a SAVEPOINT so
    a failing row is rolled back without aborting the transaction.
    """

    def __init__(self, session: AsyncSession, models: ModelMap, nested: bool = False):
        self.session = session
        self.models = model_map(models)
        self.nested = nested

    def model(self, entity: str) -> type:
        model = self.models.get(entity)
        if model is None:
            raise StorageFault(FaultCode.TABLE_NOT_FOUND, f"Unknown entity '{entity}'", {"entity": entity})
        return model

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_many(self, entity: str, plan: QueryPlan) -> list[dict[str, Any]]:
        model = self.model(entity)
        stmt = self._select(model, plan)
        if plan.skip:
            stmt = stmt.offset(plan.skip)
        if plan.take is not None:
            stmt = stmt.limit(plan.take)
        result = await self.session.execute(stmt)
        shape = _shape(plan)
        return [self._serialize(obj, shape) for obj in result.scalars().unique().all()]

    async def find_unique(self, entity: str, plan: QueryPlan) -> Optional[dict[str, Any]]:
        model = self.model(entity)
        result = await self.session.execute(self._select(model, plan).limit(1))
        obj = result.scalars().first()
        return self._serialize(obj, _shape(plan)) if obj is not None else None

    async def count(self, entity: str, where: dict[str, Any]) -> int:
        model = self.model(entity)
        stmt = select(func.count()).select_from(model).where(self.compile_where(model, where))
        return (await self.session.execute(stmt)).scalar_one()

    def _select(self, model: type, plan: QueryPlan):
        stmt = select(model).where(self.compile_where(model, plan.where))
        if plan.order_by:
            stmt = self._order(model, stmt, plan.order_by)
        options = self._loaders(model, plan.include if plan.include is not None else plan.select)
        if options:
            stmt = stmt.options(*options)
        return stmt.execution_options(populate_existing=True)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, entity: str, data: dict[str, Any], plan: Optional[QueryPlan] = None) -> dict[str, Any]:
        model = self.model(entity)
        async with self._write(entity):
            obj = await self._build(model, data)
            self.session.add(obj)
            await self.session.flush()
        return await self._output(obj, plan)

    async def update(
        self,
        entity: str,
        where: dict[str, Any],
        data: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]:
        model = self.model(entity)
        async with self._write(entity):
            obj = await self._find_one(model, where)
            if obj is None:
                return None
            await self._apply(obj, data)
            await self.session.flush()
        return await self._output(obj, plan)

    async def upsert(
        self,
        entity: str,
        where: dict[str, Any],
        create: dict[str, Any],
        update: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> dict[str, Any]:
        model = self.model(entity)
        async with self._write(entity):
            obj = await self._find_one(model, where)
            if obj is None:
                obj = await self._build(model, create)
                self.session.add(obj)
            else:
                await self._apply(obj, update)
            await self.session.flush()
        return await self._output(obj, plan)

    async def delete(
        self,
        entity: str,
        where: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]:
        model = self.model(entity)
        async with self._write(entity):
            obj = await self._find_one(model, where)
            if obj is None:
                return None
            record = await self._output(obj, plan)
            await self.session.delete(obj)
            await self.session.flush()
        return record

    async def create_many(
        self,
        entity: str,
        rows: list[dict[str, Any]],
        skip_duplicates: bool = True,
    ) -> int:
        """
        Insert rows in one flush.

        With skip_duplicates, rows whose primary key or unique columns
        already exist (in the table or earlier in the batch) are skipped.
        """
        model = self.model(entity)
        async with self._write(entity):
            if skip_duplicates:
                rows = await self._without_duplicates(model, rows)
            objects = [await self._build(model, row) for row in rows]
            self.session.add_all(objects)
            await self.session.flush()
        return len(objects)

    async def run_in_transaction(
        self,
        work: Callable[[Any], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """Already inside a transaction: run work on this storage."""
        return await work(self)

    @asynccontextmanager
    async def _write(self, entity: str) -> AsyncIterator[None]:
        async with translate_errors(entity):
            if self.nested:
                async with self.session.begin_nested():
                    yield
            else:
                yield

    async def _output(self, obj: Any, plan: Optional[QueryPlan]) -> dict[str, Any]:
        """Re-read a written row shaped by plan."""
        plan = plan or QueryPlan()
        mapper = inspect(type(obj))
        identity = {prop.key: getattr(obj, prop.key) for prop in _key_props(mapper)}
        stmt = select(type(obj)).where(*[getattr(type(obj), k) == v for k, v in identity.items()])
        options = self._loaders(type(obj), plan.include if plan.include is not None else plan.select)
        if options:
            stmt = stmt.options(*options)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return self._serialize(result.scalars().one(), _shape(plan))

    async def _without_duplicates(self, model: type, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        mapper = inspect(model)
        keys = [prop.key for prop in _key_props(mapper)]
        uniques = [prop.key for prop in mapper.column_attrs if prop.columns[0].unique]
        groups = [tuple(keys)] + [(name,) for name in uniques]

        seen: dict[tuple[str, ...], set[tuple]] = {group: set() for group in groups}
        for group in groups:
            candidates = [row for row in rows if all(row.get(f) is not None for f in group)]
            if not candidates:
                continue
            clauses = [
                and_(*[getattr(model, f) == coerce_value(mapper.column_attrs[f].columns[0], row[f]) for f in group])
                for row in candidates
            ]
            columns = [getattr(model, f) for f in group]
            result = await self.session.execute(select(*columns).where(or_(*clauses)))
            seen[group].update(tuple(str(v) for v in existing) for existing in result.all())

        kept = []
        for row in rows:
            duplicate = False
            for group in groups:
                if not all(row.get(f) is not None for f in group):
                    continue
                value = tuple(str(coerce_value(mapper.column_attrs[f].columns[0], row[f])) for f in group)
                if value in seen[group]:
                    duplicate = True
                    break
                seen[group].add(value)
            if duplicate:
                logger.debug(f"Skipping duplicate {model.__name__} row: {row}")
            else:
                kept.append(row)
        return kept

    # -------------------------------------------------------------------------
    # Graph operations
    # -------------------------------------------------------------------------

    async def _build(self, model: type, data: dict[str, Any]) -> Any:
        obj = model()
        await self._apply(obj, data)
        return obj

    async def _apply(self, obj: Any, data: dict[str, Any]) -> None:
        """Apply scalar values and relation operations to obj."""
        mapper = inspect(type(obj))
        for key, value in (data or {}).items():
            if key in mapper.relationships:
                await self._apply_relation(obj, mapper.relationships[key], value)
            elif key in mapper.column_attrs:
                setattr(obj, key, coerce_value(mapper.column_attrs[key].columns[0], value))
            else:
                raise StorageFault(
                    FaultCode.QUERY_VALIDATION,
                    f"Unknown field '{key}' on {mapper.class_.__name__}",
                    {"target": key},
                )

    async def _apply_relation(self, obj: Any, rel: Any, ops: Any) -> None:
        if not ops:
            return
        if not isinstance(ops, dict):
            raise StorageFault(
                FaultCode.QUERY_VALIDATION,
                f"Relation '{rel.key}' expects an operation object",
                {"target": rel.key},
            )
        if rel.uselist:
            await self._apply_many(obj, rel, ops)
        else:
            await self._apply_one(obj, rel, ops)

    async def _apply_one(self, obj: Any, rel: Any, ops: dict[str, Any]) -> None:
        target = rel.mapper.class_
        for op, value in ops.items():
            if op == "connect":
                setattr(obj, rel.key, await self._require(target, value, rel))
            elif op == "create":
                setattr(obj, rel.key, await self._build(target, value))
            elif op == "connectOrCreate":
                found = await self._find_one(target, value["where"])
                setattr(obj, rel.key, found if found is not None else await self._build(target, value["create"]))
            elif op == "upsert":
                current = await self._related(obj, rel.key)
                if current is not None:
                    await self._apply(current, value.get("update") or {})
                elif value.get("create"):
                    setattr(obj, rel.key, await self._build(target, value["create"]))
            elif op == "update":
                current = await self._related(obj, rel.key)
                if current is None:
                    raise StorageFault(
                        FaultCode.REQUIRED_RECORD_NOT_FOUND,
                        f"No '{rel.key}' record to update",
                        {"target": rel.key},
                    )
                await self._apply(current, value)
            elif op == "disconnect":
                if value:
                    self._ensure_optional(rel)
                    await self._related(obj, rel.key)
                    setattr(obj, rel.key, None)
            elif op == "delete":
                if value:
                    current = await self._related(obj, rel.key)
                    if current is not None:
                        await self.session.delete(current)
                        setattr(obj, rel.key, None)
            else:
                raise StorageFault(FaultCode.UNSUPPORTED_FEATURE, f"Unsupported relation operation '{op}'")

    async def _apply_many(self, obj: Any, rel: Any, ops: dict[str, Any]) -> None:
        target = rel.mapper.class_
        collection = await self._related(obj, rel.key)

        def attach(child: Any) -> None:
            if child not in collection:
                collection.append(child)

        for op, value in ops.items():
            items = value if isinstance(value, list) else [value]
            if op == "connect":
                for where in items:
                    attach(await self._require(target, where, rel))
            elif op == "create":
                for body in items:
                    attach(await self._build(target, body))
            elif op == "createMany":
                for body in value.get("data") or []:
                    attach(await self._build(target, body))
            elif op == "connectOrCreate":
                for item in items:
                    found = await self._find_one(target, item["where"])
                    attach(found if found is not None else await self._build(target, item["create"]))
            elif op == "upsert":
                for item in items:
                    found = await self._find_one(target, item["where"])
                    if found is not None:
                        await self._apply(found, item.get("update") or {})
                        attach(found)
                    else:
                        attach(await self._build(target, item["create"]))
            elif op == "update":
                for item in items:
                    found = await self._find_one(target, item["where"])
                    if found is None:
                        raise StorageFault(
                            FaultCode.RECORD_NOT_FOUND,
                            f"No related '{rel.key}' record matches {item['where']}",
                            {"target": rel.key},
                        )
                    await self._apply(found, item.get("data") or {})
            elif op == "disconnect":
                for where in items:
                    found = await self._find_one(target, where)
                    if found is not None and found in collection:
                        self._ensure_optional(rel)
                        collection.remove(found)
            elif op == "set":
                replacement = [await self._require(target, where, rel) for where in items]
                setattr(obj, rel.key, replacement)
            elif op == "delete":
                for where in items:
                    found = await self._find_one(target, where)
                    if found is not None:
                        if found in collection:
                            collection.remove(found)
                        await self.session.delete(found)
            else:
                raise StorageFault(FaultCode.UNSUPPORTED_FEATURE, f"Unsupported relation operation '{op}'")

    async def _related(self, obj: Any, name: str) -> Any:
        """Relation value, loaded first when obj is persistent and it is not loaded yet."""
        state = inspect(obj)
        if state.persistent and name in state.unloaded:
            await self.session.refresh(obj, attribute_names=[name])
        return getattr(obj, name)

    async def _find_one(self, model: type, where: dict[str, Any]) -> Any:
        stmt = select(model).where(self.compile_where(model, where)).limit(1)
        return (await self.session.execute(stmt)).scalars().first()

    async def _require(self, model: type, where: dict[str, Any], rel: Any) -> Any:
        found = await self._find_one(model, where)
        if found is None:
            raise StorageFault(
                FaultCode.RELATED_RECORD_NOT_FOUND,
                f"No '{model.__name__}' record found to connect for '{rel.key}'",
                {"target": rel.key, "where": where},
            )
        return found

    def _ensure_optional(self, rel: Any) -> None:
        if rel.direction is RelationshipDirection.MANYTOONE:
            columns = rel.local_columns
        elif rel.direction is RelationshipDirection.ONETOMANY:
            columns = rel.remote_side
        else:
            return
        if any(not column.nullable for column in columns):
            raise StorageFault(
                FaultCode.REQUIRED_RELATION_VIOLATION,
                f"Relation '{rel.key}' is required and cannot be disconnected",
                {"target": rel.key},
            )

    # -------------------------------------------------------------------------
    # Where compilation
    # -------------------------------------------------------------------------

    def compile_where(self, model: type, where: Optional[dict[str, Any]]):
        """
        Compile a where-tree into a SQL expression.

        Example:
            compile_where(Post, {"price": {"gt": 50}, "author": {"is": {"id": 1}}})
        """
        if not where:
            return true()

        mapper = inspect(model)
        clauses = []
        for key, value in where.items():
            if key == "AND":
                clauses.append(and_(true(), *[self.compile_where(model, w) for w in _as_list(value)]))
            elif key == "OR":
                parts = [self.compile_where(model, w) for w in _as_list(value)]
                clauses.append(or_(*parts) if parts else true())
            elif key == "NOT":
                clauses.extend(not_(self.compile_where(model, w)) for w in _as_list(value))
            elif key in mapper.relationships:
                clauses.append(self._relation_clause(model, mapper.relationships[key], value))
            elif key in mapper.column_attrs:
                column = mapper.column_attrs[key].columns[0]
                clauses.append(self._column_clause(getattr(model, key), column, value))
            elif isinstance(value, dict) and value and all(k in mapper.column_attrs for k in value):
                # compound key: {"postId_tagId": {"postId": 1, "tagId": 2}}
                clauses.append(and_(*[
                    getattr(model, k) == coerce_value(mapper.column_attrs[k].columns[0], v)
                    for k, v in value.items()
                ]))
            else:
                raise StorageFault(
                    FaultCode.QUERY_VALIDATION,
                    f"Unknown field '{key}' on {model.__name__}",
                    {"target": key},
                )
        return and_(*clauses) if clauses else true()

    def _column_clause(self, attr: Any, column: Any, value: Any):
        if not isinstance(value, dict):
            if value is None:
                return attr.is_(None)
            return attr == coerce_value(column, value)

        clauses = []
        for op, operand in value.items():
            if op == "equals":
                clauses.append(attr.is_(None) if operand is None else attr == coerce_value(column, operand))
            elif op == "not":
                if isinstance(operand, dict):
                    clauses.append(not_(self._column_clause(attr, column, operand)))
                elif operand is None:
                    clauses.append(attr.isnot(None))
                else:
                    clauses.append(attr != coerce_value(column, operand))
            elif op == "in":
                clauses.append(attr.in_([coerce_value(column, v) for v in _as_list(operand)]))
            elif op == "notIn":
                clauses.append(attr.notin_([coerce_value(column, v) for v in _as_list(operand)]))
            elif op == "lt":
                clauses.append(attr < coerce_value(column, operand))
            elif op == "lte":
                clauses.append(attr <= coerce_value(column, operand))
            elif op == "gt":
                clauses.append(attr > coerce_value(column, operand))
            elif op == "gte":
                clauses.append(attr >= coerce_value(column, operand))
            elif op == "contains":
                clauses.append(attr.contains(str(operand), autoescape=True))
            elif op == "startsWith":
                clauses.append(attr.startswith(str(operand), autoescape=True))
            elif op == "endsWith":
                clauses.append(attr.endswith(str(operand), autoescape=True))
            elif op == "mode":
                continue
            else:
                raise StorageFault(FaultCode.QUERY_VALIDATION, f"Unknown filter operator '{op}'", {"target": column.key})
        return and_(true(), *clauses)

    def _relation_clause(self, model: type, rel: Any, value: Any):
        attr = getattr(model, rel.key)
        target = rel.mapper.class_

        if rel.uselist:
            if not isinstance(value, dict):
                raise StorageFault(FaultCode.QUERY_VALIDATION, f"Invalid filter for '{rel.key}'")
            if not any(op in value for op in LIST_OPS):
                return attr.any(self.compile_where(target, value))
            clauses = []
            for op, nested in value.items():
                if op == "some":
                    clauses.append(attr.any(self.compile_where(target, nested)))
                elif op == "none":
                    clauses.append(not_(attr.any(self.compile_where(target, nested))))
                elif op == "every":
                    clauses.append(not_(attr.any(not_(self.compile_where(target, nested)))))
                else:
                    raise StorageFault(FaultCode.QUERY_VALIDATION, f"Unknown relation filter '{op}'")
            return and_(*clauses)

        if value is None:
            return not_(attr.has())
        if not isinstance(value, dict):
            raise StorageFault(FaultCode.QUERY_VALIDATION, f"Invalid filter for '{rel.key}'")
        if not any(op in value for op in SINGLE_OPS):
            return attr.has(self.compile_where(target, value))
        clauses = []
        for op, nested in value.items():
            if op == "is":
                clauses.append(not_(attr.has()) if nested is None else attr.has(self.compile_where(target, nested)))
            elif op == "isNot":
                clauses.append(attr.has() if nested is None else not_(attr.has(self.compile_where(target, nested))))
            else:
                raise StorageFault(FaultCode.QUERY_VALIDATION, f"Unknown relation filter '{op}'")
        return and_(*clauses)

    # -------------------------------------------------------------------------
    # Ordering, loading, serialization
    # -------------------------------------------------------------------------

    def _order(self, model: type, stmt: Any, order_by: Any):
        for entry in _as_list(order_by):
            for name, direction in entry.items():
                stmt = self._order_field(model, stmt, name, direction)
        return stmt

    def _order_field(self, model: type, stmt: Any, name: str, direction: Any):
        mapper = inspect(model)
        if isinstance(direction, dict):
            rel = mapper.relationships.get(name)
            if rel is None or rel.uselist:
                raise StorageFault(FaultCode.QUERY_VALIDATION, f"Cannot order by '{name}'", {"target": name})
            stmt = stmt.outerjoin(getattr(model, name))
            target = rel.mapper.class_
            for nested_name, nested_direction in direction.items():
                stmt = self._order_field(target, stmt, nested_name, nested_direction)
            return stmt
        if name not in mapper.column_attrs:
            raise StorageFault(FaultCode.QUERY_VALIDATION, f"Cannot order by '{name}'", {"target": name})
        column = getattr(model, name)
        return stmt.order_by(column.desc() if str(direction).lower() == "desc" else column.asc())

    def _loaders(self, model: type, tree: Optional[dict[str, Any]]) -> list[Any]:
        """selectinload options for every relation in an include/select tree."""
        if not tree:
            return []
        mapper = inspect(model)
        options = []
        for name, entry in tree.items():
            if not entry or name not in mapper.relationships:
                continue
            rel = mapper.relationships[name]
            target = rel.mapper.class_
            attr = getattr(model, name)
            where = entry.get("where") if isinstance(entry, dict) else None
            loader = selectinload(attr.and_(self.compile_where(target, where)) if where and rel.uselist else attr)
            if isinstance(entry, dict):
                nested = entry.get("include") or entry.get("select")
                children = self._loaders(target, nested if isinstance(nested, dict) else None)
                if children:
                    loader = loader.options(*children)
            options.append(loader)
        return options

    def _serialize(self, obj: Any, shape: dict[str, Any]) -> dict[str, Any]:
        mapper = inspect(type(obj))
        select_tree = shape.get("select")
        omit = shape.get("omit") or {}
        result: dict[str, Any] = {}

        if select_tree is not None:
            for name, entry in select_tree.items():
                if not entry:
                    continue
                if name in mapper.relationships:
                    result[name] = self._serialize_related(getattr(obj, name), entry)
                elif name in mapper.column_attrs:
                    result[name] = getattr(obj, name)
            return result

        for prop in mapper.column_attrs:
            if not omit.get(prop.key):
                result[prop.key] = getattr(obj, prop.key)
        for name, entry in (shape.get("include") or {}).items():
            if entry and name in mapper.relationships:
                result[name] = self._serialize_related(getattr(obj, name), entry)
        return result

    def _serialize_related(self, value: Any, entry: Any) -> Any:
        shape = entry if isinstance(entry, dict) else {}
        if value is None:
            return None
        if isinstance(value, (list, set, tuple)):
            return [self._serialize(item, shape) for item in value]
        return self._serialize(value, shape)


# =============================================================================
# Session-per-call storage
# =============================================================================

class SQLAlchemyStorage:
    """
    Storage adapter opening one session (and transaction) per call.

    run_in_transaction hands work a SessionStorage sharing a single
    transaction; it is committed when work returns and rolled back when it
    raises or exceeds the timeout.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], models: ModelMap):
        self.session_maker = session_maker
        self.models = model_map(models)

    @asynccontextmanager
    async def session(self, entity: Optional[str] = None, nested: bool = False) -> AsyncIterator[SessionStorage]:
        async with translate_errors(entity):
            async with self.session_maker() as session:
                async with session.begin():
                    yield SessionStorage(session, self.models, nested=nested)

    async def find_many(self, entity: str, plan: QueryPlan) -> list[dict[str, Any]]:
        async with self.session(entity) as storage:
            return await storage.find_many(entity, plan)

    async def find_unique(self, entity: str, plan: QueryPlan) -> Optional[dict[str, Any]]:
        async with self.session(entity) as storage:
            return await storage.find_unique(entity, plan)

    async def count(self, entity: str, where: dict[str, Any]) -> int:
        async with self.session(entity) as storage:
            return await storage.count(entity, where)

    async def create(self, entity: str, data: dict[str, Any], plan: Optional[QueryPlan] = None) -> dict[str, Any]:
        async with self.session(entity) as storage:
            return await storage.create(entity, data, plan)

    async def update(
        self,
        entity: str,
        where: dict[str, Any],
        data: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]:
        async with self.session(entity) as storage:
            return await storage.update(entity, where, data, plan)

    async def upsert(
        self,
        entity: str,
        where: dict[str, Any],
        create: dict[str, Any],
        update: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> dict[str, Any]:
        async with self.session(entity) as storage:
            return await storage.upsert(entity, where, create, update, plan)

    async def delete(
        self,
        entity: str,
        where: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]:
        async with self.session(entity) as storage:
            return await storage.delete(entity, where, plan)

    async def create_many(self, entity: str, rows: list[dict[str, Any]], skip_duplicates: bool = True) -> int:
        async with self.session(entity) as storage:
            return await storage.create_many(entity, rows, skip_duplicates)

    async def run_in_transaction(
        self,
        work: Callable[[Any], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        async def run() -> T:
            async with self.session(nested=True) as storage:
                return await work(storage)

        if timeout is None:
            return await run()
        try:
            return await asyncio.wait_for(run(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Transaction exceeded {timeout}s and was rolled back")
            raise StorageFault(FaultCode.TRANSACTION_TIMEOUT, f"Transaction exceeded {timeout}s")


# =============================================================================
# Helpers
# =============================================================================

def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _key_props(mapper: Any) -> list[Any]:
    return [mapper.get_property_by_column(column) for column in mapper.primary_key]


def _shape(plan: QueryPlan) -> dict[str, Any]:
    return {"include": plan.include, "select": plan.select, "omit": plan.omit}
