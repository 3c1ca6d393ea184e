"""
CRUD orchestrator - the eight operations over one schema.

Every operation runs:

    before hook -> permission gate -> transform / build plan
    -> execute -> after hook -> return

Usage:
    crud = CrudOrchestrator(schema, storage, acl=AclRegistry({...}))

    page = await crud.get_many("Post", user, q="price=gt:50", include="author")
    post = await crud.get("Post", user, 1)
    created = await crud.create("Post", user, {"title": "Hi", "authorId": 7})
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence, Union

from ..config import Settings, get_settings
from ..core.error_map import ErrorTranslator
from ..core.errors import IAMError, NotFoundError, StorageFault, ValidationError
from ..core.filters import FilterParser
from ..core.include import IncludeResolver, IncludeSpec
from ..core.mutations import MutationTransformer, without
from ..core.query_types import BatchUpsertResult, FailedRow, ListMeta, ListResult, QueryPlan
from ..core.schema import BaseSchema
from ..core.selection import FieldSelectionCompiler
from ..iam.acl import AclRegistry
from ..iam.enforcer import AccessEnforcer
from ..iam.guard import merge_guard
from .middleware import HookContext, MiddlewareRegistry
from .storage import Storage

logger = logging.getLogger(__name__)

RecordId = Union[int, str, dict[str, Any]]
UniqueKey = Union[str, Sequence[str]]

ID_SEPARATOR = "~"


# =============================================================================
# Key helpers
# =============================================================================


def coerce_key_value(field_type: Optional[str], value: str) -> Any:
    """Coerce a key part taken from a URL to its field type."""
    try:
        if field_type == "int":
            return int(value)
        if field_type in ("float", "decimal"):
            return float(value)
    except ValueError:
        raise ValidationError("invalid_id", {"value": value, "type": field_type})
    if field_type == "bool":
        return value == "true"
    return value


def build_where_id(schema: BaseSchema, entity: str, record_id: RecordId) -> dict[str, Any]:
    """
    Unique where-clause for a record id.

    Simple keys:     {"id": 5}
    Composite keys:  {"userId_roleId": {"userId": 1, "roleId": 2}}
                     from a dict or a "1~2" string

    Raises:
        ValidationError: invalid_composite_key, invalid_composite_key_format
    """
    entity_def = schema.get_entity(entity)
    fields = entity_def.fields

    if not entity_def.is_composite:
        key = entity_def.keys[0]
        if isinstance(record_id, str):
            record_id = coerce_key_value(fields[key].type, record_id)
        return {key: record_id}

    if isinstance(record_id, dict):
        return {entity_def.key_name: dict(record_id)}

    if isinstance(record_id, str) and ID_SEPARATOR in record_id:
        parts = record_id.split(ID_SEPARATOR)
        if len(parts) != len(entity_def.keys):
            raise ValidationError(
                "invalid_composite_key",
                {"expected": list(entity_def.keys), "received": len(parts)},
            )
        values = {
            key: coerce_key_value(fields[key].type, part)
            for key, part in zip(entity_def.keys, parts)
        }
        return {entity_def.key_name: values}

    raise ValidationError(
        "invalid_composite_key_format",
        {
            "message": "Composite key requires either an object or tilde-separated string",
            "fields": list(entity_def.keys),
        },
    )


def build_where_unique_key(unique_key: UniqueKey, data: dict[str, Any]) -> dict[str, Any]:
    if isinstance(unique_key, str):
        return {unique_key: data.get(unique_key)}
    keys = list(unique_key)
    return {"_".join(keys): {key: data.get(key) for key in keys}}


def keys_match(keys: Sequence[str], a: Optional[dict], b: Optional[dict]) -> bool:
    if not a or not b:
        return False
    return all(a.get(k) is not None and str(a.get(k)) == str(b.get(k)) for k in keys)


# =============================================================================
# Orchestrator
# =============================================================================


class CrudOrchestrator:
    """
    Sequences parser, resolver, compiler, transformer and storage.

    Args:
        schema: Schema provider
        storage: Storage adapter
        acl: ACL rules per entity (entities without a rule are unrestricted)
        middleware: Hook registry (a fresh one when omitted)
        settings: Engine settings (process settings when omitted)
    """

    def __init__(
        self,
        schema: BaseSchema,
        storage: Storage,
        acl: Optional[AclRegistry] = None,
        middleware: Optional[MiddlewareRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.schema = schema
        self.storage = storage
        self.settings = settings or get_settings()
        self.middleware = middleware or MiddlewareRegistry()

        self.enforcer = AccessEnforcer(acl)
        self.resolver = IncludeResolver(schema, self.enforcer, self.settings.MAX_NESTING_DEPTH)
        self.compiler = FieldSelectionCompiler(
            schema, self.enforcer, self.resolver, self.settings.API_RESULT_LIMIT
        )
        self.transformer = MutationTransformer(
            schema,
            self.enforcer,
            audit_fields=self.settings.AUDIT_FIELDS,
            max_depth=self.settings.MAX_NESTING_DEPTH,
        )
        self.translator = ErrorTranslator(production=self.settings.is_production)

    # -------------------------------------------------------------------------
    # Plan building
    # -------------------------------------------------------------------------

    def where(self, entity: str, user: Any, q: Union[str, dict[str, Any], None] = None) -> dict[str, Any]:
        """Parsed filter AND access filter."""
        parsed = q if isinstance(q, dict) else FilterParser(self.schema, entity).parse(q)
        return self.enforcer.read_where(entity, user, parsed)

    def selection(
        self,
        entity: str,
        user: Any,
        include: IncludeSpec = None,
        fields: Optional[str] = None,
    ) -> QueryPlan:
        return QueryPlan(**self.compiler.compile(entity, fields, include, user))

    def build_plan(
        self,
        entity: str,
        user: Any,
        q: Union[str, dict[str, Any], None] = None,
        include: IncludeSpec = None,
        fields: Optional[str] = None,
        limit: Any = None,
        offset: Any = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> QueryPlan:
        """
        Full list plan for a request.

        Raises:
            ValidationError: invalid filter, limit, sort field or order
        """
        plan = self.selection(entity, user, include, fields)
        plan.where = self.where(entity, user, q)
        plan.order_by = self.compiler.sort(self._sort_field(entity, sort_by), sort_order)
        plan.take = self.compiler.take(self.settings.DEFAULT_LIMIT if limit is None else limit)
        plan.skip = self.compiler.skip(offset)
        return plan

    def _sort_field(self, entity: str, sort_by: Optional[str]) -> str:
        entity_def = self.schema.get_entity(entity)
        default = entity_def.keys[0]
        sort_by = (sort_by or default).strip()

        if "." in sort_by or sort_by in entity_def.fields:
            return sort_by
        # the synthesized composite key name sorts by its first field
        if entity_def.is_composite and sort_by == entity_def.key_name:
            return default
        raise ValidationError("invalid_sort_field", {"sortBy": sort_by, "entity": entity})

    def _key_select(self, entity: str) -> dict[str, bool]:
        return {key: True for key in self.schema.get_key_fields(entity)}

    def _scalar_select(self, entity: str, user: Any) -> dict[str, bool]:
        omit = self.enforcer.omit(entity, user)
        return {name: True for name in self.schema.get_scalar_fields(entity) if name not in omit}

    def _write_plan(self, entity: str, user: Any) -> QueryPlan:
        return self.selection(entity, user, include="ALL")

    # -------------------------------------------------------------------------
    # Execution boundary
    # -------------------------------------------------------------------------

    async def _run(self, awaitable: Any, data: Optional[dict[str, Any]] = None) -> Any:
        try:
            return await awaitable
        except StorageFault as e:
            raise self.translator.translate(e, data) from e

    async def _hook(self, hook: str, operation: str, entity: str, user: Any, **params: Any) -> HookContext:
        context = self.middleware.create_context(entity, operation, hook, user, **params)
        return await self.middleware.execute(hook, operation, context)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_many(
        self,
        entity: str,
        user: Any,
        q: Union[str, dict[str, Any], None] = None,
        include: IncludeSpec = None,
        limit: Any = None,
        offset: Any = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
        fields: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> ListResult:
        """
        List records with filter, include/fields, pagination and sort.

        Data and total are read in one storage transaction.
        """
        take = self.compiler.take(self.settings.DEFAULT_LIMIT if limit is None else limit)
        skip = self.compiler.skip(offset)
        sort_field = self._sort_field(entity, sort_by)

        before = await self._hook(
            "before", "get_many", entity, user,
            query=q, include=include, fields=fields, take=take, offset=skip,
            sort_by=sort_field, sort_order=sort_order, options=dict(options or {}),
        )
        if before.abort:
            return before.result or ListResult(data=[], meta=ListMeta(take=take, skip=skip, total=0))

        plan = self.build_plan(
            entity,
            user,
            q=before.query,
            include=before.include,
            fields=before.fields,
            limit=before.take or take,
            offset=skip if before.offset is None else before.offset,
            sort_by=before.sort_by or sort_field,
            sort_order=before.sort_order or sort_order,
        )
        logger.debug(f"get_many {entity}: {plan.to_dict()}")

        async def read_page(tx: Storage) -> tuple[list[dict[str, Any]], int]:
            data = await tx.find_many(entity, plan)
            total = await tx.count(entity, plan.where)
            return data, total

        data, total = await self._run(self.storage.run_in_transaction(read_page))
        result = ListResult(data=data, meta=ListMeta(take=plan.take, skip=plan.skip, total=total))

        after = await self._hook("after", "get_many", entity, user, result=result)
        return after.result or result

    async def get(
        self,
        entity: str,
        user: Any,
        record_id: RecordId,
        include: IncludeSpec = None,
        fields: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Fetch one record by key.

        Two concurrent probes: the requested shape by key, and a key-only
        probe constrained by the access filter. A missing first probe is a
        404; a missing or different second probe is a 403.
        """
        before = await self._hook(
            "before", "get", entity, user,
            id=record_id, include=include, fields=fields, options=dict(options or {}),
        )
        if before.abort:
            return before.result

        target_id = before.id if before.id is not None else record_id
        where_id = build_where_id(self.schema, entity, target_id)

        plan = self.selection(entity, user, before.include, before.fields)
        plan.where = where_id
        extra_omit = before.options.get("omit")
        if extra_omit and plan.select is None:
            plan.omit = {**(plan.omit or {}), **extra_omit}

        probe = QueryPlan(
            where=merge_guard(where_id, self.enforcer.access_filter(entity, user)),
            select=self._key_select(entity),
        )

        response, permitted = await self._run(asyncio.gather(
            self.storage.find_unique(entity, plan),
            self.storage.find_unique(entity, probe),
        ))

        if not response:
            raise NotFoundError("record_not_found", {"entity": entity})
        if not keys_match(self.schema.get_key_fields(entity), permitted, response):
            raise IAMError("no_permission", {"entity": entity})

        after = await self._hook("after", "get", entity, user, id=target_id, result=response)
        return after.result or response

    async def count(self, entity: str, user: Any, q: Union[str, dict[str, Any], None] = None) -> int:
        before = await self._hook("before", "count", entity, user, query=q)
        if before.abort:
            return before.result or 0

        query = before.query if before.query is not None else q
        result = await self._run(self.storage.count(entity, self.where(entity, user, query)))

        after = await self._hook("after", "count", entity, user, query=query, result=result)
        return after.result if after.result is not None else result

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, entity: str, user: Any, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a record. The response includes every first-level relation.

        Raises:
            IAMError: no_permission_to_create
        """
        self.enforcer.ensure_can_create(entity, user, data)

        before = await self._hook("before", "create", entity, user, data=dict(data))
        if before.abort:
            return before.result

        payload = before.data if before.data is not None else data
        transformed = self.transformer.create(entity, payload, user)
        logger.debug(f"create {entity}: {transformed}")

        result = await self._run(
            self.storage.create(entity, transformed, self._write_plan(entity, user)),
            payload,
        )

        after = await self._hook("after", "create", entity, user, data=transformed, result=result)
        return after.result or result

    async def update(
        self,
        entity: str,
        user: Any,
        record_id: RecordId,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Update a record by key.

        The update filter is merged into the where-clause; a record it
        filters out is reported as 403.
        """
        update_filter = self.enforcer.update_filter(entity, user)
        payload = without(data, self.settings.AUDIT_FIELDS)

        before = await self._hook("before", "update", entity, user, id=record_id, data=dict(payload))
        if before.abort:
            return before.result

        target_id = before.id if before.id is not None else record_id
        payload = before.data if before.data is not None else payload
        where_id = build_where_id(self.schema, entity, target_id)
        transformed = self.transformer.update(entity, _id_value(where_id), payload, user)

        result = await self._run(
            self.storage.update(
                entity, merge_guard(where_id, update_filter), transformed, self._write_plan(entity, user)
            ),
            payload,
        )
        if result is None:
            raise IAMError("no_permission", {"entity": entity})

        after = await self._hook("after", "update", entity, user, id=target_id, data=transformed, result=result)
        return after.result or result

    async def upsert(
        self,
        entity: str,
        user: Any,
        data: dict[str, Any],
        unique_key: Optional[UniqueKey] = None,
    ) -> dict[str, Any]:
        """
        Create or update by a (possibly composite) unique key.

        The same input is transformed twice: once into the create shape and
        once into the update shape.
        """
        self.enforcer.ensure_can_create(entity, user, data)
        update_filter = self.enforcer.update_filter(entity, user)

        before = await self._hook(
            "before", "upsert", entity, user,
            data=dict(data), unique_key=unique_key or self._default_unique_key(entity),
        )
        if before.abort:
            return before.result

        payload = before.data if before.data is not None else data
        key = before.unique_key

        where = build_where_unique_key(key, payload)
        create_data = self.transformer.create(entity, payload, user)
        update_data = self.transformer.update(entity, _id_value(where), payload, user)

        result = await self._run(
            self.storage.upsert(
                entity,
                merge_guard(where, update_filter),
                create_data,
                update_data,
                self._write_plan(entity, user),
            ),
            payload,
        )

        after = await self._hook("after", "upsert", entity, user, data=payload, result=result)
        return after.result or result

    async def upsert_many(
        self,
        entity: str,
        user: Any,
        rows: list[dict[str, Any]],
        unique_key: Optional[UniqueKey] = None,
        validate_relation: bool = False,
        transaction: bool = True,
        timeout: Optional[float] = None,
    ) -> BatchUpsertResult:
        """
        Create or update many rows in one pass.

        One lookup classifies rows as create or update. Without relation
        validation, creates go through one duplicate-skipping bulk insert;
        with it, rows are created one by one and failures collected.
        Failed rows are reported in the result, not raised.

        Args:
            entity: Entity name
            user: Principal
            rows: Input rows
            unique_key: Field or fields identifying existing rows (primary key by default)
            validate_relation: Transform and create rows one by one
            transaction: Run the batch in one transaction
            timeout: Transaction timeout in seconds (BATCH_UPSERT_TIMEOUT by default)
        """
        if not rows:
            return BatchUpsertResult()

        update_filter = self.enforcer.update_filter(entity, user)

        before = await self._hook(
            "before", "upsert_many", entity, user,
            data=list(rows), unique_key=unique_key or self._default_unique_key(entity),
        )
        if before.abort:
            return before.result

        batch: list[dict[str, Any]] = before.data if isinstance(before.data, list) else list(rows)
        key = before.unique_key
        key_fields = [key] if isinstance(key, str) else list(key)

        async def work(tx: Storage) -> BatchUpsertResult:
            existing = await self._find_existing(tx, entity, key_fields, batch)
            result = BatchUpsertResult()

            creates: list[dict[str, Any]] = []
            updates: list[tuple[dict[str, Any], dict[str, Any]]] = []

            for row in batch:
                if _row_key(key_fields, row) in existing:
                    where = build_where_unique_key(key if isinstance(key, str) else key_fields, row)
                    updates.append((where, self.transformer.update(entity, _id_value(where), row, user)))
                elif not self.enforcer.can_create(entity, user, row):
                    result.failed.append(FailedRow(record=row, code="no_permission_to_create", message="no_permission_to_create"))
                elif validate_relation:
                    creates.append(self.transformer.create(entity, row, user))
                else:
                    creates.append(self.transformer.strip(entity, row, user))

            if creates and validate_relation:
                for record in creates:
                    try:
                        await tx.create(entity, record)
                        result.created += 1
                    except StorageFault as e:
                        result.failed.append(self._failed_row(e, record=record))
            elif creates:
                try:
                    result.created = await tx.create_many(entity, creates, skip_duplicates=True)
                except StorageFault as e:
                    result.failed.append(self._failed_row(e, records=creates))

            for where, record in updates:
                try:
                    updated = await tx.update(entity, merge_guard(where, update_filter), record)
                except StorageFault as e:
                    result.failed.append(self._failed_row(e, record=record))
                    continue
                if updated is None:
                    result.failed.append(FailedRow(record=record, code="no_permission", message="no_permission"))
                else:
                    result.updated += 1

            return result.finalize()

        if transaction:
            timeout = self.settings.BATCH_UPSERT_TIMEOUT if timeout is None else timeout
            result = await self._run(self.storage.run_in_transaction(work, timeout))
        else:
            result = await self._run(work(self.storage))

        if result.failed:
            logger.warning(f"upsert_many {entity}: {result.total_failed} failed of {len(batch)}")

        after = await self._hook("after", "upsert_many", entity, user, data=batch, result=result)
        return after.result or result

    async def delete(self, entity: str, user: Any, record_id: RecordId) -> dict[str, Any]:
        """
        Delete a record by key.

        A before hook may set soft_delete and data to turn the delete into
        an update.
        """
        delete_filter = self.enforcer.delete_filter(entity, user)

        before = await self._hook("before", "delete", entity, user, id=record_id)
        if before.abort:
            return before.result

        target_id = before.id if before.id is not None else record_id
        where = merge_guard(build_where_id(self.schema, entity, target_id), delete_filter)
        plan = QueryPlan(select=self._scalar_select(entity, user))

        if before.soft_delete and before.data:
            result = await self._run(self.storage.update(entity, where, before.data, plan), before.data)
        else:
            result = await self._run(self.storage.delete(entity, where, plan))

        if result is None:
            raise IAMError("no_permission", {"entity": entity})

        after = await self._hook(
            "after", "delete", entity, user, id=target_id, result=result, soft_delete=before.soft_delete
        )
        return after.result or result

    # -------------------------------------------------------------------------
    # Batch helpers
    # -------------------------------------------------------------------------

    def _default_unique_key(self, entity: str) -> UniqueKey:
        keys = self.schema.get_key_fields(entity)
        return keys[0] if len(keys) == 1 else list(keys)

    async def _find_existing(
        self,
        tx: Storage,
        entity: str,
        key_fields: list[str],
        rows: list[dict[str, Any]],
    ) -> set[tuple[str, ...]]:
        lookup = [row for row in rows if all(row.get(k) is not None for k in key_fields)]
        if not lookup:
            return set()

        if len(key_fields) == 1:
            name = key_fields[0]
            where: dict[str, Any] = {name: {"in": [row[name] for row in lookup]}}
        else:
            where = {"OR": [{k: row[k] for k in key_fields} for row in lookup]}

        found = await tx.find_many(entity, QueryPlan(where=where, select={k: True for k in key_fields}))
        return {_row_key(key_fields, record) for record in found}

    def _failed_row(
        self,
        error: StorageFault,
        record: Optional[dict[str, Any]] = None,
        records: Optional[list[dict[str, Any]]] = None,
    ) -> FailedRow:
        translated = self.translator.translate(error, record or {})
        code = getattr(error.code, "value", error.code)
        return FailedRow(record=record, records=records, code=str(code), message=translated.message)


def _row_key(key_fields: Sequence[str], row: dict[str, Any]) -> tuple[str, ...]:
    return tuple(str(row.get(k)) for k in key_fields)


def _id_value(where: dict[str, Any]) -> Any:
    """Record id inside a unique where ({"id": 5} -> 5, compound -> dict)."""
    return next(iter(where.values())) if where else None
