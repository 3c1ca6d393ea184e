"""Tests for the CRUD orchestrator against a recording storage."""

import pytest

from crudgraph.core.error_map import FaultCode
from crudgraph.core.errors import IAMError, NotFoundError, StorageError, StorageFault, ValidationError
from crudgraph.core.query_types import ListMeta, ListResult
from crudgraph.iam.acl import AclRegistry, FunctionRule
from crudgraph.runtime.orchestrator import (
    CrudOrchestrator,
    build_where_id,
    build_where_unique_key,
    coerce_key_value,
    keys_match,
)


# =============================================================================
# Key helpers
# =============================================================================


class TestKeyHelpers:
    def test_simple_key(self, schema):
        assert build_where_id(schema, "Post", 5) == {"id": 5}
        assert build_where_id(schema, "Post", "5") == {"id": 5}

    def test_invalid_simple_key(self, schema):
        with pytest.raises(ValidationError) as exc:
            build_where_id(schema, "Post", "five")
        assert exc.value.code == "invalid_id"

    def test_composite_key_from_string(self, schema):
        assert build_where_id(schema, "PostTag", "1~3") == {"postId_tagId": {"postId": 1, "tagId": 3}}

    def test_composite_key_from_dict(self, schema):
        assert build_where_id(schema, "PostTag", {"postId": 1, "tagId": 3}) == {
            "postId_tagId": {"postId": 1, "tagId": 3}
        }

    def test_composite_key_wrong_arity(self, schema):
        with pytest.raises(ValidationError) as exc:
            build_where_id(schema, "PostTag", "1~2~3")
        assert exc.value.code == "invalid_composite_key"

    def test_composite_key_format(self, schema):
        with pytest.raises(ValidationError) as exc:
            build_where_id(schema, "PostTag", "13")
        assert exc.value.code == "invalid_composite_key_format"

    def test_unique_key(self):
        assert build_where_unique_key("email", {"email": "a@b.c", "name": "A"}) == {"email": "a@b.c"}
        assert build_where_unique_key(["postId", "tagId"], {"postId": 1, "tagId": 2}) == {
            "postId_tagId": {"postId": 1, "tagId": 2}
        }

    def test_coerce_key_value(self):
        assert coerce_key_value("float", "2.5") == 2.5
        assert coerce_key_value("bool", "true") is True
        assert coerce_key_value("string", "abc") == "abc"

    def test_keys_match(self):
        assert keys_match(["id"], {"id": 1}, {"id": "1"})
        assert not keys_match(["id"], None, {"id": 1})
        assert not keys_match(["id"], {"id": 1}, {"id": 2})


# =============================================================================
# Reads
# =============================================================================


class TestGetMany:
    @pytest.mark.asyncio
    async def test_plan_combines_filter_guard_sort_and_page(self, crud, storage, reader):
        await crud.get_many(
            "Post", reader, q="price=gt:50,ownerId=42", limit=10, offset=5, sort_by="price", sort_order="desc"
        )
        plan = storage.calls_to("find_many")[0]["plan"]
        assert plan.to_dict() == {
            "where": {"price": {"gt": 50}, "ownerId": {"equals": 42}, "published": True},
            "orderBy": {"price": "desc"},
            "take": 10,
            "skip": 5,
        }

    @pytest.mark.asyncio
    async def test_owner_filter_with_include(self, schema, storage, settings, author):
        acl = AclRegistry({
            "Post": FunctionRule(get_access_filter=lambda user: {"ownerId": user.id}),
            "Category": FunctionRule(get_omit_fields=lambda user: ["secret"]),
        })
        crud = CrudOrchestrator(schema, storage, acl=acl, settings=settings)

        await crud.get_many("Post", author, q="price=gt:50", include="category")

        plan = storage.calls_to("find_many")[0]["plan"]
        assert plan.where == {"price": {"gt": 50}, "ownerId": 42}
        assert plan.include == {"category": {"omit": {"secret": True}}}
        assert storage.calls_to("count")[0]["where"] == {"price": {"gt": 50}, "ownerId": 42}

    @pytest.mark.asyncio
    async def test_data_and_count_share_a_transaction(self, crud, storage, reader):
        storage.responses["find_many"] = [{"id": 1}]
        storage.responses["count"] = 30
        result = await crud.get_many("Post", reader, limit=10, offset=5)

        assert [name for name, _ in storage.calls] == ["run_in_transaction", "find_many", "count"]
        assert storage.calls_to("count")[0]["where"] == {"published": True}
        assert result.envelope() == {
            "data": [{"id": 1}],
            "meta": {"count": 1, "limit": 10, "offset": 5, "total": 30, "hasMore": True},
        }

    @pytest.mark.asyncio
    async def test_defaults(self, crud, storage, admin):
        result = await crud.get_many("Post", admin)
        plan = storage.calls_to("find_many")[0]["plan"]
        assert (plan.take, plan.skip, plan.order_by) == (25, 0, {"id": "asc"})
        assert result.meta.total == 0

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, crud, storage, admin):
        await crud.get_many("Post", admin, limit=10_000)
        assert storage.calls_to("find_many")[0]["plan"].take == 500

    @pytest.mark.asyncio
    async def test_invalid_limit(self, crud, storage, admin):
        with pytest.raises(ValidationError) as exc:
            await crud.get_many("Post", admin, limit=0)
        assert exc.value.code == "invalid_limit"
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_invalid_sort_field(self, crud, admin):
        with pytest.raises(ValidationError) as exc:
            await crud.get_many("Post", admin, sort_by="colour")
        assert exc.value.code == "invalid_sort_field"

    @pytest.mark.asyncio
    async def test_denied_entity(self, crud, guest):
        with pytest.raises(IAMError):
            await crud.get_many("Category", guest)

    @pytest.mark.asyncio
    async def test_include_and_fields(self, crud, storage, reader):
        await crud.get_many("Post", reader, include="comments", fields="id,comments.body")
        plan = storage.calls_to("find_many")[0]["plan"]
        assert plan.include is None
        assert plan.select == {
            "id": True,
            "comments": {"select": {"body": True}, "where": {"approved": True}},
        }

    @pytest.mark.asyncio
    async def test_before_hook_rewrites_query(self, crud, storage, middleware, admin):
        def only_drafts(ctx):
            ctx.query = "published=false"

        middleware.register("before", "get_many", only_drafts, entity="Post")
        await crud.get_many("Post", admin, q="published=true")
        assert storage.calls_to("find_many")[0]["plan"].where == {"published": False}

    @pytest.mark.asyncio
    async def test_before_hook_abort(self, crud, storage, middleware, admin):
        cached = ListResult(data=[{"id": 9}], meta=ListMeta(take=1, skip=0, total=1))

        def serve_cached(ctx):
            ctx.abort = True
            ctx.result = cached

        middleware.register("before", "get_many", serve_cached)
        assert await crud.get_many("Post", admin) is cached
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_storage_fault_is_translated(self, crud, storage, admin):
        storage.faults["find_many"] = StorageFault(FaultCode.CONNECTION_FAILED, "refused")
        with pytest.raises(StorageError) as exc:
            await crud.get_many("Post", admin)
        assert exc.value.status_code == 500
        assert exc.value.message == "Connection to the database could not be established"


class TestGet:
    @pytest.mark.asyncio
    async def test_found(self, crud, storage, reader):
        storage.responses["find_unique"] = {"id": 1, "title": "Hi"}
        assert await crud.get("Post", reader, "1") == {"id": 1, "title": "Hi"}

        plan, probe = (call["plan"] for call in storage.calls_to("find_unique"))
        assert plan.where == {"id": 1}
        assert probe.where == {"id": 1, "published": True}
        assert probe.select == {"id": True}

    @pytest.mark.asyncio
    async def test_missing_record_is_404(self, crud, reader):
        with pytest.raises(NotFoundError) as exc:
            await crud.get("Post", reader, 1)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_filtered_record_is_403(self, crud, storage, reader):
        def respond(entity, plan):
            # the key-only probe carries the access filter
            return None if plan.select == {"id": True} else {"id": 1, "title": "Draft"}

        storage.responses["find_unique"] = respond
        with pytest.raises(IAMError) as exc:
            await crud.get("Post", reader, 1)
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_composite_key(self, crud, storage, admin):
        storage.responses["find_unique"] = {"postId": 1, "tagId": 3}
        await crud.get("PostTag", admin, "1~3")
        assert storage.calls_to("find_unique")[0]["plan"].where == {"postId_tagId": {"postId": 1, "tagId": 3}}

    @pytest.mark.asyncio
    async def test_omit_applies(self, crud, storage, reader):
        storage.responses["find_unique"] = {"id": 1}
        await crud.get("User", reader, 1)
        assert storage.calls_to("find_unique")[0]["plan"].omit == {"password": True}

    @pytest.mark.asyncio
    async def test_after_hook_replaces_result(self, crud, storage, middleware, admin):
        storage.responses["find_unique"] = {"id": 1, "title": "Hi"}

        def decorate(ctx):
            ctx.result = {**ctx.result, "decorated": True}

        middleware.register("after", "get", decorate)
        assert await crud.get("Post", admin, 1) == {"id": 1, "title": "Hi", "decorated": True}


class TestCount:
    @pytest.mark.asyncio
    async def test_count_with_guard(self, crud, storage, reader):
        storage.responses["count"] = 3
        assert await crud.count("Post", reader, "price=gt:5") == 3
        assert storage.calls_to("count")[0]["where"] == {"price": {"gt": 5}, "published": True}


# =============================================================================
# Writes
# =============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_permission_gate(self, crud, storage, reader):
        with pytest.raises(IAMError) as exc:
            await crud.create("Post", reader, {"title": "Hi"})
        assert exc.value.code == "no_permission_to_create"
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_payload_is_transformed(self, crud, storage, author):
        storage.responses["create"] = {"id": 1, "title": "Hi"}
        result = await crud.create("Post", author, {"title": "Hi", "authorId": 42})

        call = storage.calls_to("create")[0]
        assert call["data"] == {"title": "Hi", "author": {"connect": {"id": 42}}}
        assert set(call["plan"].include) == {"author", "category", "comments", "tags"}
        assert result == {"id": 1, "title": "Hi"}

    @pytest.mark.asyncio
    async def test_before_hook_edits_data(self, crud, storage, middleware, author):
        def draft(ctx):
            ctx.data["published"] = False

        middleware.register("before", "create", draft, entity="Post")
        await crud.create("Post", author, {"title": "Hi"})
        assert storage.calls_to("create")[0]["data"] == {"title": "Hi", "published": False}

    @pytest.mark.asyncio
    async def test_before_hook_abort(self, crud, storage, middleware, author):
        def reject(ctx):
            ctx.abort = True
            ctx.result = {"id": 99}

        middleware.register("before", "create", reject)
        assert await crud.create("Post", author, {"title": "Hi"}) == {"id": 99}
        assert storage.calls_to("create") == []

    @pytest.mark.asyncio
    async def test_duplicate_is_409(self, crud, storage, author):
        storage.faults["create"] = StorageFault(
            FaultCode.UNIQUE_VIOLATION, meta={"target": "title", "entity": "Post"}
        )
        with pytest.raises(StorageError) as exc:
            await crud.create("Post", author, {"title": "Hi"})
        assert exc.value.status_code == 409
        assert exc.value.message == "Duplicate entry for Post. Record with title: 'Hi' already exists"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_filter_is_merged(self, crud, storage, author):
        storage.responses["update"] = {"id": 1, "title": "x"}
        await crud.update("Post", author, 1, {"title": "x", "updatedAt": "now"})

        call = storage.calls_to("update")[0]
        assert call["where"] == {"id": 1, "authorId": 42}
        assert call["data"] == {"title": "x"}

    @pytest.mark.asyncio
    async def test_primary_key_is_not_sent(self, crud, storage, admin):
        storage.responses["update"] = {"id": 1, "title": "t"}
        await crud.update("Post", admin, 1, {"id": 2, "title": "t"})
        call = storage.calls_to("update")[0]
        assert call["where"] == {"id": 1}
        assert call["data"] == {"title": "t"}

    @pytest.mark.asyncio
    async def test_filtered_out_record_is_403(self, crud, storage, author):
        storage.responses["update"] = None
        with pytest.raises(IAMError) as exc:
            await crud.update("Post", author, 1, {"title": "x"})
        assert exc.value.code == "no_permission"

    @pytest.mark.asyncio
    async def test_denied(self, crud, storage, reader):
        with pytest.raises(IAMError) as exc:
            await crud.update("Post", reader, 1, {"title": "x"})
        assert exc.value.code == "no_permission_to_update"
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_missing_record_fault(self, crud, storage, admin):
        storage.faults["update"] = StorageFault(FaultCode.RECORD_NOT_FOUND)
        with pytest.raises(StorageError) as exc:
            await crud.update("Post", admin, 1, {"title": "x"})
        assert exc.value.status_code == 404


class TestUpsert:
    @pytest.mark.asyncio
    async def test_primary_key_by_default(self, crud, storage, author):
        await crud.upsert("Post", author, {"id": 3, "title": "x"})
        call = storage.calls_to("upsert")[0]
        assert call["where"] == {"id": 3, "authorId": 42}
        assert call["create"] == {"id": 3, "title": "x"}
        assert call["update"] == {"title": "x"}

    @pytest.mark.asyncio
    async def test_unique_key(self, crud, storage, admin):
        await crud.upsert("User", admin, {"email": "a@b.c", "name": "A"}, unique_key="email")
        assert storage.calls_to("upsert")[0]["where"] == {"email": "a@b.c"}

    @pytest.mark.asyncio
    async def test_composite_unique_key(self, crud, storage, admin):
        await crud.upsert("PostTag", admin, {"postId": 1, "tagId": 2, "note": "n"})
        assert storage.calls_to("upsert")[0]["where"] == {"postId_tagId": {"postId": 1, "tagId": 2}}

    @pytest.mark.asyncio
    async def test_needs_create_permission(self, crud, reader):
        with pytest.raises(IAMError) as exc:
            await crud.upsert("Post", reader, {"id": 3, "title": "x"})
        assert exc.value.code == "no_permission_to_create"


class TestUpsertMany:
    @pytest.mark.asyncio
    async def test_rows_are_split_into_creates_and_updates(self, crud, storage, admin):
        storage.responses["find_many"] = [{"id": 1}]
        storage.responses["create_many"] = lambda entity, rows, skip_duplicates: len(rows)
        storage.responses["update"] = {"id": 1}

        result = await crud.upsert_many("Post", admin, [
            {"id": 1, "title": "a"},
            {"id": 2, "title": "b"},
            {"title": "c"},
        ])

        assert storage.calls_to("run_in_transaction") == [{"timeout": 30.0}]
        assert storage.calls_to("find_many")[0]["plan"].where == {"id": {"in": [1, 2]}}
        assert storage.calls_to("create_many")[0]["rows"] == [{"id": 2, "title": "b"}, {"title": "c"}]
        assert storage.calls_to("update")[0]["where"] == {"id": 1}
        assert result.to_dict() == {
            "created": 2,
            "updated": 1,
            "failed": [],
            "totalSuccess": 3,
            "totalFailed": 0,
        }

    @pytest.mark.asyncio
    async def test_empty_batch(self, crud, storage, admin):
        result = await crud.upsert_many("Post", admin, [])
        assert result.total_success == 0
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_bulk_rows_are_stripped(self, crud, storage, admin):
        await crud.upsert_many("User", admin, [{"name": "A", "password": "p", "createdAt": "x"}])
        assert storage.calls_to("create_many")[0]["rows"] == [{"name": "A"}]

    @pytest.mark.asyncio
    async def test_validate_relation_collects_failures(self, crud, storage, admin):
        storage.faults["create"] = StorageFault(FaultCode.FOREIGN_KEY_VIOLATION)
        result = await crud.upsert_many(
            "Post", admin, [{"title": "a", "categoryId": 99}], validate_relation=True
        )

        assert storage.calls_to("create")[0]["data"] == {"title": "a", "category": {"connect": {"id": 99}}}
        assert result.created == 0
        assert result.total_failed == 1
        assert result.failed[0].code == "foreign_key_violation"
        assert result.failed[0].message == "Foreign key constraint failed"

    @pytest.mark.asyncio
    async def test_filtered_update_is_reported(self, crud, storage, author):
        storage.responses["find_many"] = [{"id": 1}]
        storage.responses["update"] = None
        result = await crud.upsert_many("Post", author, [{"id": 1, "title": "a"}])

        assert storage.calls_to("update")[0]["where"] == {"id": 1, "authorId": 42}
        assert result.updated == 0
        assert result.failed[0].code == "no_permission"

    @pytest.mark.asyncio
    async def test_bulk_fault_is_reported(self, crud, storage, admin):
        storage.faults["create_many"] = StorageFault(FaultCode.NULL_VIOLATION)
        result = await crud.upsert_many("Post", admin, [{"title": "a"}])
        assert result.failed[0].records == [{"title": "a"}]
        assert result.failed[0].code == "null_violation"

    @pytest.mark.asyncio
    async def test_without_transaction(self, crud, storage, admin):
        await crud.upsert_many("Post", admin, [{"title": "a"}], transaction=False)
        assert storage.calls_to("run_in_transaction") == []
        assert len(storage.calls_to("create_many")) == 1

    @pytest.mark.asyncio
    async def test_denied(self, crud, reader):
        with pytest.raises(IAMError) as exc:
            await crud.upsert_many("Post", reader, [{"title": "a"}])
        assert exc.value.code == "no_permission_to_update"


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, crud, storage, admin):
        storage.responses["delete"] = {"id": 1}
        assert await crud.delete("Post", admin, 1) == {"id": 1}

        call = storage.calls_to("delete")[0]
        assert call["where"] == {"id": 1}
        assert call["plan"].select["title"] is True

    @pytest.mark.asyncio
    async def test_denied(self, crud, storage, author):
        with pytest.raises(IAMError) as exc:
            await crud.delete("Post", author, 1)
        assert exc.value.code == "no_permission_to_delete"
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_nothing_deleted_is_403(self, crud, storage, admin):
        storage.responses["delete"] = None
        with pytest.raises(IAMError):
            await crud.delete("Post", admin, 1)

    @pytest.mark.asyncio
    async def test_soft_delete(self, crud, storage, middleware, admin):
        seen = {}

        def soft_delete(ctx):
            ctx.soft_delete = True
            ctx.data = {"deletedAt": "2024-01-01T00:00:00"}

        def remember(ctx):
            seen["soft_delete"] = ctx.soft_delete

        middleware.register("before", "delete", soft_delete, entity="Post")
        middleware.register("after", "delete", remember, entity="Post")
        storage.responses["update"] = {"id": 1}

        await crud.delete("Post", admin, 1)

        assert storage.calls_to("delete") == []
        call = storage.calls_to("update")[0]
        assert call["where"] == {"id": 1}
        assert call["data"] == {"deletedAt": "2024-01-01T00:00:00"}
        assert seen == {"soft_delete": True}
