"""Shared fixtures: a small blog schema, ACL rules, principals and a recording storage."""

from __future__ import annotations

import inspect
from typing import Any, Optional

import pytest

from crudgraph.config import Settings
from crudgraph.core.errors import StorageFault
from crudgraph.core.include import IncludeResolver
from crudgraph.core.mutations import MutationTransformer
from crudgraph.core.schema import StaticSchema
from crudgraph.core.selection import FieldSelectionCompiler
from crudgraph.iam.acl import AccessRule, AclRegistry, FunctionRule
from crudgraph.iam.enforcer import AccessEnforcer
from crudgraph.runtime.context import Principal
from crudgraph.runtime.middleware import MiddlewareRegistry
from crudgraph.runtime.orchestrator import CrudOrchestrator


# =============================================================================
# Schema
# =============================================================================


BLOG_GRAPH = {
    "entities": {
        "User": {
            "keys": ["id"],
            "fields": {
                "id": {"type": "int"},
                "name": {"type": "string"},
                "email": {"type": "string", "unique": True},
                "password": {"type": "string?"},
            },
            "relations": {
                "posts": {"target": "Post", "cardinality": "many", "references": ["authorId"]},
                "comments": {"target": "Comment", "cardinality": "many", "references": ["authorId"]},
            },
        },
        "Post": {
            "keys": ["id"],
            "fields": {
                "id": {"type": "int"},
                "title": {"type": "string"},
                "body": {"type": "string?"},
                "price": {"type": "float?"},
                "published": {"type": "bool"},
                "ownerId": {"type": "int?"},
                "authorId": {"type": "int"},
                "categoryId": {"type": "int?"},
                "createdAt": {"type": "datetime?"},
                "deletedAt": {"type": "datetime?"},
            },
            "relations": {
                "author": {"target": "User", "cardinality": "one", "ref": {"from_field": "authorId", "to_field": "id"}},
                "category": {"target": "Category", "cardinality": "one", "ref": {"from_field": "categoryId"}},
                "comments": {"target": "Comment", "cardinality": "many", "references": ["postId"]},
                "tags": {"target": "PostTag", "cardinality": "many", "references": ["postId"]},
            },
        },
        "Comment": {
            "keys": ["id"],
            "fields": {
                "id": {"type": "int"},
                "body": {"type": "string"},
                "approved": {"type": "bool?"},
                "postId": {"type": "int"},
                "authorId": {"type": "int?"},
            },
            "relations": {
                "post": {"target": "Post", "cardinality": "one", "ref": {"from_field": "postId"}},
                "author": {"target": "User", "cardinality": "one", "ref": {"from_field": "authorId"}},
            },
        },
        "Category": {
            "keys": ["id"],
            "fields": {
                "id": {"type": "int"},
                "name": {"type": "string"},
                "secret": {"type": "string?"},
            },
            "relations": {
                "posts": {"target": "Post", "cardinality": "many", "references": ["categoryId"]},
            },
        },
        "Tag": {
            "keys": ["id"],
            "fields": {
                "id": {"type": "int"},
                "name": {"type": "string"},
            },
            "relations": {
                "posts": {"target": "PostTag", "cardinality": "many", "references": ["tagId"]},
            },
        },
        "PostTag": {
            "keys": ["postId", "tagId"],
            "fields": {
                "postId": {"type": "int"},
                "tagId": {"type": "int"},
                "note": {"type": "string?"},
            },
            "relations": {
                "post": {"target": "Post", "cardinality": "one", "ref": {"from_field": "postId"}},
                "tag": {"target": "Tag", "cardinality": "one", "ref": {"from_field": "tagId"}},
            },
        },
    }
}


# =============================================================================
# ACL rules
# =============================================================================


class PostRule(AccessRule):
    """Readers see published posts; authors edit their own; guests cannot create."""

    def can_create(self, user, data=None):
        return user.has_role("author") or user.has_role("admin")

    def get_access_filter(self, user):
        if user.has_role("admin"):
            return True
        return {"published": True}

    def get_update_filter(self, user):
        if user.has_role("admin"):
            return True
        if user.has_role("author"):
            return {"authorId": user.id}
        return False

    def get_delete_filter(self, user):
        return user.has_role("admin")


class UserRule(AccessRule):
    def get_omit_fields(self, user):
        return ["password"]


class CommentRule(AccessRule):
    def get_access_filter(self, user):
        if user.has_role("admin"):
            return True
        return {"approved": True}


def category_rule() -> FunctionRule:
    return FunctionRule(
        get_access_filter=lambda user: False if user.has_role("guest") else True,
        get_omit_fields=lambda user: ["secret"],
    )


# =============================================================================
# Storage double
# =============================================================================


class RecordingStorage:
    """
    In-memory storage double.

    Every call is recorded in self.calls as (method, kwargs). Responses are
    taken from self.responses[method]: a value, or a callable receiving the
    call kwargs. Faults in self.faults[method] are raised instead.
    """

    DEFAULTS = {
        "find_many": [],
        "find_unique": None,
        "count": 0,
        "create": {},
        "update": {},
        "upsert": {},
        "delete": {},
        "create_many": 0,
    }

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, Any] = {}
        self.faults: dict[str, StorageFault] = {}

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _respond(self, method: str, **kwargs: Any) -> Any:
        self.calls.append((method, kwargs))
        if method in self.faults:
            raise self.faults[method]
        response = self.responses.get(method, self.DEFAULTS[method])
        if callable(response):
            response = response(**kwargs)
            if inspect.isawaitable(response):
                response = await response
        return response

    async def find_many(self, entity, plan):
        return await self._respond("find_many", entity=entity, plan=plan)

    async def find_unique(self, entity, plan):
        return await self._respond("find_unique", entity=entity, plan=plan)

    async def count(self, entity, where):
        return await self._respond("count", entity=entity, where=where)

    async def create(self, entity, data, plan=None):
        return await self._respond("create", entity=entity, data=data, plan=plan)

    async def update(self, entity, where, data, plan=None):
        return await self._respond("update", entity=entity, where=where, data=data, plan=plan)

    async def upsert(self, entity, where, create, update, plan=None):
        return await self._respond("upsert", entity=entity, where=where, create=create, update=update, plan=plan)

    async def delete(self, entity, where, plan=None):
        return await self._respond("delete", entity=entity, where=where, plan=plan)

    async def create_many(self, entity, rows, skip_duplicates=True):
        return await self._respond("create_many", entity=entity, rows=rows, skip_duplicates=skip_duplicates)

    async def run_in_transaction(self, work, timeout: Optional[float] = None):
        self.calls.append(("run_in_transaction", {"timeout": timeout}))
        return await work(self)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def schema():
    return StaticSchema(BLOG_GRAPH)


@pytest.fixture
def acl():
    return AclRegistry({
        "Post": PostRule(),
        "User": UserRule(),
        "Comment": CommentRule(),
        "Category": category_rule(),
    })


@pytest.fixture
def enforcer(acl):
    return AccessEnforcer(acl)


@pytest.fixture
def resolver(schema, enforcer):
    return IncludeResolver(schema, enforcer)


@pytest.fixture
def compiler(schema, enforcer, resolver):
    return FieldSelectionCompiler(schema, enforcer, resolver, max_limit=500)


@pytest.fixture
def transformer(schema, enforcer):
    return MutationTransformer(schema, enforcer)


@pytest.fixture
def admin():
    return Principal(id=1, role="admin")


@pytest.fixture
def author():
    return Principal(id=42, role="author")


@pytest.fixture
def reader():
    return Principal(id=7, role="reader")


@pytest.fixture
def guest():
    return Principal(id=None, role="guest")


@pytest.fixture
def settings():
    return Settings(ENV="test", DEFAULT_LIMIT=25, API_RESULT_LIMIT=500, BATCH_UPSERT_TIMEOUT=30.0)


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def middleware():
    return MiddlewareRegistry()


@pytest.fixture
def crud(schema, storage, acl, middleware, settings):
    return CrudOrchestrator(schema, storage, acl=acl, middleware=middleware, settings=settings)
