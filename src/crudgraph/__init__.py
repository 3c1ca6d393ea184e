"""
crudgraph - query translation and authorization for CRUD APIs.

Turns compact client requests (filter strings, include lists, field
selections, nested mutation payloads) into storage query plans, with
per-role access rules applied at every level.

Usage:
    from crudgraph import AclRegistry, CrudOrchestrator, SQLAlchemySchema, SQLAlchemyStorage

    schema = SQLAlchemySchema([User, Post])
    storage = SQLAlchemyStorage(get_session_maker(), [User, Post])
    crud = CrudOrchestrator(schema, storage, acl=AclRegistry({"Post": PostRules()}))

    page = await crud.get_many("Post", user, q="price=gt:50", include="author")
"""

from __future__ import annotations

from .api import create_crud_router, get_principal, install_error_handlers
from .config import Settings, get_settings
from .core import (
    BaseSchema,
    BatchUpsertResult,
    ConflictError,
    CrudGraphError,
    EntityDef,
    ErrorTranslator,
    FaultCode,
    FieldDef,
    FilterParser,
    GraphConfigError,
    IAMError,
    ListResult,
    MiddlewareError,
    NotFoundError,
    QueryPlan,
    RelationDef,
    RequestError,
    StaticSchema,
    StorageError,
    StorageFault,
    ValidationError,
    load_graph,
)
from .core.include import IncludeResolver
from .core.mutations import MutationTransformer
from .core.selection import FieldSelectionCompiler
from .iam import AccessEnforcer, AccessRule, AclRegistry, FunctionRule
from .runtime import SYSTEM, HookContext, MiddlewareRegistry, Principal, Storage
from .runtime.orchestrator import CrudOrchestrator
from .service import SQLAlchemySchema, SQLAlchemyStorage, create_service_app

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "CrudOrchestrator",
    "MiddlewareRegistry",
    "HookContext",
    "Storage",
    # Schema
    "FieldDef",
    "RelationDef",
    "EntityDef",
    "BaseSchema",
    "StaticSchema",
    "load_graph",
    # Compilers
    "FilterParser",
    "IncludeResolver",
    "FieldSelectionCompiler",
    "MutationTransformer",
    "QueryPlan",
    "ListResult",
    "BatchUpsertResult",
    # IAM
    "AccessRule",
    "FunctionRule",
    "AclRegistry",
    "AccessEnforcer",
    "Principal",
    "SYSTEM",
    # Errors
    "CrudGraphError",
    "RequestError",
    "ValidationError",
    "IAMError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "StorageFault",
    "GraphConfigError",
    "MiddlewareError",
    "FaultCode",
    "ErrorTranslator",
    # SQLAlchemy / FastAPI
    "SQLAlchemySchema",
    "SQLAlchemyStorage",
    "create_service_app",
    "create_crud_router",
    "install_error_handlers",
    "get_principal",
    # Config
    "Settings",
    "get_settings",
]
