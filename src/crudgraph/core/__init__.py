"""
Core module - entity definitions, schema, filters, errors and query types.

The query compilers (include, selection, mutations) depend on iam and are
imported from their modules directly.
"""

from __future__ import annotations

from .defs import EntityDef, FieldDef, RelationDef
from .error_map import FAULT_MAP, ErrorTranslator, FaultCode, FaultInfo
from .errors import (
    ConflictError,
    CrudGraphError,
    GraphConfigError,
    IAMError,
    MiddlewareError,
    NotFoundError,
    RequestError,
    StorageError,
    StorageFault,
    ValidationError,
)
from .filters import FilterParser
from .query_types import BatchUpsertResult, FailedRow, ListMeta, ListResult, QueryPlan
from .schema import BaseSchema, SchemaProvider, StaticSchema, load_graph

__all__ = [
    # Definitions
    "FieldDef",
    "RelationDef",
    "EntityDef",
    # Schema
    "SchemaProvider",
    "BaseSchema",
    "StaticSchema",
    "load_graph",
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
    # Error translation
    "FaultCode",
    "FaultInfo",
    "FAULT_MAP",
    "ErrorTranslator",
    # Filters
    "FilterParser",
    # Query types
    "QueryPlan",
    "ListMeta",
    "ListResult",
    "FailedRow",
    "BatchUpsertResult",
]
