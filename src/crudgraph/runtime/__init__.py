"""
Runtime module - principals, middleware and the storage contract.

CrudOrchestrator lives in runtime.orchestrator.
"""

from __future__ import annotations

from .context import SYSTEM, Principal, SystemPrincipal, is_system
from .middleware import HookContext, MiddlewareRegistry
from .storage import Storage

__all__ = [
    "Principal",
    "SystemPrincipal",
    "SYSTEM",
    "is_system",
    "HookContext",
    "MiddlewareRegistry",
    "Storage",
]
