"""
Storage contract consumed by the orchestrator.

A storage adapter executes query plans and graph-operation payloads.
Records come back as plain dicts shaped by include/select/omit. Engine
failures are raised as StorageFault with a FaultCode.

update() and delete() return None when no row matches the where-clause
(including the access filter merged into it).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar, runtime_checkable

from ..core.query_types import QueryPlan

T = TypeVar("T")


@runtime_checkable
class Storage(Protocol):
    """Async data-access layer for query plans."""

    async def find_many(self, entity: str, plan: QueryPlan) -> list[dict[str, Any]]: ...

    async def find_unique(self, entity: str, plan: QueryPlan) -> Optional[dict[str, Any]]: ...

    async def count(self, entity: str, where: dict[str, Any]) -> int: ...

    async def create(
        self,
        entity: str,
        data: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> dict[str, Any]: ...

    async def update(
        self,
        entity: str,
        where: dict[str, Any],
        data: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]: ...

    async def upsert(
        self,
        entity: str,
        where: dict[str, Any],
        create: dict[str, Any],
        update: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> dict[str, Any]: ...

    async def delete(
        self,
        entity: str,
        where: dict[str, Any],
        plan: Optional[QueryPlan] = None,
    ) -> Optional[dict[str, Any]]: ...

    async def create_many(
        self,
        entity: str,
        rows: list[dict[str, Any]],
        skip_duplicates: bool = True,
    ) -> int: ...

    async def run_in_transaction(
        self,
        work: Callable[["Storage"], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T: ...
