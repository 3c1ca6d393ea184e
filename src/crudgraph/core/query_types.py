"""
Pydantic models for query plans and operation results.

These define the plan handed to storage and the structured results the
orchestrator returns.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Query plan ---

class QueryPlan(BaseModel):
    """
    Complete description of one read handed to storage.

    Example:
        QueryPlan(where={"price": {"gt": 50}}, order_by={"price": "desc"}, take=10, skip=5)

    include and select are never set together.
    """
    model_config = ConfigDict(populate_by_name=True)

    where: dict[str, Any] = Field(default_factory=dict)
    include: Optional[dict[str, Any]] = None
    select: Optional[dict[str, Any]] = None
    omit: Optional[dict[str, bool]] = None
    order_by: Optional[dict[str, Any]] = Field(default=None, alias="orderBy")
    take: Optional[int] = None
    skip: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Plan as a dict with camelCase keys and unset parts left out."""
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Results ---

class ListMeta(BaseModel):
    """Pagination metadata of a list result."""
    take: int
    skip: int
    total: Optional[int] = None


class ListResult(BaseModel):
    """Page of records plus the total they were drawn from."""
    data: list[dict[str, Any]] = Field(default_factory=list)
    meta: ListMeta

    def envelope(self) -> dict[str, Any]:
        """
        Response envelope: {data, meta: {total?, count, limit, offset, hasMore?}}.

        total and hasMore are only present when a count was computed.
        """
        meta: dict[str, Any] = {
            "count": len(self.data),
            "limit": self.meta.take,
            "offset": self.meta.skip,
        }
        if self.meta.total is not None:
            meta["total"] = self.meta.total
            meta["hasMore"] = self.meta.skip + len(self.data) < self.meta.total
        return {"data": self.data, "meta": meta}


class FailedRow(BaseModel):
    """One failed row (or bulk statement) of a batch upsert."""
    record: Optional[dict[str, Any]] = None
    records: Optional[list[dict[str, Any]]] = None
    code: Optional[str] = None
    message: str


class BatchUpsertResult(BaseModel):
    """
    Result of a batch upsert.

    Partial failure is a normal outcome: failed rows are listed, not raised.
    """
    model_config = ConfigDict(populate_by_name=True)

    created: int = 0
    updated: int = 0
    failed: list[FailedRow] = Field(default_factory=list)
    total_success: int = Field(default=0, alias="totalSuccess")
    total_failed: int = Field(default=0, alias="totalFailed")

    def finalize(self) -> "BatchUpsertResult":
        self.total_success = self.created + self.updated
        self.total_failed = len(self.failed)
        return self

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
