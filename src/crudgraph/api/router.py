"""
FastAPI router for crudgraph.

REST-style endpoints, one set per entity:
- GET    /{entity}            - List records ({data, meta} envelope)
- GET    /{entity}/count      - Count records
- GET    /{entity}/{id}       - Fetch one record
- POST   /{entity}            - Create record
- PATCH  /{entity}/{id}       - Update record (partial)
- PUT    /{entity}            - Upsert by unique key
- POST   /{entity}/batch      - Batch upsert
- DELETE /{entity}/{id}       - Delete record

Composite ids are passed as "a~b" in the path.

List query parameters:
    ?q=price=gt:50,name=%phone%
    &include=author,comments.author
    &fields=id,title,author.name
    &limit=10&offset=5&sortBy=price&sortOrder=desc

Errors are rendered as {"status_code": ..., "message": ...}.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from ..core.errors import NotFoundError, RequestError
from ..runtime.context import Principal
from ..runtime.orchestrator import CrudOrchestrator

logger = logging.getLogger(__name__)


async def get_principal(request: Request) -> Principal:
    """
    Get the authenticated principal from request headers.

    Reads X-User-Id and X-User-Role (comma-separated roles). A request
    without headers is anonymous. Production apps pass their own
    dependency (JWT, session) to create_crud_router.
    """
    user_id = request.headers.get("x-user-id")
    roles = [r.strip() for r in request.headers.get("x-user-role", "").split(",") if r.strip()]
    return Principal(
        id=int(user_id) if user_id and user_id.isdigit() else user_id,
        role=roles[0] if roles else None,
        roles=roles,
    )


def create_crud_router(
    orchestrator: CrudOrchestrator,
    get_user: Callable[..., Any] = get_principal,
) -> APIRouter:
    """
    Build the CRUD router over every entity of the orchestrator's schema.

    Args:
        orchestrator: CrudOrchestrator to dispatch to
        get_user: FastAPI dependency returning the caller's principal

    Returns:
        APIRouter (install_error_handlers() renders its errors)
    """
    router = APIRouter()
    crud = orchestrator

    def entity_name(entity: str) -> str:
        if entity not in crud.schema.entity_names():
            raise NotFoundError("entity_not_found", {"entity": entity})
        return entity

    @router.get("/{entity}")
    async def list_records(
        entity: str = Depends(entity_name),
        q: Optional[str] = Query(None),
        include: Optional[str] = Query(None),
        fields: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        offset: Optional[str] = Query(None),
        sort_by: Optional[str] = Query(None, alias="sortBy"),
        sort_order: str = Query("asc", alias="sortOrder"),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        result = await crud.get_many(
            entity,
            user,
            q=q,
            include=include,
            limit=_as_int(limit),
            offset=_as_int(offset) or 0,
            sort_by=sort_by,
            sort_order=sort_order,
            fields=fields,
        )
        return result.envelope()

    @router.get("/{entity}/count")
    async def count_records(
        entity: str = Depends(entity_name),
        q: Optional[str] = Query(None),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return {"count": await crud.count(entity, user, q)}

    @router.get("/{entity}/{record_id}")
    async def get_record(
        record_id: str,
        entity: str = Depends(entity_name),
        include: Optional[str] = Query(None),
        fields: Optional[str] = Query(None),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return await crud.get(entity, user, record_id, include=include, fields=fields)

    @router.post("/{entity}", status_code=201)
    async def create_record(
        entity: str = Depends(entity_name),
        data: dict[str, Any] = Body(...),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return await crud.create(entity, user, data)

    @router.post("/{entity}/batch")
    async def batch_upsert(
        entity: str = Depends(entity_name),
        rows: list[dict[str, Any]] = Body(...),
        unique_key: Optional[str] = Query(None, alias="uniqueKey"),
        validate_relation: bool = Query(False, alias="validateRelation"),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        result = await crud.upsert_many(
            entity,
            user,
            rows,
            unique_key=_unique_key(unique_key),
            validate_relation=validate_relation,
        )
        return result.to_dict()

    @router.put("/{entity}")
    async def upsert_record(
        entity: str = Depends(entity_name),
        data: dict[str, Any] = Body(...),
        unique_key: Optional[str] = Query(None, alias="uniqueKey"),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return await crud.upsert(entity, user, data, unique_key=_unique_key(unique_key))

    @router.patch("/{entity}/{record_id}")
    async def update_record(
        record_id: str,
        entity: str = Depends(entity_name),
        data: dict[str, Any] = Body(...),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return await crud.update(entity, user, record_id, data)

    @router.delete("/{entity}/{record_id}")
    async def delete_record(
        record_id: str,
        entity: str = Depends(entity_name),
        user: Any = Depends(get_user),
    ) -> dict[str, Any]:
        return await crud.delete(entity, user, record_id)

    return router


def install_error_handlers(app: FastAPI, orchestrator: CrudOrchestrator) -> None:
    """Render crudgraph errors (and unexpected ones) as {status_code, message}."""
    translator = orchestrator.translator

    @app.exception_handler(RequestError)
    async def request_error_handler(request: Request, exc: RequestError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        status_code, message = translator.to_response(exc)
        return JSONResponse(status_code=status_code, content={"status_code": status_code, "message": message})


def _as_int(value: Optional[str]) -> Any:
    """Numeric strings become ints; anything else is passed on for validation."""
    if value is None:
        return None
    stripped = value.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return value


def _unique_key(value: Optional[str]) -> Any:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts[0] if len(parts) == 1 else parts
