"""
App factory for crudgraph services.

Builds a FastAPI application around one CrudOrchestrator:
- CRUD router over every schema entity
- Error handlers rendering {status_code, message}
- CORS middleware and a /health endpoint
- Optional table creation on startup

Usage:
    crud = CrudOrchestrator(SQLAlchemySchema(models), SQLAlchemyStorage(get_session_maker(), models))
    app = create_service_app(crud, "catalog", prefix="/api", init_database=True)
"""

from __future__ import annotations

import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..api.router import create_crud_router, get_principal, install_error_handlers
from ..runtime.orchestrator import CrudOrchestrator
from .database import close_db, init_db

logger = logging.getLogger(__name__)


class HealthcheckLogFilter(logging.Filter):
    """Drop access-log lines for the health endpoint."""

    FILTERED_PATHS = ("/health",)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(f'"{path}' in message or f" {path} " in message for path in self.FILTERED_PATHS)


async def _call(hook: Optional[Callable[[], Any]]) -> None:
    if hook is None:
        return
    result = hook()
    if inspect.isawaitable(result):
        await result


def create_service_app(
    orchestrator: CrudOrchestrator,
    service_name: str = "crudgraph",
    *,
    get_user: Callable[..., Any] = get_principal,
    prefix: str = "",
    on_startup: Optional[Callable[[], Any]] = None,
    on_shutdown: Optional[Callable[[], Any]] = None,
    init_database: bool = False,
) -> FastAPI:
    """
    Create a FastAPI app serving the orchestrator's entities.

    Args:
        orchestrator: CrudOrchestrator backing the routes
        service_name: Service name (app title and health payload)
        get_user: FastAPI dependency returning the caller's principal
        prefix: Router prefix (e.g. "/api")
        on_startup: Extra startup hook (sync or async)
        on_shutdown: Extra shutdown hook (sync or async)
        init_database: Create tables on startup and dispose the engine on shutdown

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.getLogger("uvicorn.access").addFilter(HealthcheckLogFilter())
        if init_database:
            await init_db()
        await _call(on_startup)
        logger.info(f"{service_name} serving {len(orchestrator.schema.entity_names())} entities")

        yield

        await _call(on_shutdown)
        if init_database:
            await close_db()

    app = FastAPI(
        title=f"{service_name.replace('_', ' ').title()} Service",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": service_name}

    app.include_router(create_crud_router(orchestrator, get_user), prefix=prefix)
    install_error_handlers(app, orchestrator)
    return app
