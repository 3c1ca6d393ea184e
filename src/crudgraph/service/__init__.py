"""
Service module - SQLAlchemy storage and FastAPI app utilities.

Provides:
- SQLAlchemyStorage: Storage adapter over an async session maker
- SQLAlchemySchema: Schema introspected from declarative models
- create_service_app: Factory for FastAPI apps
- Database utilities (Base, get_session, init_db)
"""

from __future__ import annotations

from .app import create_service_app
from .database import Base, close_db, get_engine, get_session, get_session_maker, init_db
from .schema import SQLAlchemySchema
from .storage import SessionStorage, SQLAlchemyStorage

__all__ = [
    # App factory
    "create_service_app",
    # Database
    "Base",
    "get_session",
    "get_session_maker",
    "init_db",
    "close_db",
    "get_engine",
    # Storage
    "SQLAlchemySchema",
    "SQLAlchemyStorage",
    "SessionStorage",
]
