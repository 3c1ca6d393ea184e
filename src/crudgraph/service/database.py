"""
Database utilities for crudgraph services.

Provides:
- AsyncSession configuration
- Base model class
- Session dependency for FastAPI
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..config import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# Engine and session factory (initialized lazily)
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Create an async engine from settings."""
    settings = settings or get_settings()
    return create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create async engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = create_session_maker(get_engine())
    return _async_session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields database session."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session


async def init_db(engine: Optional[AsyncEngine] = None, base: type[DeclarativeBase] = Base) -> None:
    """Initialize database (create tables)."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
