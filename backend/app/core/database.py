"""
Database layer — async SQLAlchemy 2.0 engine and session plumbing.

Provides:
    • Lazily created async engine and session factory
    • Dependency injection for FastAPI routes
    • Base model for ORM entities (see alerts/repository.py)

The engine is built on first use rather than at import so that modules
which only need the ORM metadata (tests on sqlite+aiosqlite, tooling)
do not require the production driver to be installed.

Usage:
    from backend.app.core.database import get_session_factory

    session_factory = get_session_factory()
    async with session_factory() as session:
        ...
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the process-wide async engine from settings."""
    logger.info("Creating database engine for %s", settings.DATABASE_URL.split("@")[-1])
    return create_async_engine(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


# ── Session Factory ──
@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Dependency ──
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields an async database session."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Lifecycle ──
async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the ORM tables on Base.metadata
    from backend.app.alerts import repository  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def ping_db(engine: AsyncEngine | None = None) -> None:
    """Round-trip a trivial query; raises on connectivity failure."""
    engine = engine or get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose engine connections."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        logger.info("Database connections closed")
