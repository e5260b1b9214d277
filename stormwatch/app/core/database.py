"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Engine and session factory builders (no import-time globals)
    • Base model for ORM entities
    • Table creation for dev/test

The engine and session factory are handed explicitly to the store so
tests can swap in an in-memory SQLite database.

Usage:
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    store = ImpactStore(session_factory)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from stormwatch.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def build_engine(url: Optional[str] = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine; pool settings only apply to server databases."""
    url = url or settings.DATABASE_URL
    options: Dict[str, Any] = {"echo": settings.DATABASE_ECHO, "future": True}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    elif url.rstrip("/").endswith(("sqlite+aiosqlite:", ":memory:")):
        # in-memory database lives on a single connection
        options["poolclass"] = StaticPool
    options.update(kwargs)
    return create_async_engine(url, **options)


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_models(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the impact tables on Base.metadata
    from stormwatch.app.alerts import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_engine(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
