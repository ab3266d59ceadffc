"""
Database session management.

Flow:
  1. Request handlers depend on get_db(), which opens a session and a
     transaction for the lifetime of the request and commits on exit.
  2. Background pipeline runs use get_pipeline_db() - one short transaction
     per status write so pollers observe every transition as it happens.

The engine is created once per process. SQLite (tests, local dev) opens a
connection per session, except in-memory databases which share one
connection so they survive across sessions; PostgreSQL uses a regular
connection pool.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from meddocs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # In-memory databases live and die with their connection
        poolclass = StaticPool if ":memory:" in url else NullPool
        return create_async_engine(
            url,
            poolclass=poolclass,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=settings.db_echo_sql,
        )
    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


engine: AsyncEngine = _build_engine(settings.database_url)

# Session factory - expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields a request-scoped database session.

    Commits when the route completes and rolls back if it raises. Services
    may commit earlier themselves, e.g. before handing a document id to the
    pipeline, which reads it from its own session.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Pipeline / worker session
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_pipeline_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Short-lived session for background work.

    Commits on exit of the ``async with`` block. Never hand this to request
    handlers; they use get_db().
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema bootstrap + health check
# ---------------------------------------------------------------------------

async def init_models() -> None:
    """Create all tables that do not exist yet."""
    from meddocs.models.documents import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured | url=%s", engine.url.render_as_string(hide_password=True))


async def check_db_health() -> dict:
    """Ping the database; used by /health/ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
