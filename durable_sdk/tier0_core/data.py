"""
durable_sdk.tier0_core.data
────────────────────────────
DB connection lifecycle and transaction boundaries for the SQL-backed
execution log and execution store.

Minimal stack: SQLAlchemy 2.x async (aiosqlite for local/test)
Configure via: DATABASE_URL
"""
from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# ── Base model ────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """All ORM tables inherit from this base."""
    pass


# ── Engine / session factory ──────────────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Return the singleton async engine. Created on first call."""
    global _engine
    if _engine is None:
        from durable_sdk.tier0_core.config import get_config

        url = get_config().database_url
        kwargs: dict[str, Any] = {"echo": os.getenv("DATABASE_ECHO", "").lower() == "true"}

        # SQLite doesn't support pool settings
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = int(os.environ.get("DATABASE_POOL_SIZE", "5"))
            kwargs["max_overflow"] = int(os.environ.get("DATABASE_MAX_OVERFLOW", "10"))

        _engine = create_async_engine(url, **kwargs)
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory bound to the singleton engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager that yields a transactional session.
    Commits on clean exit, rolls back on exception, always closes.

    Usage:
        async with get_session() as session:
            session.add(row)
    """
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create the log and store tables. Use migrations in production."""
    # Table modules register themselves on Base.metadata at import time.
    import durable_sdk.tier0_core.ledger  # noqa: F401
    import durable_sdk.tier2_reliability.storage  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the engine. Call on worker shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def _reset() -> None:
    """For tests: reset engine and session factory."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


__all__ = [
    "Base",
    "get_engine",
    "get_session",
    "get_session_factory",
    "make_session_factory",
    "create_all",
    "dispose_engine",
]
