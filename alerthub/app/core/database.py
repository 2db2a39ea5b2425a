"""
Database layer — async SQLAlchemy 2.0 engine for the alert document log.

Provides:
    • Engine construction from a URL (PostgreSQL via asyncpg, SQLite via aiosqlite)
    • Session factory bound to an engine
    • Declarative base + UTC-preserving timestamp column type
    • Lifecycle helpers (create tables / dispose)

Engines are built per application lifespan rather than at import time so
tests can point each run at a fresh in-memory database.

Usage:
    from alerthub.app.core.database import build_engine, build_session_factory, init_db

    engine = build_engine("sqlite+aiosqlite://")
    await init_db(engine)
    sessions = build_session_factory(engine)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from alerthub.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as an aware UTC datetime.

    SQLite has no timezone support and hands back naive values; storing
    naive UTC and re-attaching ``timezone.utc`` on load keeps comparisons
    consistent across backends.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


# ── Engine ──
def build_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async engine for ``url`` (defaults to ``settings.DATABASE_URL``).

    Pool sizing only applies to server databases; an in-memory SQLite URL
    gets a ``StaticPool`` so every session sees the same database.
    """
    url = url or settings.DATABASE_URL
    parsed = make_url(url)
    kwargs: Dict[str, Any] = {
        "echo": settings.DATABASE_ECHO if echo is None else echo,
    }

    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
        kwargs["pool_pre_ping"] = True

    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
