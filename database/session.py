"""
Async database session management: PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    engine = get_engine()              # global engine from settings
    await init_db(engine)              # create tables once at startup
    async with session_scope(factory) as db:
        result = await db.execute(...)
    await engine.dispose()             # call at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # Already has an async driver, or unknown: return as-is
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        # SQLite: wait on a locked database instead of failing straight away
        return {**base, "connect_args": {"check_same_thread": False, "timeout": 15}}

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 5,
        "max_overflow": 5,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _ensure_sqlite_dir(db_url: str) -> None:
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def create_engine_for_url(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for a (sync or async) database URL."""
    async_url = _to_async_url(db_url)
    _ensure_sqlite_dir(async_url)
    engine = create_async_engine(async_url, **_engine_kwargs(async_url, echo))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=str(engine.url).split("@")[-1] if "@" in str(engine.url) else str(engine.url))
    return engine


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it from settings if needed."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.database.url, echo=settings.debug)
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine = None) -> None:
    """Create all tables. Call once at application startup."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))

