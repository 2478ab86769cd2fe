"""Registry database engine and sessions.

Production runs on PostgreSQL (asyncpg). A ``sqlite+aiosqlite`` URL is
accepted for single-node development and tests; an in-memory SQLite
database is pinned to one connection so every session sees the same tables.
"""

import logging

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool
from sqlmodel import SQLModel

from tenanthub.app.config import DatabaseConfig, get_settings
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

POOL_RECYCLE_SECONDS = 3600

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(config: DatabaseConfig) -> AsyncEngine:
    """Engine for the registry URL, pooled according to its dialect."""
    url = make_url(config.url)
    if url.get_backend_name() == "sqlite":
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(url, echo=config.echo, **kwargs)

    return create_async_engine(
        url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
        poolclass=AsyncAdaptedQueuePool,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Registry rows are handed to callers after the session closes
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every registry table. Migrations own the schema in production."""
    from tenanthub.core import models  # noqa: F401  registers the tables

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def init_db() -> None:
    global _engine, _session_factory

    config = get_settings().database
    _engine = build_engine(config)
    _session_factory = build_session_factory(_engine)

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        if config.create_schema:
            await create_schema(_engine)
    except Exception as e:
        logger.error(
            "Registry database connection failed",
            extra={
                "event": LogEvent.DB_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
                "dialect": _engine.dialect.name,
            },
        )
        raise

    logger.info(
        "Registry database connected",
        extra={
            "event": LogEvent.DB_CONNECTED,
            "dialect": _engine.dialect.name,
            "schema_created": config.create_schema,
        },
    )


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the registry and the scheduler services."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory
