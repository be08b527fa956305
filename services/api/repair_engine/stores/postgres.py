"""Async SQLAlchemy store.

One engine per process. `get_session()` is the unit of work used by every
service call: it commits when the block exits cleanly and rolls back when
it raises, so a rejected operation never leaves partial writes behind.

Postgres (asyncpg) in deployments; tests and scripts may bind any other
async engine with `bind_engine()`.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from repair_engine.settings import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by all engine tables."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _pool_options(url: str) -> dict[str, Any]:
    # SQLite drivers do not take QueuePool sizing.
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": 10, "max_overflow": 10, "pool_pre_ping": True}


def bind_engine(engine: AsyncEngine) -> None:
    """Make `engine` the process engine (scripts, tests)."""
    global _engine, _session_factory
    _engine = engine
    # Rows stay readable after commit; services return ORM objects to routes.
    _session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(url: str | None = None) -> None:
    """Create the engine from settings (or an explicit URL)."""
    settings = get_settings()
    url = url or settings.async_database_url
    connect_args = settings.asyncpg_connect_args if url.startswith("postgresql+asyncpg") else {}
    bind_engine(create_async_engine(url, echo=settings.debug, connect_args=connect_args, **_pool_options(url)))


async def ping_db() -> None:
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work.

    Usage:
        async with get_session() as session:
            order = await select_quote(session, ...)
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create every table from the models (tests and local bootstrap; deployments use alembic)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    import repair_engine.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
