"""Shared fixtures.

The store is bound to an in-memory SQLite database (one shared connection),
and Redis stays uninitialized so locks and the config cache use their
in-process fallbacks.
"""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from repair_engine.main import app
from repair_engine.stores import postgres


@pytest.fixture
async def db():
    """Fresh schema per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    postgres.bind_engine(engine)
    await postgres.create_tables()
    yield engine
    await postgres.close_db()


@pytest.fixture
async def client():
    """Create test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
