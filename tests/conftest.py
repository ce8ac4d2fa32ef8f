"""Pytest configuration for tests - isolated database and shared fixtures."""

import os

# Set test database URL BEFORE any imports from src
# This ensures the module-level engine never touches a real database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from src.models import Base  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    """Temp-file SQLite engine with every table created.

    NullPool opens a fresh connection per session, so concurrent fetches and
    the FastAPI test client never share a connection across event loops.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reconciliation_test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
