"""Pytest configuration."""

import asyncio
import os
import tempfile

import pytest

# Ensure test environment
os.environ.setdefault("PT_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("PT_DEBUG", "true")
os.environ.setdefault("PT_QUEUE_DIR", os.path.join(tempfile.gettempdir(), "tracker-test-queue"))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tracker.middleware.rate_limit import get_limiter  # noqa: E402
from tracker.models.tables import Base  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_rate_windows():
    get_limiter().reset()
    yield
    get_limiter().reset()


def _run_db(test_fn):
    """Run `await test_fn(session_maker)` against a fresh in-memory schema."""
    async def _runner():
        engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            return await test_fn(maker)
        finally:
            await engine.dispose()

    return asyncio.run(_runner())


@pytest.fixture
def run_db():
    return _run_db
