"""Shared test fixtures for backend tests."""

import os
import tempfile
from typing import AsyncGenerator

# Hermetic settings; must be in place before app.config is imported
_TMP = tempfile.mkdtemp(prefix="repocomply-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ["REPO_STORAGE_PATH"] = os.path.join(_TMP, "repos")
os.environ["ANALYSIS_QUEUE_BACKEND"] = "inline"
os.environ["ENVIRONMENT"] = "test"
os.environ["AI_ENABLED"] = "false"  # keeps /api/health off the network

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

import app.models  # noqa: E402,F401  (registers tables on Base.metadata)
from app.database import Base, engine, async_session  # noqa: E402
from app.main import app  # noqa: E402
from tests.factories import FakeProvider, make_adapter  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def database() -> AsyncGenerator[None, None]:
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # pooled connections belong to this test's event loop
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def client(fake_provider: FakeProvider) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client without an auth header; the app judges with `fake_provider`."""
    app.state.ai_adapter = make_adapter(fake_provider)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.state.ai_adapter = None
    app.dependency_overrides.clear()
