"""Test fixtures — create/drop tables for each async test."""

import os
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any relaycore import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_relay.db"
os.environ["AUTO_CREATE_TABLES"] = "false"

from relaycore.api.deps import get_http_client  # noqa: E402
from relaycore.config import Settings  # noqa: E402
from relaycore.database import Base, async_session, engine  # noqa: E402
from relaycore.main import app  # noqa: E402
import relaycore.models  # noqa: E402,F401


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///./test_relay.db",
        stripe_webhook_secret="",
        paystack_secret_key="",
        service_api_key="",
    )


class FakeDestination:
    """Scripted webhook receiver built on httpx.MockTransport.

    Each entry in ``script`` is an HTTP status code or an exception instance
    to raise; the last entry repeats once the script is exhausted.
    """

    def __init__(self, *script):
        self.script = list(script) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        return httpx.Response(step, text=f"status {step}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def destination():
    return FakeDestination


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_http_client, None)
