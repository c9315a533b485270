"""
Pytest configuration and fixtures for control plane tests
"""

import os
import sys
import tempfile
import uuid
from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

# Settings are read at import time, so the environment goes first
TEST_DATABASE_PATH = os.path.join(tempfile.gettempdir(), f"control_plane_test_{uuid.uuid4().hex[:8]}.db")  # noqa: PTH118
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DATABASE_PATH}")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-entropy-0123456789")
os.environ.setdefault("HMAC_SECRET", "test-hmac-secret-0123456789")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("MAX_CONCURRENT_TENANT_OPS", "1")
os.environ.setdefault("HEALTH_POLL_SECONDS", "0.01")
os.environ.setdefault("HEALTH_WAIT_SECONDS", "1")

import app.models  # noqa: E402, F401
from app.auth import create_service_token, sign_request  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base  # noqa: E402

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", settings.database_url)

# Create test engine and session maker BEFORE importing the app
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)

TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

# Now import and patch the app's database components
import app.database as database_module  # noqa: E402
from main import app  # noqa: E402

# Replace the app's engine and session maker with test versions
database_module.engine = test_engine
database_module.AsyncSessionLocal = TestSessionLocal

from utils.fakes import build_fake_infrastructure  # noqa: E402


@pytest.fixture(scope="function")
async def setup_test_database():
    """
    Create a fresh schema for each test function that needs it.
    Tests should depend on this fixture (or on test_db / client) to trigger it.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(scope="function")
async def test_db(setup_test_database) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for tests that need it."""
    async with TestSessionLocal() as session:
        yield session


@pytest.fixture
def infra():
    """Fresh in-memory adapters, also installed on the application state."""
    fakes = build_fake_infrastructure()
    app.state.infra = fakes
    yield fakes
    app.state.infra = None


@pytest.fixture
async def client(setup_test_database, infra) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def bridge_headers():
    """Build bearer + signature headers the way the bridge does."""

    def _build(
        body: str = "",
        role: str = "service_role",
        timestamp: float | None = None,
        ttl: timedelta | None = None,
        secret: str | None = None,
    ) -> dict[str, str]:
        token = create_service_token("bridge", role, ttl=ttl)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        headers.update(sign_request(body, secret=secret, now=timestamp))
        return headers

    return _build


def pytest_sessionfinish(session, exitstatus):
    if os.path.exists(TEST_DATABASE_PATH):  # noqa: PTH110
        os.remove(TEST_DATABASE_PATH)  # noqa: PTH107
