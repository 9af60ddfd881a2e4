"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Secret files written to a temporary directory
- Database sessions (async, SQLite in memory)
- Fake Redis, fake broker and fake credential issuer
- Test client with dependency overrides
"""
# Secret paths and settings must be in the environment before reviewbot is imported
import os
import tempfile
from pathlib import Path

from tests.factories import SECRET_FILES, TEST_ADMIN_API_KEY

_SECRETS_DIR = Path(tempfile.mkdtemp(prefix="reviewbot-test-secrets-"))
for _env_name, (_file_name, _content) in SECRET_FILES.items():
    _path = _SECRETS_DIR / _file_name
    _path.write_text(_content + "\n")
    os.environ[_env_name] = str(_path)

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["ADMIN_API_KEY"] = TEST_ADMIN_API_KEY
os.environ["NEW_PR_LABELS"] = "needs-review"
os.environ["BOT_LOGIN"] = "reviewbot"

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reviewbot.api.webhooks.github import get_dedup_window
from reviewbot.core.circuit_breaker import CircuitBreaker
from reviewbot.core.logging import clear_registered_secrets
from reviewbot.core.secrets import SecretStore, get_secret_store
from reviewbot.db.database import Base, get_db
from reviewbot.domain.services.dedup_window import DeliveryDedupWindow
from reviewbot.main import app
from reviewbot.workers.broker import get_broker
from tests.fakes import FakeBroker, FakeIssuer, FakeRedis


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(async_engine) -> Callable:
    """Same shape as db.database.get_task_session, bound to the test engine"""
    maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def _factory():
        async with maker() as session:
            yield session

    return _factory


# ============================================================================
# Secrets
# ============================================================================

@pytest.fixture(autouse=True)
def reset_secret_state():
    """Fresh secret store cache and redaction registry per test"""
    get_secret_store.cache_clear()
    clear_registered_secrets()
    yield
    get_secret_store.cache_clear()
    clear_registered_secrets()


@pytest.fixture
def secret_store() -> SecretStore:
    return get_secret_store()


@pytest.fixture
def secrets_dir() -> Path:
    return _SECRETS_DIR


# ============================================================================
# Circuit breakers
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Redis / broker / issuer
# ============================================================================

@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("reviewbot.core.redis_client.get_redis", _get_fake_redis), \
         patch("reviewbot.api.webhooks.github.get_redis", _get_fake_redis), \
         patch("reviewbot.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture
def dedup_window(fake_redis) -> DeliveryDedupWindow:
    return DeliveryDedupWindow(fake_redis)


# ============================================================================
# API client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_broker, dedup_window, secret_store):
    """Create test client with database, broker, dedup window and secret overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    async def override_get_dedup_window():
        return dedup_window

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broker] = lambda: fake_broker
    app.dependency_overrides[get_dedup_window] = override_get_dedup_window
    app.dependency_overrides[get_secret_store] = lambda: secret_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}
