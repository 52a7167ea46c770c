"""
Shared pytest fixtures for AuditChain backend tests.

Provides:
  - file-backed async SQLite database (per-test isolation)
  - in-memory and relational entry stores
  - FastAPI app wired to the test database, plus an HTTP client
  - bearer token factory for permission checks
"""
from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production-at-all")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from auditchain.config.settings import Settings
from auditchain.core.security import EntrySigner, create_access_token
from auditchain.db.base import Base
from auditchain.db.session import build_session_factory
from auditchain.main import create_app
from auditchain.services.activity.appender import ChainAppender
from auditchain.services.activity.sql_store import SqlAlchemyEntryStore
from auditchain.services.activity.store import InMemoryEntryStore

import auditchain.db.models  # noqa: F401


# ─── Settings override ────────────────────────────────────────────────────────

SIGNING_KEY = "test-signing-key-not-for-production-0001"

TEST_SETTINGS = Settings(
    _env_file=None,
    environment="testing",
    database_url="sqlite+aiosqlite:///:memory:",
    jwt_secret_key="test-secret-key-not-for-production-at-all",
    activity_signing_key=SIGNING_KEY,
    debug=True,
    run_migrations_on_startup=False,
    rate_limit_enabled=False,
    cors_origins=["http://localhost:5173"],
    log_json=False,
)


class StepClock:
    """Deterministic clock: each call advances by one second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def signer() -> EntrySigner:
    return EntrySigner(SIGNING_KEY)


# ─── Stores ───────────────────────────────────────────────────────────────────

@pytest.fixture
def memory_store() -> InMemoryEntryStore:
    return InMemoryEntryStore()


@pytest.fixture
def memory_appender(memory_store, clock) -> ChainAppender:
    return ChainAppender(memory_store, clock=clock)


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create an async SQLite engine on a per-test database file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'activity.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def sql_store(session_factory) -> SqlAlchemyEntryStore:
    return SqlAlchemyEntryStore(session_factory)


@pytest.fixture
def sql_appender(sql_store, clock, signer) -> ChainAppender:
    return ChainAppender(sql_store, signer=signer, clock=clock)


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def app(session_factory):
    """Create FastAPI test app wired to the per-test database."""
    return create_app(settings=TEST_SETTINGS, session_factory=session_factory)


@pytest_asyncio.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated async HTTP client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a factory producing Authorization headers for the given permissions."""

    def _make(*permissions: str, subject: str = "auditor-1") -> dict[str, str]:
        token = create_access_token(
            subject, permissions, name="Test Auditor", settings=TEST_SETTINGS
        )
        return {"Authorization": f"Bearer {token}"}

    return _make
