"""
Pytest fixtures for Unibox tests.

This module provides:
- Environment setup (test database file, JWT secret) before unibox is imported
- A fresh SQLite schema per test with a dedicated engine
- Broadcaster, pipeline and outbound service fixtures wired to that engine
- An HTTP client for the FastAPI app with dependencies overridden
"""

import os
import tempfile
import warnings
from collections.abc import AsyncGenerator

_TEST_DB_DIR = tempfile.mkdtemp(prefix="unibox-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_DIR}/unibox.db"
os.environ.setdefault("JWT_SECRET_KEY", "unibox-test-secret-key-with-enough-length-0123456789")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from helpers import USER_ID, FakeSender  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from unibox.config import settings  # noqa: E402
from unibox.database.connection import create_engine_for_url  # noqa: E402
from unibox.database.models import Base  # noqa: E402
from unibox.pipeline.actions import InboxActions  # noqa: E402
from unibox.pipeline.ingest import WebhookPipeline  # noqa: E402
from unibox.pipeline.locks import KeyedLocks  # noqa: E402
from unibox.pipeline.outbound import OutboundService  # noqa: E402
from unibox.services.senders import SenderRegistry  # noqa: E402
from unibox.websocket.broadcaster import FanoutBroadcaster  # noqa: E402

# Suppress JWT secret warning in tests
warnings.filterwarnings(
    "ignore",
    message="JWT_SECRET_KEY not set - using auto-generated secret",
    category=UserWarning,
)


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Engine bound to the test database file with a clean schema."""
    test_engine = create_engine_for_url(settings.DATABASE_URL)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ============================================================================
# Services
# ============================================================================


@pytest_asyncio.fixture
async def broadcaster() -> AsyncGenerator[FanoutBroadcaster, None]:
    instance = FanoutBroadcaster(buffer_size=16, send_timeout=1.0)
    await instance.start()
    yield instance
    await instance.stop()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks("test-conversation")


@pytest.fixture
def pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    broadcaster: FanoutBroadcaster,
    locks: KeyedLocks,
) -> WebhookPipeline:
    return WebhookPipeline(
        session_factory=session_factory, broadcaster=broadcaster, locks=locks, lock_timeout=5.0
    )


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def outbound(
    session_factory: async_sessionmaker[AsyncSession],
    broadcaster: FanoutBroadcaster,
    locks: KeyedLocks,
    sender: FakeSender,
) -> OutboundService:
    return OutboundService(
        session_factory=session_factory,
        broadcaster=broadcaster,
        registry=SenderRegistry(default=sender),
        locks=locks,
        lock_timeout=5.0,
    )


@pytest.fixture
def actions(
    session_factory: async_sessionmaker[AsyncSession],
    broadcaster: FanoutBroadcaster,
    locks: KeyedLocks,
) -> InboxActions:
    return InboxActions(
        session_factory=session_factory, broadcaster=broadcaster, locks=locks, lock_timeout=5.0
    )


# ============================================================================
# HTTP client
# ============================================================================


@pytest.fixture
def auth_headers() -> dict[str, str]:
    from unibox.middleware.auth import create_access_token

    return {"Authorization": f"Bearer {create_access_token(USER_ID)}"}


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    pipeline: WebhookPipeline,
    outbound: OutboundService,
    actions: InboxActions,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app with storage and services bound to the test engine."""
    from unibox.database.connection import get_db
    from unibox.main import app
    from unibox.middleware.rate_limit import limiter
    from unibox.pipeline.actions import get_inbox_actions
    from unibox.pipeline.ingest import get_webhook_pipeline
    from unibox.pipeline.outbound import get_outbound_service

    async def _get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_webhook_pipeline] = lambda: pipeline
    app.dependency_overrides[get_outbound_service] = lambda: outbound
    app.dependency_overrides[get_inbox_actions] = lambda: actions
    limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
