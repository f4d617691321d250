"""Pytest configuration and shared fixtures."""
import os
import sys
from pathlib import Path

# must be set before wahub.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SENTRY_DSN", "")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from wahub.models.base import Base
from wahub.models.ban_alert import BanAlert  # noqa: F401
from wahub.models.organisation import Organisation
from wahub.models.webhook import WebhookDeliveryLog, WebhookSubscription  # noqa: F401
from wahub.repositories.ban_alerts import BanAlertRepository
from wahub.repositories.webhooks import WebhookRepository
from wahub.services.webhook_service import WebhookEngine

# Add tests directory to path so fakes can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from fakes import ManualScheduler, Subscriber  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def orgs(session_factory) -> tuple[str, str]:
    """Two organisations: Acme Corp and Beta Inc."""
    async with session_factory() as session:
        acme = Organisation(name="Acme Corp", domain="acme.com")
        beta = Organisation(name="Beta Inc", domain="beta.com")
        session.add_all([acme, beta])
        await session.commit()
        return acme.id, beta.id


@pytest.fixture
def org_id(orgs) -> str:
    return orgs[0]


@pytest.fixture
def webhook_repository(session_factory) -> WebhookRepository:
    return WebhookRepository(session_factory)


@pytest.fixture
def ban_alert_repository(session_factory) -> BanAlertRepository:
    return BanAlertRepository(session_factory)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def subscriber() -> Subscriber:
    return Subscriber(200)


@pytest_asyncio.fixture
async def make_engine(webhook_repository, scheduler):
    """Build a WebhookEngine posting to a scripted Subscriber."""
    clients = []

    def factory(subscriber: Subscriber, **overrides) -> WebhookEngine:
        options = dict(
            max_attempts=3,
            backoff_base_seconds=2.0,
            retry_client_errors=True,
            timeout_seconds=5.0,
            failure_threshold=10,
            failure_window_hours=24,
            production=False,
        )
        options.update(overrides)
        client = subscriber.client()
        clients.append(client)
        return WebhookEngine(webhook_repository, scheduler, http_client=client, **options)

    yield factory
    for client in clients:
        await client.aclose()


@pytest.fixture
def engine(make_engine, subscriber) -> WebhookEngine:
    return make_engine(subscriber)
