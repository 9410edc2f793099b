"""Shared test configuration and fixtures.

Each test gets a fresh SQLite database file (aiosqlite) with all tables
created from the models, so services and sweeps can commit freely:
- ``db_session`` is a plain session on that database.
- ``session_factory`` hands out further sessions for sweeps and the API.
- ``pg_session_factory`` targets PostgreSQL for tests that race writers.
- ``clock`` is frozen and advanced explicitly by tests.
- ``notifier`` records every notification instead of delivering it.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import subscription_engine.models  # noqa: F401
from subscription_engine.api.deps import get_billing_context, get_db, get_session_factory
from subscription_engine.billing.context import BillingContext
from subscription_engine.billing.notifications import NotificationType
from subscription_engine.billing.plans import PLANS, Plan, StaticPlanCatalog
from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.database import Base, build_engine
from subscription_engine.main import app

# 30-day billing periods start here (April has 30 days)
START = datetime(2026, 4, 1, 12, 0, 0)

TEST_PLANS: dict[str, Plan] = {
    **PLANS,
    "starter": Plan(
        id="starter",
        name="Starter",
        price=Decimal("100.00"),
        duration_months=1,
        limits={"job_postings": 10, "applications": 100},
        features=("basic_search",),
    ),
    "growth": Plan(
        id="growth",
        name="Growth",
        price=Decimal("200.00"),
        duration_months=1,
        limits={"job_postings": 50, "applications": 500, "scoring_calls": 100},
        features=("basic_search", "ai_scoring"),
    ),
}


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingNotifier:
    """Notification dispatcher that keeps what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[tuple[SubscriberRef, NotificationType, dict[str, Any]]] = []

    async def notify(self, subscriber: SubscriberRef, type: NotificationType, payload: dict[str, Any]) -> None:
        self.sent.append((subscriber, type, payload))

    def of_type(self, type: NotificationType) -> list[dict[str, Any]]:
        return [payload for _, sent_type, payload in self.sent if sent_type is type]


# ---------------------------------------------------------------------------
# Database: one SQLite file per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'subscriptions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def pg_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on a real PostgreSQL database, for tests that need concurrent writers.

    Set ``TEST_POSTGRES_URL`` (postgresql+asyncpg://.../subscription_engine_test) to run them.
    """
    url = os.environ.get("TEST_POSTGRES_URL")
    if not url:
        pytest.skip("TEST_POSTGRES_URL is not set")
    engine = build_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def unreachable_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on a database file that cannot be opened."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'subscriptions.db'}")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session; tests commit when sweeps must see their writes."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def catalog() -> StaticPlanCatalog:
    return StaticPlanCatalog(TEST_PLANS)


@pytest.fixture
def ctx(clock: FrozenClock, notifier: RecordingNotifier, catalog: StaticPlanCatalog) -> BillingContext:
    return BillingContext(
        catalog=catalog,
        clock=clock,
        notifier=notifier,
        trial_days=14,
        near_limit_threshold_pct=90,
        sweep_lock_ttl_seconds=3600,
    )


@pytest.fixture
def user() -> SubscriberRef:
    return SubscriberRef.user(uuid.uuid4())


@pytest.fixture
def employer() -> SubscriberRef:
    return SubscriberRef.employer(uuid.uuid4())


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory, ctx: BillingContext) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the per-test database and context."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_context] = lambda: ctx
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()
