"""Shared test configuration and fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite + StaticPool, so
all sessions share one connection). The scheduler and the API run against
the same session factory the test seeds data through.
"""

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import realtycrm.models  # noqa: F401  (registers all tables on Base.metadata)
from realtycrm.api.deps import get_scheduler
from realtycrm.auth.jwt import create_access_token
from realtycrm.billing.toss_client import PaymentResult
from realtycrm.database import Base, get_db
from realtycrm.main import app
from realtycrm.models.subscription import Subscription
from realtycrm.models.user import User
from realtycrm.scheduler.subscription_scheduler import SubscriptionScheduler

SEOUL = ZoneInfo("Asia/Seoul")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database with all tables."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session the test uses to seed and inspect data."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def payment_result(amount: int = 9900, payment_key: str | None = None) -> PaymentResult:
    return PaymentResult(
        payment_key=payment_key or f"pay_{uuid.uuid4().hex[:12]}",
        total_amount=amount,
        order_id=f"order_{uuid.uuid4().hex[:8]}",
    )


@pytest.fixture
def make_scheduler(session_factory) -> Callable[..., SubscriptionScheduler]:
    """Build a scheduler over the test database with a mocked gateway."""

    def _make(charge=None, **kwargs) -> SubscriptionScheduler:
        if charge is None:
            charge = AsyncMock(side_effect=lambda *args, **kw: payment_result(kw.get("amount", 9900)))
        kwargs.setdefault("tz", SEOUL)
        return SubscriptionScheduler(session_factory, charge, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def create_user(db_session: AsyncSession):
    async def _create(**overrides) -> User:
        unique = uuid.uuid4().hex[:8]
        fields = {
            "email": f"agent-{unique}@test.com",
            "name": "Test Agent",
            "is_active": True,
            "role": "agent",
            "is_premium": True,
            "subscription_status": "active",
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _create


@pytest.fixture
def create_subscription(db_session: AsyncSession, create_user):
    async def _create(user: User | None = None, **overrides) -> Subscription:
        if user is None:
            user = await create_user()
        fields = {
            "customer_id": user.id,
            "customer_email": user.email,
            "customer_name": user.name,
            "plan_id": "premium_monthly",
            "plan_name": "Premium",
            "price": 9900,
            "billing_key": f"bk_{uuid.uuid4().hex[:10]}",
            "status": "active",
            "auto_renew": True,
            "start_date": datetime(2025, 12, 31, 6, 0),
            "next_billing_date": datetime(2026, 1, 31, 6, 0),
            "retry_count": 0,
            "payment_history": [],
        }
        fields.update(overrides)
        subscription = Subscription(**fields)
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _create


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@pytest.fixture
def scheduler(make_scheduler) -> SubscriptionScheduler:
    return make_scheduler()


@pytest_asyncio.fixture
async def client(session_factory, scheduler) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and scheduler."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_user(create_user) -> User:
    return await create_user(role="admin", is_premium=False, subscription_status="inactive")


@pytest.fixture
def admin_headers(admin_user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(admin_user.id)})
    return {"Authorization": f"Bearer {token}"}
