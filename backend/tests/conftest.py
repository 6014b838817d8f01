"""
Test Configuration — Fixtures for an async SQLite database and seed helpers.

Each test gets a fresh in-memory database (aiosqlite + StaticPool, so every
session shares one connection) with the full schema created from metadata.
"""

import uuid
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401  (registers tables on Base.metadata)
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"

# Detection and forecasting tests run "as of" this instant.
NOW = datetime(2026, 3, 1, 0, 5)
TODAY = NOW.date()


@pytest.fixture
async def test_engine():
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(test_db):
    """Async helpers that insert platform rows the analytics jobs read."""
    from db.models import AnalyticsUserPreference, SalesOrder, Tenant, User, UserCapability

    class Seeder:
        async def tenant(self, tenant_id=TENANT_ID, name="Test Bistro", status="active", created_at=None):
            test_db.add(
                Tenant(
                    tenant_id=uuid.UUID(tenant_id),
                    name=name,
                    status=status,
                    created_at=created_at or datetime(2025, 1, 1),
                )
            )
            await test_db.commit()
            return tenant_id

        async def daily_orders(self, tenant_id, values_by_day: dict[date, list[float]]):
            """One order per listed total, placed at noon of each day."""
            for day, totals in values_by_day.items():
                for total in totals:
                    test_db.add(
                        SalesOrder(
                            tenant_id=uuid.UUID(tenant_id),
                            total=total,
                            created_at=datetime.combine(day, time(12, 0)),
                        )
                    )
            await test_db.commit()

        async def daily_revenue(self, tenant_id, values: list[float], end: date = TODAY):
            """One order per day with the given totals, the last one on ``end - 1``."""
            start = end - timedelta(days=len(values))
            await self.daily_orders(
                tenant_id, {start + timedelta(days=i): [value] for i, value in enumerate(values)}
            )

        async def user(self, tenant_id=TENANT_ID, email="user@example.com", is_admin=False, is_active=True, created_at=None):
            user = User(
                user_id=uuid.uuid4(),
                tenant_id=uuid.UUID(tenant_id),
                name=email.split("@")[0] if email else "no-email",
                email=email,
                is_active=is_active,
                created_at=created_at or datetime(2025, 1, 1),
            )
            test_db.add(user)
            await test_db.flush()
            if is_admin:
                test_db.add(
                    UserCapability(tenant_id=uuid.UUID(tenant_id), user_id=user.user_id, capability="tenant.admin")
                )
            await test_db.commit()
            return str(user.user_id)

        async def preference(self, tenant_id=TENANT_ID, user_id=None, severities=("critical",), enabled=True, created_at=None):
            pref = AnalyticsUserPreference(
                tenant_id=uuid.UUID(tenant_id),
                user_id=uuid.UUID(user_id) if user_id else None,
                email_notifications_enabled=enabled,
                notification_severity_filter=list(severities),
                created_at=created_at or datetime(2025, 1, 1),
            )
            test_db.add(pref)
            await test_db.commit()
            return str(pref.preference_id)

    return Seeder()


def alternating_baseline(days: int = 14, low: float = 90.0, high: float = 110.0) -> list[float]:
    """Mean 100, population standard deviation 10 for an even number of days."""
    return [low if i % 2 == 0 else high for i in range(days)]


class FakeLock:
    """Non-blocking stand-in for ``redis.lock.Lock`` sharing state per lock name."""

    def __init__(self, held):
        self.held = held
        self.released = False
        self.expired = False

    def acquire(self, blocking=False):
        if self.held["value"]:
            return False
        self.held["value"] = True
        return True

    def release(self):
        from redis.exceptions import LockError

        if self.expired:
            raise LockError("lock expired")
        self.held["value"] = False
        self.released = True


class FakeRedis:
    def __init__(self):
        self.locks = {}
        self.hashes = {}
        self.history = []

    def lock(self, name, timeout=None, blocking=True):
        return FakeLock(self.locks.setdefault(name, {"value": False}))

    def hset(self, name, mapping):
        self.hashes.setdefault(name, {}).update(mapping)
        self.history.append(mapping["state"])


@pytest.fixture
def fake_redis(monkeypatch):
    """FakeRedis installed as the scheduler's Redis client."""
    client = FakeRedis()
    monkeypatch.setattr("workers.scheduler.get_redis_client", lambda: client)
    return client
