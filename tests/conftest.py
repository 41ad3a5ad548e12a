"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, mocked Redis, seeded users,
a barber shop with one service and a published day of slots.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_webhook_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("APP_ENV", "testing")

import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    Availability,
    Barber,
    Service,
    Slot,
    User,
    UserRole,
    UserStatus,
)
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "Str0ngPass!"

test_engine = create_async_engine(
    "sqlite+aiosqlite://",
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    """Bearer header for a seeded user (no session row needed)."""
    token, _ = create_access_token(
        user_id=str(user.id), role=user.role.value, email=user.email
    )
    return {"Authorization": f"Bearer {token}"}


def slot_day() -> date:
    """A day far enough ahead that every slot on it is in the future."""
    return (datetime.now(timezone.utc) + timedelta(days=7)).date()


def at(day: date, hour: int, minute: int = 0) -> datetime:
    """UTC instant on `day`. 04:00-12:00 UTC stays on the same Asia/Kolkata date."""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Each test runs on its own event loop
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db() -> AsyncSession:
    async with TestSessionLocal() as session:
        yield session


async def override_get_db():
    async with TestSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Redis & external services ─────────────────────────────────

@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.get.return_value = None
    redis.exists.return_value = 0
    redis.incr.return_value = 1
    return redis


@pytest.fixture(autouse=True)
def otp_outbox():
    """Captures OTP deliveries instead of queueing Celery tasks."""
    with patch("services.auth.router.send_otp") as send_otp:
        yield send_otp


def sent_codes(otp_outbox) -> list:
    """(channel, target, code, purpose) tuples in send order."""
    return [c.args for c in otp_outbox.delay.call_args_list]


@pytest.fixture
def razorpay_client():
    client = MagicMock()
    client.order.create.return_value = {"id": "order_test_1", "amount": 50000}
    client.payment.refund.return_value = {"id": "rfnd_test_1"}
    with patch("services.payment.providers.razorpay.Client", return_value=client):
        yield client


# ── App client ────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(mock_redis) -> AsyncClient:
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: mock_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Seeded data ───────────────────────────────────────────────

async def make_user(
    db: AsyncSession,
    email: str,
    role: UserRole = UserRole.CUSTOMER,
    name: str = "Test User",
    mobile: str = None,
) -> User:
    user = User(
        id=uuid.uuid4(),
        name=name,
        email=email,
        mobile=mobile,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        status=UserStatus.ACTIVE,
        email_verified=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await make_user(db, "customer@example.com", name="Asha Customer", mobile="9876543210")


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await make_user(db, "other@example.com", name="Ravi Other")


@pytest_asyncio.fixture
async def barber_user(db: AsyncSession) -> User:
    return await make_user(db, "barber@example.com", role=UserRole.BARBER, name="Kiran Barber")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "admin@example.com", role=UserRole.ADMIN, name="Admin")


@pytest_asyncio.fixture
async def barber(db: AsyncSession, barber_user: User) -> Barber:
    shop = Barber(
        id=uuid.uuid4(),
        user_id=barber_user.id,
        shop_name="Sharp Cuts",
        city="Pune",
        address="12 MG Road",
        pincode="411001",
        is_verified=True,
    )
    db.add(shop)
    await db.commit()
    await db.refresh(shop)
    return shop


@pytest_asyncio.fixture
async def service(db: AsyncSession, barber: Barber) -> Service:
    item = Service(
        id=uuid.uuid4(),
        barber_id=barber.id,
        name="Classic Haircut",
        category="haircut",
        price=Decimal("500.00"),
        duration_min=30,
        active=True,
    )
    db.add(item)
    await db.commit()
    return item


@pytest_asyncio.fixture
async def published_day(db: AsyncSession, barber: Barber) -> Availability:
    """Three one-hour slots, 04:00-07:00 UTC on slot_day()."""
    day = slot_day()
    record = Availability(id=uuid.uuid4(), barber_id=barber.id, date=day, timezone="Asia/Kolkata")
    db.add(record)
    await db.flush()
    for hour in (4, 5, 6):
        db.add(Slot(availability_id=record.id, start_at=at(day, hour), end_at=at(day, hour + 1)))
    await db.commit()
    await db.refresh(record, attribute_names=["slots"])
    return record
