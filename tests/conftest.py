"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database through aiosqlite.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any, AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from municipal_payments.api.main import app  # noqa: E402
from municipal_payments.config import Settings  # noqa: E402
from municipal_payments.core.entities import new_municipality, new_user  # noqa: E402
from municipal_payments.database.connection import get_db  # noqa: E402
from municipal_payments.database.models import Base, Municipality, User  # noqa: E402

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Controllable UTC clock for services that accept a ``clock``."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        app_name="municipal-payments-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def municipality(test_db: AsyncSession) -> Municipality:
    """Municipality charging in EUR with a 30 minute QR code window."""
    municipality = new_municipality(
        name="Springfield",
        code="SPR",
        payment_config={
            "currency": "EUR",
            "paymentMethods": ["credit_card", "cash"],
            "qrCodeExpirationMinutes": 30,
            "wasteManagementFee": 12.5,
        },
        contact_email="billing@springfield.example",
    )
    test_db.add(municipality)
    await test_db.commit()
    return municipality


@pytest_asyncio.fixture
async def unconfigured_municipality(test_db: AsyncSession) -> Municipality:
    """Municipality without a payment configuration."""
    municipality = new_municipality(name="Shelbyville", code="SHB")
    test_db.add(municipality)
    await test_db.commit()
    return municipality


@pytest_asyncio.fixture
async def resident(test_db: AsyncSession) -> User:
    user = new_user("resident@example.com", "Marge", "Simpson")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest_asyncio.fixture
async def other_resident(test_db: AsyncSession) -> User:
    user = new_user("neighbour@example.com", "Ned", "Flanders")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
