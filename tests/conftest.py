"""
Pytest configuration and shared test fixtures.

Environment variables are set before any application module is imported so
the cached settings, the rate limiter and the FastAPI app all see the test
configuration. Database fixtures use an in-memory aiosqlite database shared
by every session of a test through a StaticPool.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_MP_ACCESS_TOKEN", "TEST-access-token")
os.environ.setdefault("APP_MP_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("APP_PAYMENT_APPLY_STRATEGY", "transaction")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("APP_RETRY_JITTER_SECONDS", "0")

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from schoolphotos.core.config import Settings, get_settings
from schoolphotos.database.models import (
    AccessToken,
    Base,
    Event,
    Order,
    OrderItem,
    PriceListItem,
)
from schoolphotos.services.orders.enums import OrderStatus

VALID_TOKEN = "family-token-0123456789abcdef"
WEBHOOK_SECRET = "test-webhook-secret"


@dataclass
class CatalogSeed:
    event_id: uuid.UUID
    subject_id: uuid.UUID
    token: str


@pytest.fixture
def settings() -> Settings:
    """Application settings as configured for the test run."""
    return get_settings()


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Create an in-memory SQLite engine with the full schema.

    Yields:
        AsyncEngine bound to a single shared connection
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def catalog(session_factory: async_sessionmaker[AsyncSession]) -> CatalogSeed:
    """
    Seed an active event with a valid token and two price list entries.

    Catalog prices: ``pli-1`` = 1500 ARS, ``pli-2`` = 2000 ARS.
    """
    event_id = uuid.uuid4()
    subject_id = uuid.uuid4()

    async with session_factory() as session:
        session.add(Event(id=event_id, name="Spring portraits 2024", active=True))
        await session.flush()
        session.add_all(
            [
                AccessToken(
                    token=VALID_TOKEN,
                    event_id=event_id,
                    subject_id=subject_id,
                    expires_at=datetime.now(timezone.utc) + timedelta(days=30),
                ),
                PriceListItem(
                    id="pli-1",
                    event_id=event_id,
                    label="Digital copy",
                    price_cents=1500,
                    currency="ARS",
                    active=True,
                ),
                PriceListItem(
                    id="pli-2",
                    event_id=event_id,
                    label="Printed 13x18",
                    price_cents=2000,
                    currency="ARS",
                    active=True,
                ),
            ]
        )
        await session.commit()

    return CatalogSeed(event_id=event_id, subject_id=subject_id, token=VALID_TOKEN)


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: CatalogSeed,
):
    """
    Factory fixture persisting an order with one ``pli-1`` line.

    Example:
        order = await make_order(status=OrderStatus.APPROVED)
    """

    async def _make(
        status: OrderStatus = OrderStatus.PENDING,
        quantity: int = 2,
        subject_id: uuid.UUID | None = None,
        **fields,
    ) -> Order:
        order = Order(
            order_number=f"ORD-TEST-{uuid.uuid4().hex[:8].upper()}",
            event_id=catalog.event_id,
            subject_id=subject_id or catalog.subject_id,
            status=status,
            total_cents=1500 * quantity,
            currency="ARS",
            contact_info={"name": "Ana Perez", "email": "ana@example.com"},
            **fields,
        )
        order.items = [
            OrderItem(
                photo_id=uuid.uuid4(),
                price_list_item_id="pli-1",
                label="Digital copy",
                quantity=quantity,
                unit_price_cents=1500,
                line_total_cents=1500 * quantity,
            )
        ]
        async with session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _make
