"""
Pytest configuration and shared fixtures for the order service.

Provides an in-memory SQLite order store, a mocked event channel and a
coordinator wired to both.
"""
import os

# main.py reads DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.order.app.aggregate import OrderItem
from services.order.app.channel import EventChannel
from services.order.app.coordinator import OrderCoordinator
from services.order.app.store import OrderStore, create_schema


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    In-memory SQLite database per test.

    StaticPool keeps the single in-memory connection alive across sessions.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def order_store(session_factory) -> OrderStore:
    return OrderStore(session_factory)


# ── Channel / Coordinator Fixtures ───────────────────────────────────


@pytest.fixture
def channel() -> AsyncMock:
    """Event channel double; publish succeeds and records its calls."""
    mock_channel = AsyncMock(spec=EventChannel)
    mock_channel.publish.return_value = "1700000000000-0"
    return mock_channel


@pytest.fixture
def coordinator(order_store: OrderStore, channel: AsyncMock) -> OrderCoordinator:
    return OrderCoordinator(order_store, channel, created_topic="order.created")


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest.fixture
def sample_items() -> list[OrderItem]:
    return [OrderItem(product_id="p1", quantity=2, price=9.99)]
