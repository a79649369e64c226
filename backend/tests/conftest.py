"""Pytest configuration and fixtures for testing."""

import hashlib
import os

# Settings are read at import time; point them at SQLite before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["ADMIN_API_KEY_HASH"] = hashlib.sha256(b"test-admin-key").hexdigest()

from datetime import datetime
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.main import app
from app.database import Base, get_db
from app.api.deps import get_offer_engine, get_trade_engine
from app.services.offer_engine import OfferEngine
from app.services.trade_engine import TradeEngine
from app.services.deadline_scheduler import DeadlineScheduler
from fakes import (
    FakeCatalog,
    FakePaymentGateway,
    FakeOrderService,
    FakeNotifier,
    FakeClock,
    SELLER,
    ALICE,
    BOB,
)


@pytest.fixture
async def test_engine(tmp_path):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so several sessions can share it.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0))


@pytest.fixture
def catalog() -> FakeCatalog:
    catalog = FakeCatalog()
    # Offer fixtures
    catalog.add("prod-lamp", SELLER, "150.00")
    catalog.add("prod-chair", SELLER, "80.00")
    # Trade fixtures
    catalog.add("prod-jacket", ALICE, "200.00")
    catalog.add("prod-watch", ALICE, "90.00")
    catalog.add("prod-boots", BOB, "250.00")
    catalog.add("prod-bag", BOB, "60.00")
    catalog.add("prod-camera", BOB, "400.00", trade_enabled=False)
    return catalog


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def orders() -> FakeOrderService:
    return FakeOrderService()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def offer_engine(catalog, orders, notifier, clock) -> OfferEngine:
    return OfferEngine(catalog, orders, notifier, clock=clock)


@pytest.fixture
def trade_engine(catalog, payments, notifier, clock) -> TradeEngine:
    return TradeEngine(catalog, payments, notifier, clock=clock)


@pytest.fixture
def scheduler(offer_engine, trade_engine, session_factory) -> DeadlineScheduler:
    return DeadlineScheduler(offer_engine, trade_engine, session_factory=session_factory, interval_seconds=0.01)


@pytest.fixture
async def client(db: AsyncSession, offer_engine, trade_engine) -> AsyncGenerator[AsyncClient, None]:
    """
    Create test client with database and engine dependency overrides.
    """
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_offer_engine] = lambda: offer_engine
    app.dependency_overrides[get_trade_engine] = lambda: trade_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
