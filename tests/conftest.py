"""Pytest configuration and fixtures for billing dashboard tests."""

import os

# Settings are read at import time; keep tests off any real Postgres
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./billing-test.db")

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import pytest_asyncio
from fakeredis import aioredis as fakeredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from billing_dashboard.api.deps import get_event_dispatcher
from billing_dashboard.core.events import InvoiceEvent, InvoiceEventType, InvoiceSnapshot
from billing_dashboard.db.base import Base
from billing_dashboard.db.session import get_db
from billing_dashboard.main import app
from billing_dashboard.models import Invoice, InvoiceStatus
from billing_dashboard.services.revenue.orchestrator import RevenueEventOrchestrator
from billing_dashboard.services.revenue.wiring import build_event_dispatcher

# Fixed "now" for rolling-window tests: window is 2025-07 .. 2026-06
FIXED_NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """File-backed SQLite database so every connection sees the same tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def test_redis() -> AsyncGenerator[Any, None]:
    """Create fake Redis client for testing."""
    redis_client = fakeredis.FakeRedis(decode_responses=True)
    yield redis_client
    await redis_client.flushall()
    await redis_client.aclose()


@pytest.fixture(autouse=True)
def mock_redis(test_redis: Any) -> Any:
    """Route every cache call to fake Redis."""
    with patch("billing_dashboard.core.cache.get_redis", return_value=test_redis):
        yield test_redis


@pytest.fixture
def orchestrator(session_factory: async_sessionmaker[AsyncSession]) -> RevenueEventOrchestrator:
    return RevenueEventOrchestrator(session_factory, conflict_retries=2)


@pytest_asyncio.fixture(scope="function")
async def test_client(
    session_factory: async_sessionmaker[AsyncSession],
    test_redis: Any,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    dispatcher = build_event_dispatcher(session_factory, conflict_retries=2)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    with patch("billing_dashboard.api.health.get_redis", return_value=test_redis):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()


def _make_snapshot(
    invoice_id: uuid.UUID | None = None,
    *,
    amount: int = 10_000,
    status: InvoiceStatus = InvoiceStatus.PAID,
    effective_date: date = date(2026, 3, 15),
) -> InvoiceSnapshot:
    """Build an invoice snapshot; amounts are cents."""
    return InvoiceSnapshot(
        id=invoice_id or uuid.uuid4(),
        amount=amount,
        status=status,
        effective_date=effective_date,
    )


def _make_event(
    event_type: InvoiceEventType,
    invoice: InvoiceSnapshot,
    previous: InvoiceSnapshot | None = None,
    **kwargs: Any,
) -> InvoiceEvent:
    return InvoiceEvent(
        event_type=event_type,
        invoice_id=invoice.id,
        invoice=invoice,
        previous_invoice=previous,
        **kwargs,
    )


@pytest_asyncio.fixture
async def create_test_invoice(test_session: AsyncSession) -> Any:
    """Factory fixture to create invoices directly in the database."""

    async def _create_invoice(**kwargs: Any) -> Invoice:
        invoice_data: dict[str, Any] = {
            "amount": 10_000,
            "status": InvoiceStatus.PENDING.value,
            "effective_date": date(2026, 3, 15),
        }
        invoice_data.update(kwargs)
        invoice = Invoice(**invoice_data)
        test_session.add(invoice)
        await test_session.commit()
        await test_session.refresh(invoice)
        return invoice

    return _create_invoice


@pytest.fixture
def make_snapshot() -> Any:
    """Factory for invoice snapshots (defaults: paid, 100.00, March 2026)."""
    return _make_snapshot


@pytest.fixture
def make_event() -> Any:
    """Factory for invoice lifecycle events."""
    return _make_event


@pytest.fixture
def fixed_clock() -> Any:
    """Clock pinned to mid-June 2026: rolling window 2025-07 .. 2026-06."""
    return lambda: FIXED_NOW
