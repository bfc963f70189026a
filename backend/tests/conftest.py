"""Pytest configuration and fixtures for backend tests."""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from revledger.api.revenue import get_revenue_backfill, get_revenue_sync
from revledger.db.base import Base
from revledger.db.session import get_db
from revledger.main import app
from revledger.models import (  # noqa: F401
    Revenue,
    RevenueContribution,
    RevenueInvoiceVersion,
    RevenueSyncFailure,
)
from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.events import InvoiceSnapshot
from revledger.services.revenue.sync import RevenueSyncService


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite engine so every connection sees the same data."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        poolclass=NullPool,
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
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


@pytest.fixture
def sync_service(session_factory: async_sessionmaker[AsyncSession]) -> RevenueSyncService:
    """Sync service with the default policy: one conflict retry, tracking on."""
    return RevenueSyncService(session_factory, conflict_retries=1)


@pytest.fixture
def backfill_service(session_factory: async_sessionmaker[AsyncSession]) -> RevenueBackfillService:
    return RevenueBackfillService(session_factory)


@pytest_asyncio.fixture(scope="function")
async def test_client(
    session_factory: async_sessionmaker[AsyncSession],
    sync_service: RevenueSyncService,
    backfill_service: RevenueBackfillService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_revenue_sync] = lambda: sync_service
    app.dependency_overrides[get_revenue_backfill] = lambda: backfill_service

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_invoice() -> Callable[..., InvoiceSnapshot]:
    """Factory fixture for invoice snapshots."""

    def _make_invoice(**kwargs: Any) -> InvoiceSnapshot:
        invoice_data: dict[str, Any] = {
            "id": "inv-1",
            "amount": 1000,
            "status": "pending",
            "date": "2024-03-15",
        }
        invoice_data.update(kwargs)
        return InvoiceSnapshot(**invoice_data)

    return _make_invoice
