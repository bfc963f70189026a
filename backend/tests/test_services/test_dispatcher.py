"""Tests for in-process invoice event delivery."""

from collections.abc import Callable
from datetime import date

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revledger.services.revenue.dispatcher import InvoiceEventDispatcher
from revledger.services.revenue.events import InvoiceChangeEvent, InvoiceSnapshot
from revledger.services.revenue.repository import RevenueRepository
from revledger.services.revenue.sync import RevenueSyncService


class TestInvoiceEventDispatcher:
    """Test subscription and fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_all_handlers(
        self, make_invoice: Callable[..., InvoiceSnapshot]
    ) -> None:
        dispatcher = InvoiceEventDispatcher()
        received: list[str] = []

        async def first(event: InvoiceChangeEvent) -> None:
            received.append(f"first:{event.invoice_id}")

        async def second(event: InvoiceChangeEvent) -> None:
            received.append(f"second:{event.invoice_id}")

        dispatcher.subscribe(first)
        dispatcher.subscribe(second)

        delivered = await dispatcher.publish(InvoiceChangeEvent.created(make_invoice()))

        assert delivered == 2
        assert received == ["first:inv-1", "second:inv-1"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(
        self, make_invoice: Callable[..., InvoiceSnapshot]
    ) -> None:
        """Test a handler error is contained and the next handler still runs."""
        dispatcher = InvoiceEventDispatcher()
        received: list[InvoiceChangeEvent] = []

        async def broken(event: InvoiceChangeEvent) -> None:
            raise RuntimeError("handler exploded")

        async def healthy(event: InvoiceChangeEvent) -> None:
            received.append(event)

        dispatcher.subscribe(broken)
        dispatcher.subscribe(healthy)

        delivered = await dispatcher.publish(InvoiceChangeEvent.created(make_invoice()))

        assert delivered == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_invoice: Callable[..., InvoiceSnapshot]) -> None:
        dispatcher = InvoiceEventDispatcher()
        received: list[InvoiceChangeEvent] = []

        async def handler(event: InvoiceChangeEvent) -> None:
            received.append(event)

        unsubscribe = dispatcher.subscribe(handler)
        unsubscribe()
        unsubscribe()

        assert dispatcher.handler_count == 0
        assert await dispatcher.publish(InvoiceChangeEvent.created(make_invoice())) == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_sync_service_as_subscriber(
        self,
        sync_service: RevenueSyncService,
        session_factory: async_sessionmaker[AsyncSession],
        make_invoice: Callable[..., InvoiceSnapshot],
    ) -> None:
        """Test the ledger is updated when the sync service is subscribed."""
        dispatcher = InvoiceEventDispatcher()
        dispatcher.subscribe(sync_service.process_invoice_change)

        await dispatcher.publish(InvoiceChangeEvent.created(make_invoice(amount=250, status="paid")))

        async with session_factory() as session:
            record = await RevenueRepository(session).find_by_period(date(2024, 3, 1))
        assert record is not None
        assert record.total_paid_amount == 250
