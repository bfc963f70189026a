"""Tests for rebuilding the ledger from an invoice listing."""

from collections.abc import Callable
from datetime import date

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revledger.core.errors import InvalidDateError, LedgerValidationError
from revledger.models.revenue import RevenueSource
from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.events import InvoiceChangeEvent, InvoiceSnapshot
from revledger.services.revenue.repository import RevenueRepository
from revledger.services.revenue.sync import MutationStatus, RevenueSyncService

MakeInvoice = Callable[..., InvoiceSnapshot]


class TestRebuild:
    """Test recomputation of periods and contribution rows."""

    @pytest.mark.asyncio
    async def test_rebuild_groups_invoices_by_period(
        self,
        backfill_service: RevenueBackfillService,
        session_factory: async_sessionmaker[AsyncSession],
        make_invoice: MakeInvoice,
    ) -> None:
        """Test eligible invoices are totalled per month and drafts are ignored."""
        invoices = [
            make_invoice(id="a", amount=100, status="paid", date="2024-01-05"),
            make_invoice(id="b", amount=200, status="pending", date="2024-01-25"),
            make_invoice(id="c", amount=300, status="paid", date="2024-02-10"),
            make_invoice(id="d", amount=999, status="draft", date="2024-02-11"),
        ]

        summary = await backfill_service.rebuild(invoices)

        assert summary == {"periods_rebuilt": 2, "invoices_counted": 3}
        async with session_factory() as session:
            repository = RevenueRepository(session)
            january = await repository.find_by_period(date(2024, 1, 1))
            february = await repository.find_by_period(date(2024, 2, 1))
            assert january is not None and february is not None
            assert (january.invoice_count, january.total_paid_amount, january.total_pending_amount) == (
                2,
                100,
                200,
            )
            assert february.total_amount == 300
            assert february.calculation_source == RevenueSource.BACKFILL.value
            assert len(await repository.list_contributions(date(2024, 1, 1))) == 2

    @pytest.mark.asyncio
    async def test_rebuild_overwrites_drift_and_resets_empty_months(
        self,
        backfill_service: RevenueBackfillService,
        sync_service: RevenueSyncService,
        session_factory: async_sessionmaker[AsyncSession],
        make_invoice: MakeInvoice,
    ) -> None:
        await sync_service.process_invoice_change(
            InvoiceChangeEvent.created(make_invoice(id="x", amount=500, date="2024-03-03"))
        )

        summary = await backfill_service.rebuild(
            [make_invoice(id="y", amount=50, status="paid", date="2024-02-02")],
            start=date(2024, 2, 1),
            end=date(2024, 3, 1),
        )

        assert summary == {"periods_rebuilt": 2, "invoices_counted": 1}
        async with session_factory() as session:
            repository = RevenueRepository(session)
            march = await repository.find_by_period(date(2024, 3, 1))
            assert march is not None
            assert (march.invoice_count, march.total_amount) == (0, 0)
            assert await repository.list_contributions(date(2024, 3, 1)) == []

    @pytest.mark.asyncio
    async def test_rebuilt_contributions_make_replays_duplicates(
        self,
        backfill_service: RevenueBackfillService,
        sync_service: RevenueSyncService,
        make_invoice: MakeInvoice,
    ) -> None:
        """Test events already reflected by a rebuild are not counted twice."""
        invoice = make_invoice(amount=400, status="paid")
        await backfill_service.rebuild([invoice])

        result = await sync_service.process_invoice_change(InvoiceChangeEvent.created(invoice))

        assert result.outcomes[0].status is MutationStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_bad_date_aborts_before_writing(
        self,
        backfill_service: RevenueBackfillService,
        session_factory: async_sessionmaker[AsyncSession],
        make_invoice: MakeInvoice,
    ) -> None:
        invoices = [
            make_invoice(id="ok", date="2024-01-05"),
            make_invoice(id="bad", date="31/01/2024"),
        ]

        with pytest.raises(InvalidDateError):
            await backfill_service.rebuild(invoices)

        async with session_factory() as session:
            assert await RevenueRepository(session).find_by_period(date(2024, 1, 1)) is None

    @pytest.mark.asyncio
    async def test_half_open_range_rejected(self, backfill_service: RevenueBackfillService) -> None:
        with pytest.raises(LedgerValidationError):
            await backfill_service.rebuild([], start=date(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, backfill_service: RevenueBackfillService) -> None:
        with pytest.raises(LedgerValidationError):
            await backfill_service.rebuild([], start=date(2024, 3, 1), end=date(2024, 1, 1))
