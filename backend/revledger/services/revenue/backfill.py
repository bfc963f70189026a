"""Rebuild period totals from a full invoice listing.

Used to repair drift and to seed contribution tracking for data written
before tracking existed. Every date is parsed before the first write, and the
whole rebuild runs in one transaction.
"""

from collections import defaultdict
from collections.abc import Iterable
from datetime import date

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revledger.core.errors import LedgerValidationError
from revledger.models.revenue import RevenueSource
from revledger.services.revenue.calculator import totals_from_contributions
from revledger.services.revenue.events import Contribution, InvoiceSnapshot
from revledger.services.revenue.period import derive_period, format_period, period_range
from revledger.services.revenue.repository import RevenueRepository

logger = structlog.get_logger()


class RevenueBackfillService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store_timeout: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store_timeout = store_timeout

    async def rebuild(
        self,
        invoices: Iterable[InvoiceSnapshot],
        start: date | None = None,
        end: date | None = None,
    ) -> dict[str, int]:
        """Recompute every period touched by ``invoices``.

        When ``start``/``end`` are given, only periods inside the range are
        written, and periods in the range with no eligible invoice are reset
        to zero.

        Raises:
            InvalidDateError: if any invoice date cannot be normalized
            LedgerValidationError: if only one range bound is given or ``start > end``
        """
        if (start is None) != (end is None):
            raise LedgerValidationError("Rebuild range needs both start and end")

        window: list[date] = []
        if start is not None and end is not None:
            start, end = derive_period(start), derive_period(end)
            if start > end:
                raise LedgerValidationError(
                    "Rebuild range start is after its end",
                    start=format_period(start),
                    end=format_period(end),
                )
            window = period_range(start, end)

        # Parse everything first so a bad date aborts before any write
        placed = [(derive_period(invoice.date), invoice) for invoice in invoices]

        grouped: dict[date, dict[str, tuple[Contribution, int | None]]] = defaultdict(dict)
        for period, invoice in placed:
            contribution = Contribution.of(invoice)
            if contribution is None:
                continue
            if window and period not in window:
                continue
            grouped[period][invoice.id] = (contribution, invoice.version)

        targets = sorted(set(grouped) | set(window))
        invoices_counted = 0

        async with self.session_factory() as session, session.begin():
            repository = RevenueRepository(session, timeout=self.store_timeout)
            for period in targets:
                contributions = grouped.get(period, {})
                totals = totals_from_contributions(
                    [contribution for contribution, _ in contributions.values()]
                )
                record = await repository.upsert_by_period(
                    period, totals, RevenueSource.BACKFILL.value
                )
                await repository.replace_contributions(record.id, period, contributions)
                invoices_counted += len(contributions)

        logger.info(
            "revenue_rebuild_completed",
            periods_rebuilt=len(targets),
            invoices_counted=invoices_counted,
            invoices_seen=len(placed),
        )
        return {"periods_rebuilt": len(targets), "invoices_counted": invoices_counted}
