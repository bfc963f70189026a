"""Revenue repository backed by async SQLAlchemy.

Enforces the persistence invariants of the ledger:

- ``period`` is the uniqueness key, one row per calendar month
- every write bumps ``version``; ``update`` only succeeds against the version
  the caller read, so a lost update surfaces as ``RevenueConflictError``
- every call is bounded by the store timeout

The repository never commits. Callers own the transaction, which keeps a
record update and its contribution bookkeeping atomic.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from revledger.core.errors import (
    LedgerValidationError,
    RevenueConflictError,
    RevenueNotFoundError,
    RevenueStoreError,
)
from revledger.models.revenue import (
    Revenue,
    RevenueContribution,
    RevenueInvoiceVersion,
    RevenueSource,
)
from revledger.services.revenue.calculator import LedgerTotals
from revledger.services.revenue.events import Contribution
from revledger.services.revenue.period import format_period, is_period


@dataclass(frozen=True, slots=True)
class RevenueRecord:
    """Detached snapshot of a revenue row."""

    id: uuid.UUID
    period: date
    invoice_count: int
    total_amount: int
    total_paid_amount: int
    total_pending_amount: int
    calculation_source: str
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def totals(self) -> LedgerTotals:
        return LedgerTotals(
            invoice_count=self.invoice_count,
            total_amount=self.total_amount,
            total_paid_amount=self.total_paid_amount,
            total_pending_amount=self.total_pending_amount,
        )

    @classmethod
    def from_model(cls, row: Revenue) -> "RevenueRecord":
        return cls(
            id=row.id,
            period=row.period,
            invoice_count=row.invoice_count,
            total_amount=row.total_amount,
            total_paid_amount=row.total_paid_amount,
            total_pending_amount=row.total_pending_amount,
            calculation_source=row.calculation_source,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass(frozen=True, slots=True)
class TrackedContribution:
    """Contribution row as stored for one ``(period, invoice)`` pair."""

    period: date
    invoice_id: str
    amount: int
    status: str
    invoice_version: int | None

    @property
    def contribution(self) -> Contribution:
        return Contribution(amount=self.amount, status=self.status)


class RevenueRepository:
    """Persistence operations for revenue rows and their contributions."""

    def __init__(self, session: AsyncSession, timeout: float | None = None) -> None:
        self.session = session
        self.timeout = timeout

    async def find_by_period(self, period: date) -> RevenueRecord | None:
        _require_period(period)
        async with self._guard("find_by_period", period=period):
            row = await self._select_one(Revenue.period == period)
        return RevenueRecord.from_model(row) if row else None

    async def find_by_id(self, revenue_id: uuid.UUID) -> RevenueRecord | None:
        async with self._guard("find_by_id", revenue_id=revenue_id):
            row = await self._select_one(Revenue.id == revenue_id)
        return RevenueRecord.from_model(row) if row else None

    async def find_by_date_range(self, start: date, end: date) -> list[RevenueRecord]:
        """Rows with ``start <= period <= end``, most recent first."""
        _require_period(start)
        _require_period(end)
        async with self._guard("find_by_date_range", start=start, end=end):
            result = await self.session.execute(
                select(Revenue)
                .where(Revenue.period >= start, Revenue.period <= end)
                .order_by(Revenue.period.desc())
            )
            rows = result.scalars().all()
        return [RevenueRecord.from_model(row) for row in rows]

    async def create(
        self,
        period: date,
        totals: LedgerTotals,
        calculation_source: str = RevenueSource.INVOICE_EVENT.value,
    ) -> RevenueRecord:
        """Insert the row for ``period``.

        Raises:
            RevenueConflictError: if another writer created the period first
        """
        _require_period(period)
        _require_consistent(totals, period)
        row = Revenue(
            period=period,
            invoice_count=totals.invoice_count,
            total_amount=totals.total_amount,
            total_paid_amount=totals.total_paid_amount,
            total_pending_amount=totals.total_pending_amount,
            calculation_source=calculation_source,
            version=1,
        )
        async with self._guard("create", integrity_is_conflict=True, period=period):
            self.session.add(row)
            await self.session.flush()
        return RevenueRecord.from_model(row)

    async def update(
        self,
        revenue_id: uuid.UUID,
        totals: LedgerTotals,
        *,
        expected_version: int,
        calculation_source: str = RevenueSource.INVOICE_EVENT.value,
    ) -> RevenueRecord:
        """Write new totals if the row is still at ``expected_version``.

        Raises:
            RevenueNotFoundError: if no row has ``revenue_id``
            RevenueConflictError: if the row moved past ``expected_version``
        """
        _require_consistent(totals, revenue_id)
        async with self._guard("update", revenue_id=revenue_id):
            result = await self.session.execute(
                update(Revenue)
                .where(Revenue.id == revenue_id, Revenue.version == expected_version)
                .values(
                    invoice_count=totals.invoice_count,
                    total_amount=totals.total_amount,
                    total_paid_amount=totals.total_paid_amount,
                    total_pending_amount=totals.total_pending_amount,
                    calculation_source=calculation_source,
                    version=Revenue.version + 1,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                current = await self._select_one(Revenue.id == revenue_id)
                if current is None:
                    raise RevenueNotFoundError(
                        "Revenue record not found for update", revenue_id=revenue_id
                    )
                raise RevenueConflictError(
                    "Revenue record was modified concurrently",
                    revenue_id=revenue_id,
                    period=current.period,
                    expected_version=expected_version,
                    actual_version=current.version,
                )

            row = await self._select_one(Revenue.id == revenue_id)
        return RevenueRecord.from_model(row)

    async def upsert_by_period(
        self,
        period: date,
        totals: LedgerTotals,
        calculation_source: str = RevenueSource.INVOICE_EVENT.value,
    ) -> RevenueRecord:
        """Insert the period row, or overwrite its totals if it exists."""
        existing = await self.find_by_period(period)
        if existing is None:
            return await self.create(period, totals, calculation_source)
        return await self.update(
            existing.id,
            totals,
            expected_version=existing.version,
            calculation_source=calculation_source,
        )

    async def delete(self, revenue_id: uuid.UUID) -> None:
        async with self._guard("delete", revenue_id=revenue_id):
            result = await self.session.execute(delete(Revenue).where(Revenue.id == revenue_id))
            if result.rowcount == 0:
                raise RevenueNotFoundError(
                    "Revenue record not found for delete", revenue_id=revenue_id
                )

    async def find_contribution(self, period: date, invoice_id: str) -> TrackedContribution | None:
        async with self._guard("find_contribution", period=period, invoice_id=invoice_id):
            row = await self._select_contribution(period, invoice_id)
        return _tracked(row) if row else None

    async def list_contributions(self, period: date) -> list[TrackedContribution]:
        async with self._guard("list_contributions", period=period):
            result = await self.session.execute(
                select(RevenueContribution)
                .where(RevenueContribution.period == period)
                .order_by(RevenueContribution.invoice_id)
            )
            rows = result.scalars().all()
        return [_tracked(row) for row in rows]

    async def save_contribution(
        self,
        revenue_id: uuid.UUID,
        period: date,
        invoice_id: str,
        contribution: Contribution,
        invoice_version: int | None = None,
    ) -> None:
        async with self._guard(
            "save_contribution", integrity_is_conflict=True, period=period, invoice_id=invoice_id
        ):
            row = await self._select_contribution(period, invoice_id)
            if row is None:
                row = RevenueContribution(
                    revenue_id=revenue_id,
                    period=period,
                    invoice_id=invoice_id,
                )
                self.session.add(row)
            row.amount = contribution.amount
            row.status = contribution.status
            if invoice_version is not None:
                row.invoice_version = invoice_version
            await self.session.flush()

    async def remove_contribution(self, period: date, invoice_id: str) -> None:
        async with self._guard("remove_contribution", period=period, invoice_id=invoice_id):
            await self.session.execute(
                delete(RevenueContribution).where(
                    RevenueContribution.period == period,
                    RevenueContribution.invoice_id == invoice_id,
                )
            )

    async def replace_contributions(
        self,
        revenue_id: uuid.UUID,
        period: date,
        contributions: dict[str, tuple[Contribution, int | None]],
    ) -> None:
        """Swap all contribution rows of a period for ``contributions``."""
        async with self._guard("replace_contributions", period=period):
            await self.session.execute(
                delete(RevenueContribution).where(RevenueContribution.period == period)
            )
            self.session.add_all(
                RevenueContribution(
                    revenue_id=revenue_id,
                    period=period,
                    invoice_id=invoice_id,
                    amount=contribution.amount,
                    status=contribution.status,
                    invoice_version=version,
                )
                for invoice_id, (contribution, version) in contributions.items()
            )
            await self.session.flush()

    async def find_invoice_version(self, invoice_id: str) -> int | None:
        async with self._guard("find_invoice_version", invoice_id=invoice_id):
            row = await self.session.get(RevenueInvoiceVersion, invoice_id, populate_existing=True)
        return row.invoice_version if row else None

    async def save_invoice_version(self, invoice_id: str, invoice_version: int) -> None:
        """Record ``invoice_version`` as applied; an older version never overwrites a newer one."""
        async with self._guard(
            "save_invoice_version", integrity_is_conflict=True, invoice_id=invoice_id
        ):
            row = await self.session.get(RevenueInvoiceVersion, invoice_id)
            if row is None:
                self.session.add(
                    RevenueInvoiceVersion(invoice_id=invoice_id, invoice_version=invoice_version)
                )
            elif invoice_version > row.invoice_version:
                row.invoice_version = invoice_version
            await self.session.flush()

    async def _select_one(self, *criteria: object) -> Revenue | None:
        result = await self.session.execute(
            select(Revenue).where(*criteria).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _select_contribution(self, period: date, invoice_id: str) -> RevenueContribution | None:
        result = await self.session.execute(
            select(RevenueContribution).where(
                RevenueContribution.period == period,
                RevenueContribution.invoice_id == invoice_id,
            )
        )
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def _guard(
        self, operation: str, integrity_is_conflict: bool = False, **context: object
    ) -> AsyncIterator[None]:
        """Bound a store call and translate driver errors into ledger errors."""
        try:
            async with asyncio.timeout(self.timeout):
                yield
        except IntegrityError as exc:
            if integrity_is_conflict:
                raise RevenueConflictError(
                    f"Concurrent write detected during {operation}", operation=operation, **context
                ) from exc
            raise RevenueStoreError(
                f"Integrity violation during {operation}", operation=operation, **context
            ) from exc
        except TimeoutError as exc:
            raise RevenueStoreError(
                f"Store call {operation} timed out after {self.timeout}s",
                operation=operation,
                **context,
            ) from exc
        except SQLAlchemyError as exc:
            raise RevenueStoreError(
                f"Store failure during {operation}: {exc}", operation=operation, **context
            ) from exc


def _tracked(row: RevenueContribution) -> TrackedContribution:
    return TrackedContribution(
        period=row.period,
        invoice_id=row.invoice_id,
        amount=row.amount,
        status=row.status,
        invoice_version=row.invoice_version,
    )


def _require_period(period: date) -> None:
    if not is_period(period):
        raise LedgerValidationError(
            f"Period must be the first day of a month, got {period!r}", period=period
        )


def _require_consistent(totals: LedgerTotals, key: object) -> None:
    if not totals.is_consistent():
        raise LedgerValidationError(
            "Revenue totals violate the ledger invariants",
            key=format_period(key) if isinstance(key, date) else key,
            totals=totals,
        )
