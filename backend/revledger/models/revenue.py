"""Revenue ledger models: monthly aggregates, per-invoice contributions, failure log."""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from revledger.db.base import Base, TimestampMixin


class RevenueSource(str, Enum):
    """Provenance of the numbers stored on a revenue row."""

    INVOICE_EVENT = "invoice_event"
    TEMPLATE = "template"
    BACKFILL = "backfill"


class SyncFailureStatus(str, Enum):
    """Lifecycle of a reconciliation log entry."""

    PENDING = "pending"
    RESOLVED = "resolved"


class Revenue(Base, TimestampMixin):
    """Monthly revenue aggregate.

    One row per calendar month. Amounts are integer minor currency units and
    the paid/pending buckets always partition ``total_amount``. ``version`` is
    bumped on every write and used as the optimistic-concurrency guard.
    """

    __tablename__ = "revenues"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_revenues_total_non_negative"),
        CheckConstraint("total_paid_amount >= 0", name="ck_revenues_paid_non_negative"),
        CheckConstraint("total_pending_amount >= 0", name="ck_revenues_pending_non_negative"),
        CheckConstraint("invoice_count >= 0", name="ck_revenues_count_non_negative"),
        CheckConstraint(
            "total_amount = total_paid_amount + total_pending_amount",
            name="ck_revenues_buckets_partition_total",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    period: Mapped[date] = mapped_column(
        Date, unique=True, index=True, nullable=False, comment="First day of the calendar month"
    )

    total_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_paid_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_pending_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    invoice_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    calculation_source: Mapped[str] = mapped_column(
        String(50), default=RevenueSource.INVOICE_EVENT.value, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def __repr__(self) -> str:
        return f"<Revenue(period={self.period}, total={self.total_amount}, invoices={self.invoice_count})>"


class RevenueContribution(Base, TimestampMixin):
    """What a single invoice currently contributes to a period's totals."""

    __tablename__ = "revenue_contributions"
    __table_args__ = (
        UniqueConstraint("period", "invoice_id", name="uq_revenue_contribution_period_invoice"),
        CheckConstraint("amount >= 0", name="ck_revenue_contributions_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    revenue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("revenues.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    period: Mapped[date] = mapped_column(Date, nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # paid, pending
    invoice_version: Mapped[int | None] = mapped_column(Integer, nullable=True)


class RevenueInvoiceVersion(Base, TimestampMixin):
    """Latest invoice version applied to the ledger.

    Kept per invoice rather than per period so it survives the removal of
    contribution rows when an invoice moves between months or is deleted.
    """

    __tablename__ = "revenue_invoice_versions"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_version: Mapped[int] = mapped_column(Integer, nullable=False)


class RevenueSyncFailure(Base, TimestampMixin):
    """Reconciliation log entry for an event that failed or was half-applied."""

    __tablename__ = "revenue_sync_failures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    change_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    step_reached: Mapped[str | None] = mapped_column(
        String(50), nullable=True, comment="Last step applied before the failure"
    )
    failed_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failed_period: Mapped[date | None] = mapped_column(Date, nullable=True)
    error_type: Mapped[str] = mapped_column(String(100), nullable=False)
    error_category: Mapped[str] = mapped_column(String(30), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SyncFailureStatus.PENDING.value, index=True, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
