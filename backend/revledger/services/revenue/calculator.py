"""Bucket and aggregate arithmetic for revenue totals.

Pure functions over integer minor units. Results that would go negative are
floored to zero and logged as ``bucket_clamped`` / ``aggregate_clamped``; a
clamp means the ledger has drifted, it is never an error.
"""

from dataclasses import dataclass

import structlog

from revledger.core.errors import IneligibleStatusError
from revledger.services.revenue.events import Contribution, InvoiceStatus, normalize_status

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class BucketTotals:
    """Paid / pending sub-totals of a period."""

    paid: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.paid + self.pending


@dataclass(frozen=True, slots=True)
class LedgerTotals:
    """The numeric state of one revenue row."""

    invoice_count: int = 0
    total_amount: int = 0
    total_paid_amount: int = 0
    total_pending_amount: int = 0

    @property
    def buckets(self) -> BucketTotals:
        return BucketTotals(paid=self.total_paid_amount, pending=self.total_pending_amount)

    def is_consistent(self) -> bool:
        """Buckets partition the total and nothing is negative."""
        return (
            self.total_amount == self.total_paid_amount + self.total_pending_amount
            and min(
                self.invoice_count,
                self.total_amount,
                self.total_paid_amount,
                self.total_pending_amount,
            )
            >= 0
        )


def apply_delta_to_bucket(current: BucketTotals, status: str, delta: int) -> BucketTotals:
    """Add ``delta`` to the bucket selected by ``status``, flooring at zero.

    Raises:
        IneligibleStatusError: if ``status`` is neither paid nor pending
    """
    bucket = normalize_status(status)
    if bucket == InvoiceStatus.PAID.value:
        return BucketTotals(paid=_clamp(current.paid + delta, bucket, delta), pending=current.pending)
    if bucket == InvoiceStatus.PENDING.value:
        return BucketTotals(paid=current.paid, pending=_clamp(current.pending + delta, bucket, delta))
    raise IneligibleStatusError(f"Status {status!r} has no revenue bucket", status=status)


def move_between_buckets(
    current: BucketTotals,
    *,
    from_status: str,
    to_status: str,
    previous_amount: int,
    current_amount: int,
) -> BucketTotals:
    """Take ``previous_amount`` out of one bucket and put ``current_amount`` in another."""
    drained = apply_delta_to_bucket(current, from_status, -previous_amount)
    return apply_delta_to_bucket(drained, to_status, current_amount)


def compute_aggregate_after_add(count: int, total: int, amount: int) -> tuple[int, int]:
    return count + 1, total + amount


def compute_aggregate_after_removal(count: int, total: int, amount: int) -> tuple[int, int]:
    new_count = count - 1
    new_total = total - amount
    if new_count < 0 or new_total < 0:
        logger.warning(
            "aggregate_clamped",
            operation="removal",
            invoice_count=count,
            total_amount=total,
            amount=amount,
        )
    return max(0, new_count), max(0, new_total)


def compute_aggregate_after_amount_change(
    count: int, total: int, amount: int, previous_amount: int
) -> tuple[int, int]:
    new_total = total + (amount - previous_amount)
    if new_total < 0:
        logger.warning(
            "aggregate_clamped",
            operation="amount_change",
            total_amount=total,
            amount=amount,
            previous_amount=previous_amount,
        )
    return count, max(0, new_total)


def apply_contribution_change(
    totals: LedgerTotals,
    previous: Contribution | None,
    current: Contribution | None,
) -> LedgerTotals:
    """Compute a period's new totals when one invoice's contribution changes.

    ``previous``/``current`` are what the invoice contributed to this period
    before and after the change (``None`` for nothing). The stored total is
    always the bucket sum, so the partition invariant survives clamping.
    """
    buckets = totals.buckets
    count, total = totals.invoice_count, totals.total_amount

    if previous is None and current is None:
        return totals

    if previous is None:
        buckets = apply_delta_to_bucket(buckets, current.status, current.amount)
        count, total = compute_aggregate_after_add(count, total, current.amount)
    elif current is None:
        buckets = apply_delta_to_bucket(buckets, previous.status, -previous.amount)
        count, total = compute_aggregate_after_removal(count, total, previous.amount)
    elif previous.status == current.status:
        buckets = apply_delta_to_bucket(buckets, current.status, current.amount - previous.amount)
        count, total = compute_aggregate_after_amount_change(
            count, total, current.amount, previous.amount
        )
    else:
        buckets = move_between_buckets(
            buckets,
            from_status=previous.status,
            to_status=current.status,
            previous_amount=previous.amount,
            current_amount=current.amount,
        )
        count, total = compute_aggregate_after_amount_change(
            count, total, current.amount, previous.amount
        )

    if total != buckets.total:
        logger.warning(
            "aggregate_total_reconciled",
            computed_total=total,
            bucket_total=buckets.total,
        )

    return LedgerTotals(
        invoice_count=count,
        total_amount=buckets.total,
        total_paid_amount=buckets.paid,
        total_pending_amount=buckets.pending,
    )


def totals_from_contributions(contributions: list[Contribution]) -> LedgerTotals:
    """Totals of a period rebuilt from scratch."""
    totals = LedgerTotals()
    for contribution in contributions:
        totals = apply_contribution_change(totals, None, contribution)
    return totals


def _clamp(value: int, bucket: str, delta: int) -> int:
    if value < 0:
        logger.warning("bucket_clamped", bucket=bucket, delta=delta, shortfall=-value)
        return 0
    return value
