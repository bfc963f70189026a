"""Synchronization orchestrator keeping the revenue ledger in step with invoices.

``RevenueSyncService.process_invoice_change`` is the single entry point for
invoice change events. For every event it:

1. classifies the ``(previous, current)`` pair into a ``ChangePlan`` and skips it
   whole when a newer version of the invoice was already applied
2. applies each period mutation in its own transaction (read, compute, write)
3. retries a mutation on ``RevenueConflictError`` with freshly read state
4. reports the outcome as a ``SyncResult`` and, on failure, writes the event
   to the reconciliation log so it can be replayed

A ``PERIOD_MOVE`` is two independent mutations. If the second one fails the
ledger is left half-applied; the result is ``PARTIAL`` and the logged entry
names the step reached. Replaying it through ``retry_failures`` finishes the
move, because the already-applied half is recognised as a duplicate.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revledger.core.config import Settings
from revledger.core.errors import (
    LedgerError,
    LedgerValidationError,
    RevenueConflictError,
    RevenueNotFoundError,
    RevenueStoreError,
    RevenueSyncError,
)
from revledger.models.revenue import RevenueSource
from revledger.services.revenue.calculator import LedgerTotals, apply_contribution_change
from revledger.services.revenue.classifier import (
    ChangeKind,
    ChangePlan,
    MutationStep,
    PeriodMutation,
    classify_contributions,
    plan_change,
)
from revledger.services.revenue.events import InvoiceChangeEvent
from revledger.services.revenue.failures import SyncFailureRepository
from revledger.services.revenue.period import format_period
from revledger.services.revenue.repository import RevenueRecord, RevenueRepository

logger = structlog.get_logger()


class FailurePolicy(str, Enum):
    """What ``process_invoice_change`` does with a failed result."""

    RETURN = "return"
    RAISE = "raise"


class SyncStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    FAILED = "failed"


class MutationStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    NO_RECORD = "no_record"


@dataclass(frozen=True, slots=True)
class MutationOutcome:
    step: MutationStep
    period: date
    kind: ChangeKind
    status: MutationStatus
    record: RevenueRecord | None = None
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one change event."""

    event_id: str
    invoice_id: str | None
    kind: ChangeKind | None
    status: SyncStatus
    outcomes: tuple[MutationOutcome, ...] = ()
    error: LedgerError | None = None
    failed_step: MutationStep | None = None
    failed_period: date | None = None

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.APPLIED, SyncStatus.SKIPPED)

    @property
    def step_reached(self) -> MutationStep | None:
        return self.outcomes[-1].step if self.outcomes else None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class RevenueSyncService:
    """Applies invoice change events to the revenue ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        conflict_retries: int = 1,
        failure_policy: FailurePolicy = FailurePolicy.RETURN,
        track_contributions: bool = True,
        record_failures: bool = True,
        calculation_source: str = RevenueSource.INVOICE_EVENT.value,
        store_timeout: float | None = None,
    ) -> None:
        """Initialize the sync service.

        Args:
            session_factory: Factory for the sessions each mutation runs in
            conflict_retries: Extra attempts after an optimistic-concurrency conflict
            failure_policy: Return failures in the result or raise them
            track_contributions: Keep per-invoice rows to detect replays and stale events
            record_failures: Write failed events to the reconciliation log
            calculation_source: Provenance tag stored on written rows
            store_timeout: Seconds allowed per repository call
        """
        if conflict_retries < 0:
            raise ValueError("conflict_retries must be zero or greater")
        self.session_factory = session_factory
        self.conflict_retries = conflict_retries
        self.failure_policy = FailurePolicy(failure_policy)
        self.track_contributions = track_contributions
        self.record_failures = record_failures
        self.calculation_source = calculation_source
        self.store_timeout = store_timeout

    @classmethod
    def from_settings(
        cls, session_factory: async_sessionmaker[AsyncSession], settings: Settings
    ) -> "RevenueSyncService":
        return cls(
            session_factory,
            conflict_retries=settings.LEDGER_CONFLICT_RETRIES,
            failure_policy=FailurePolicy(settings.LEDGER_FAILURE_POLICY),
            track_contributions=settings.LEDGER_TRACK_CONTRIBUTIONS,
            record_failures=settings.LEDGER_RECORD_FAILURES,
            calculation_source=settings.LEDGER_CALCULATION_SOURCE,
            store_timeout=settings.LEDGER_STORE_TIMEOUT,
        )

    async def process_invoice_change(self, event: InvoiceChangeEvent) -> SyncResult:
        """Apply one change event to the ledger.

        Raises:
            RevenueSyncError: only under ``FailurePolicy.RAISE`` when the result is not ok
        """
        result = await self._process(event)

        if not result.ok:
            if self.record_failures:
                await self._record_failure(event, result)
            if self.failure_policy is FailurePolicy.RAISE:
                raise RevenueSyncError(
                    f"Revenue sync failed for event {event.event_id}",
                    result=result,
                    event_id=event.event_id,
                    invoice_id=event.invoice_id,
                ) from result.error

        return result

    async def retry_failures(self, limit: int = 100) -> dict[str, int]:
        """Replay pending reconciliation log entries."""
        async with self.session_factory() as session:
            pending = await SyncFailureRepository(session).list_pending(limit)

        resolved = 0
        for failure in pending:
            try:
                event = InvoiceChangeEvent.from_payload(failure.payload)
            except (LedgerError, KeyError, TypeError, ValueError) as exc:
                logger.error("sync_failure_payload_invalid", failure_id=str(failure.id), error=str(exc))
                await self._mark_failure(failure.id, resolved=False, message=str(exc))
                continue

            result = await self._process(event)
            message = result.error.message if result.error else ""
            await self._mark_failure(failure.id, resolved=result.ok, message=message)
            if result.ok:
                resolved += 1

        summary = {
            "retried": len(pending),
            "resolved": resolved,
            "still_failing": len(pending) - resolved,
        }
        logger.info("sync_failures_retried", **summary)
        return summary

    async def _process(self, event: InvoiceChangeEvent) -> SyncResult:
        log = logger.bind(event_id=event.event_id, invoice_id=event.invoice_id)

        try:
            plan = plan_change(event)
        except LedgerValidationError as exc:
            log.warning("invoice_change_rejected", error=exc.message, error_type=type(exc).__name__)
            return SyncResult(
                event_id=event.event_id,
                invoice_id=event.invoice_id,
                kind=None,
                status=SyncStatus.FAILED,
                error=exc,
            )

        log = log.bind(change_kind=plan.kind.value)
        if not plan.mutations:
            log.debug("invoice_change_ignored")
            return SyncResult(
                event_id=event.event_id,
                invoice_id=plan.invoice_id,
                kind=plan.kind,
                status=SyncStatus.SKIPPED,
            )

        outcomes: list[MutationOutcome] = []
        if self.track_contributions:
            try:
                stale = await self._stale_plan(event, plan, log)
            except LedgerError as exc:
                return self._failed(event, plan, outcomes, plan.mutations[0], exc, log)
            if stale is not None:
                return stale

        for mutation in plan.mutations:
            try:
                outcome = await self._apply_with_retry(plan.invoice_id, mutation, log)
            except LedgerError as exc:
                return self._failed(event, plan, outcomes, mutation, exc, log)
            outcomes.append(outcome)

        applied = any(outcome.status is MutationStatus.APPLIED for outcome in outcomes)
        log.info(
            "invoice_change_applied" if applied else "invoice_change_skipped",
            periods=[format_period(outcome.period) for outcome in outcomes],
            outcomes=[outcome.status.value for outcome in outcomes],
        )
        return SyncResult(
            event_id=event.event_id,
            invoice_id=plan.invoice_id,
            kind=plan.kind,
            status=SyncStatus.APPLIED if applied else SyncStatus.SKIPPED,
            outcomes=tuple(outcomes),
        )

    async def _stale_plan(
        self, event: InvoiceChangeEvent, plan: ChangePlan, log: Any
    ) -> SyncResult | None:
        """Skip the whole plan when a newer version of the invoice was already applied.

        Checked once per event so both halves of a ``PERIOD_MOVE`` share the decision.
        """
        version = plan.mutations[0].invoice_version
        if version is None:
            return None

        async with self.session_factory() as session:
            latest = await RevenueRepository(
                session, timeout=self.store_timeout
            ).find_invoice_version(plan.invoice_id)

        if not _is_stale(latest, version):
            return None

        log.warning("invoice_change_stale", event_version=version, applied_version=latest)
        return SyncResult(
            event_id=event.event_id,
            invoice_id=plan.invoice_id,
            kind=plan.kind,
            status=SyncStatus.SKIPPED,
            outcomes=tuple(
                self._outcome(mutation, mutation.kind, MutationStatus.STALE)
                for mutation in plan.mutations
            ),
        )

    async def _apply_with_retry(
        self, invoice_id: str, mutation: PeriodMutation, log: Any
    ) -> MutationOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._apply_once(invoice_id, mutation, attempt, log)
            except RevenueConflictError as exc:
                if attempt > self.conflict_retries:
                    log.error(
                        "revenue_conflict_exhausted",
                        period=format_period(mutation.period),
                        attempts=attempt,
                        error=exc.message,
                    )
                    raise
                log.warning(
                    "revenue_conflict_retrying",
                    period=format_period(mutation.period),
                    attempt=attempt,
                    error=exc.message,
                )

    async def _apply_once(
        self, invoice_id: str, mutation: PeriodMutation, attempt: int, log: Any
    ) -> MutationOutcome:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    repository = RevenueRepository(session, timeout=self.store_timeout)
                    return await self._apply_in_transaction(
                        repository, invoice_id, mutation, attempt, log
                    )
            except SQLAlchemyError as exc:
                raise RevenueStoreError(
                    f"Transaction failed for period {format_period(mutation.period)}",
                    period=mutation.period,
                    invoice_id=invoice_id,
                ) from exc

    async def _apply_in_transaction(
        self,
        repository: RevenueRepository,
        invoice_id: str,
        mutation: PeriodMutation,
        attempt: int,
        log: Any,
    ) -> MutationOutcome:
        period = mutation.period
        previous, current, kind = mutation.previous, mutation.current, mutation.kind
        log = log.bind(period=format_period(period), step=mutation.step.value)

        if self.track_contributions:
            tracked = await repository.find_contribution(period, invoice_id)
            tracked_contribution = tracked.contribution if tracked else None

            if tracked_contribution == current:
                log.info("invoice_change_duplicate")
                await self._remember_version(repository, invoice_id, mutation)
                return self._outcome(mutation, kind, MutationStatus.DUPLICATE, attempt=attempt)

            # Re-checked under the transaction in case a newer event landed mid-plan
            if mutation.invoice_version is not None:
                latest = await repository.find_invoice_version(invoice_id)
                if _is_stale(latest, mutation.invoice_version):
                    log.warning(
                        "invoice_change_stale",
                        event_version=mutation.invoice_version,
                        applied_version=latest,
                    )
                    return self._outcome(mutation, kind, MutationStatus.STALE, attempt=attempt)

            if tracked_contribution != previous:
                log.warning(
                    "contribution_drift",
                    expected_amount=previous.amount if previous else None,
                    expected_status=previous.status if previous else None,
                    tracked_amount=tracked_contribution.amount if tracked_contribution else None,
                    tracked_status=tracked_contribution.status if tracked_contribution else None,
                )
                previous = tracked_contribution
                kind = classify_contributions(previous, current)

        record = await repository.find_by_period(period)
        if record is None:
            if current is None:
                log.warning("revenue_record_missing_for_removal")
                if self.track_contributions:
                    await self._remember_version(repository, invoice_id, mutation)
                return self._outcome(mutation, kind, MutationStatus.NO_RECORD, attempt=attempt)
            if previous is not None:
                log.warning("revenue_record_missing_for_update")
            totals = apply_contribution_change(LedgerTotals(), previous, current)
            record = await repository.create(period, totals, self.calculation_source)
        else:
            totals = apply_contribution_change(record.totals, previous, current)
            try:
                record = await repository.update(
                    record.id,
                    totals,
                    expected_version=record.version,
                    calculation_source=self.calculation_source,
                )
            except RevenueNotFoundError:
                log.critical("revenue_record_vanished", revenue_id=str(record.id))
                raise

        if self.track_contributions:
            if current is None:
                await repository.remove_contribution(period, invoice_id)
            else:
                await repository.save_contribution(
                    record.id, period, invoice_id, current, mutation.invoice_version
                )
            await self._remember_version(repository, invoice_id, mutation)

        log.info(
            "revenue_period_updated",
            kind=kind.value,
            invoice_count=record.invoice_count,
            total_amount=record.total_amount,
            total_paid_amount=record.total_paid_amount,
            total_pending_amount=record.total_pending_amount,
            version=record.version,
        )
        return self._outcome(mutation, kind, MutationStatus.APPLIED, record=record, attempt=attempt)

    def _failed(
        self,
        event: InvoiceChangeEvent,
        plan: ChangePlan,
        outcomes: list[MutationOutcome],
        mutation: PeriodMutation,
        error: LedgerError,
        log: Any,
    ) -> SyncResult:
        partial = bool(outcomes)
        context = {
            "failed_period": format_period(mutation.period),
            "failed_step": mutation.step.value,
            "error": error.message,
            "error_type": type(error).__name__,
        }

        if partial:
            log.error(
                "period_move_partially_applied",
                step_reached=outcomes[-1].step.value,
                applied_period=format_period(outcomes[-1].period),
                **context,
            )
        elif isinstance(error, RevenueNotFoundError):
            log.critical("invoice_change_failed", **context)
        elif isinstance(error, LedgerValidationError):
            log.warning("invoice_change_failed", **context)
        else:
            log.error("invoice_change_failed", exc_info=error, **context)

        return SyncResult(
            event_id=event.event_id,
            invoice_id=plan.invoice_id,
            kind=plan.kind,
            status=SyncStatus.PARTIAL if partial else SyncStatus.FAILED,
            outcomes=tuple(outcomes),
            error=error,
            failed_step=mutation.step,
            failed_period=mutation.period,
        )

    async def _record_failure(self, event: InvoiceChangeEvent, result: SyncResult) -> None:
        error = result.error
        if error is None or isinstance(error, LedgerValidationError):
            return

        try:
            async with self.session_factory() as session, session.begin():
                await SyncFailureRepository(session).record(
                    event_id=event.event_id,
                    invoice_id=result.invoice_id,
                    payload=event.to_payload(),
                    error_type=type(error).__name__,
                    error_category=error.category,
                    error_message=error.message,
                    change_kind=result.kind.value if result.kind else None,
                    step_reached=result.step_reached.value if result.step_reached else None,
                    failed_step=result.failed_step.value if result.failed_step else None,
                    failed_period=result.failed_period,
                )
        except SQLAlchemyError:
            logger.exception(
                "sync_failure_log_write_failed",
                event_id=event.event_id,
                invoice_id=result.invoice_id,
            )

    async def _mark_failure(self, failure_id: Any, *, resolved: bool, message: str) -> None:
        async with self.session_factory() as session, session.begin():
            repository = SyncFailureRepository(session)
            if resolved:
                await repository.mark_resolved(failure_id)
            else:
                await repository.mark_retry_failed(failure_id, message)

    @staticmethod
    async def _remember_version(
        repository: RevenueRepository, invoice_id: str, mutation: PeriodMutation
    ) -> None:
        if mutation.invoice_version is not None:
            await repository.save_invoice_version(invoice_id, mutation.invoice_version)

    @staticmethod
    def _outcome(
        mutation: PeriodMutation,
        kind: ChangeKind,
        status: MutationStatus,
        *,
        record: RevenueRecord | None = None,
        attempt: int = 1,
    ) -> MutationOutcome:
        return MutationOutcome(
            step=mutation.step,
            period=mutation.period,
            kind=kind,
            status=status,
            record=record,
            attempts=attempt,
        )


def _is_stale(applied_version: int | None, version: int | None) -> bool:
    return applied_version is not None and version is not None and version < applied_version
