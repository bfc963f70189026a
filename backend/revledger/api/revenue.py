"""Revenue ledger API endpoints."""

from datetime import date
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revledger.core.errors import LedgerError, LedgerValidationError, RevenueSyncError
from revledger.db.session import get_db
from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.events import InvoiceChangeEvent, InvoiceSnapshot
from revledger.services.revenue.period import format_period, parse_period
from revledger.services.revenue.repository import RevenueRecord, RevenueRepository
from revledger.services.revenue.statistics import RevenueStatisticsService
from revledger.services.revenue.sync import RevenueSyncService, SyncResult

router = APIRouter(prefix="/revenue", tags=["revenue"])
logger = structlog.get_logger()

ERROR_STATUS_CODES = {
    "validation": 422,
    "not_found": 404,
    "conflict": 409,
    "infrastructure": 503,
}


def status_code_for(error: LedgerError | None) -> int:
    if error is None:
        return status.HTTP_200_OK
    return ERROR_STATUS_CODES.get(error.category, status.HTTP_500_INTERNAL_SERVER_ERROR)


def http_error(error: LedgerError) -> HTTPException:
    return HTTPException(status_code=status_code_for(error), detail=error.to_dict())


def get_revenue_sync(request: Request) -> RevenueSyncService:
    """Sync service built in the application lifespan."""
    return request.app.state.revenue_sync


def get_revenue_backfill(request: Request) -> RevenueBackfillService:
    return request.app.state.revenue_backfill


class InvoiceSnapshotPayload(BaseModel):
    """Invoice state as sent by the invoice side."""

    id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Amount in minor currency units")
    status: str
    date: str = Field(..., description="ISO 8601 date or datetime")
    version: int | None = None

    def to_snapshot(self) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            id=self.id,
            amount=self.amount,
            status=self.status,
            date=self.date,
            version=self.version,
        )


class InvoiceChangeRequest(BaseModel):
    event_id: str | None = None
    previous: InvoiceSnapshotPayload | None = None
    current: InvoiceSnapshotPayload | None = None


class RevenueRecordResponse(BaseModel):
    """One stored monthly aggregate."""

    id: str
    period: str
    invoice_count: int
    total_amount: int
    total_paid_amount: int
    total_pending_amount: int
    calculation_source: str
    version: int

    @classmethod
    def from_record(cls, record: RevenueRecord) -> "RevenueRecordResponse":
        return cls(
            id=str(record.id),
            period=format_period(record.period),
            invoice_count=record.invoice_count,
            total_amount=record.total_amount,
            total_paid_amount=record.total_paid_amount,
            total_pending_amount=record.total_pending_amount,
            calculation_source=record.calculation_source,
            version=record.version,
        )


class MutationOutcomeResponse(BaseModel):
    step: str
    period: str
    kind: str
    status: str
    attempts: int
    record: RevenueRecordResponse | None = None


class SyncResultResponse(BaseModel):
    event_id: str
    invoice_id: str | None
    kind: str | None
    status: str
    outcomes: list[MutationOutcomeResponse]
    error: dict[str, Any] | None = None

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultResponse":
        return cls(
            event_id=result.event_id,
            invoice_id=result.invoice_id,
            kind=result.kind.value if result.kind else None,
            status=result.status.value,
            outcomes=[
                MutationOutcomeResponse(
                    step=outcome.step.value,
                    period=format_period(outcome.period),
                    kind=outcome.kind.value,
                    status=outcome.status.value,
                    attempts=outcome.attempts,
                    record=RevenueRecordResponse.from_record(outcome.record)
                    if outcome.record
                    else None,
                )
                for outcome in result.outcomes
            ],
            error=result.error.to_dict() if result.error else None,
        )


class MonthlyRevenueResponse(BaseModel):
    period: str
    month: str
    year: int
    month_number: int
    display_order: int
    invoice_count: int
    total_amount: int
    total_paid_amount: int
    total_pending_amount: int
    calculation_source: str


class RevenueStatisticsResponse(BaseModel):
    maximum: int
    minimum: int
    average: int
    total: int
    months_with_data: int


class RevenueChartResponse(BaseModel):
    """Rolling 12 months, oldest first, with summary statistics."""

    months: list[MonthlyRevenueResponse]
    statistics: RevenueStatisticsResponse


class RebuildRequest(BaseModel):
    invoices: list[InvoiceSnapshotPayload]
    start: str | None = Field(None, description="First period to rebuild, YYYY-MM")
    end: str | None = Field(None, description="Last period to rebuild, YYYY-MM")


class RebuildResponse(BaseModel):
    periods_rebuilt: int
    invoices_counted: int


class RetryFailuresResponse(BaseModel):
    retried: int
    resolved: int
    still_failing: int


@router.get("", response_model=list[RevenueRecordResponse])
async def list_revenue(
    start: str = Query(..., description="First period, YYYY-MM"),
    end: str = Query(..., description="Last period, YYYY-MM"),
    db: AsyncSession = Depends(get_db),
) -> list[RevenueRecordResponse]:
    """List stored periods between ``start`` and ``end`` inclusive, newest first."""
    try:
        start_period, end_period = parse_period(start), parse_period(end)
        if start_period > end_period:
            raise LedgerValidationError(
                "Range start is after its end", start=start, end=end
            )
        records = await RevenueRepository(db).find_by_date_range(start_period, end_period)
    except LedgerError as e:
        raise http_error(e) from e

    return [RevenueRecordResponse.from_record(record) for record in records]


@router.get("/periods/{period}", response_model=RevenueRecordResponse)
async def get_revenue_period(
    period: str,
    db: AsyncSession = Depends(get_db),
) -> RevenueRecordResponse:
    """Get the stored aggregate for one ``YYYY-MM`` period."""
    try:
        record = await RevenueRepository(db).find_by_period(parse_period(period))
    except LedgerError as e:
        raise http_error(e) from e

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No revenue recorded for {period}",
        )
    return RevenueRecordResponse.from_record(record)


@router.get("/chart", response_model=RevenueChartResponse)
async def get_revenue_chart(
    today: date | None = Query(None, description="Anchor date, defaults to now"),
    db: AsyncSession = Depends(get_db),
) -> RevenueChartResponse:
    """Rolling 12-month revenue with zero-filled gaps and statistics."""
    try:
        months, stats = await RevenueStatisticsService(db).rolling_year_with_statistics(today)
    except LedgerError as e:
        raise http_error(e) from e

    return RevenueChartResponse(
        months=[
            MonthlyRevenueResponse(
                period=format_period(month.period),
                month=month.month,
                year=month.year,
                month_number=month.month_number,
                display_order=month.display_order,
                invoice_count=month.invoice_count,
                total_amount=month.total_amount,
                total_paid_amount=month.total_paid_amount,
                total_pending_amount=month.total_pending_amount,
                calculation_source=month.calculation_source,
            )
            for month in months
        ],
        statistics=RevenueStatisticsResponse(
            maximum=stats.maximum,
            minimum=stats.minimum,
            average=stats.average,
            total=stats.total,
            months_with_data=stats.months_with_data,
        ),
    )


@router.post("/invoice-events", response_model=SyncResultResponse)
async def post_invoice_event(
    body: InvoiceChangeRequest,
    sync: RevenueSyncService = Depends(get_revenue_sync),
    x_event_id: str | None = Header(default=None, alias="X-Event-ID"),
) -> Any:
    """Apply one invoice change event to the ledger.

    The event id comes from the body, then the ``X-Event-ID`` header, and is
    generated only when neither is given. Failed results are returned with the
    status code of their error category.
    """
    try:
        event_id = body.event_id or x_event_id
        extra = {"event_id": event_id} if event_id else {}
        event = InvoiceChangeEvent(
            previous=body.previous.to_snapshot() if body.previous else None,
            current=body.current.to_snapshot() if body.current else None,
            **extra,
        )
    except LedgerError as e:
        raise http_error(e) from e

    structlog.contextvars.bind_contextvars(event_id=event.event_id)

    try:
        result = await sync.process_invoice_change(event)
    except RevenueSyncError as e:
        result = e.result

    payload = SyncResultResponse.from_result(result)
    if result.ok:
        return payload
    return JSONResponse(status_code=status_code_for(result.error), content=payload.model_dump())


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_revenue(
    body: RebuildRequest,
    backfill: RevenueBackfillService = Depends(get_revenue_backfill),
) -> RebuildResponse:
    """Recompute period totals from a complete invoice listing."""
    try:
        invoices = [invoice.to_snapshot() for invoice in body.invoices]
        start = parse_period(body.start) if body.start else None
        end = parse_period(body.end) if body.end else None
        summary = await backfill.rebuild(invoices, start=start, end=end)
    except LedgerError as e:
        logger.warning("revenue_rebuild_rejected", error=e.message, category=e.category)
        raise http_error(e) from e

    return RebuildResponse(**summary)


@router.post("/failures/retry", response_model=RetryFailuresResponse)
async def retry_failures(
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries to replay"),
    sync: RevenueSyncService = Depends(get_revenue_sync),
) -> RetryFailuresResponse:
    """Replay pending entries of the reconciliation log."""
    try:
        summary = await sync.retry_failures(limit)
    except LedgerError as e:
        raise http_error(e) from e

    return RetryFailuresResponse(**summary)
