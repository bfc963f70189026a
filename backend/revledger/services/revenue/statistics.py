"""Rolling-year revenue chart and summary statistics."""

from dataclasses import dataclass
from datetime import date

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from revledger.models.revenue import RevenueSource
from revledger.services.revenue.period import (
    MONTH_ABBREVIATIONS,
    MONTHS_IN_YEAR,
    format_period,
    rolling_periods,
)
from revledger.services.revenue.repository import RevenueRecord, RevenueRepository

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class MonthlyRevenue:
    """One month of the chart, stored or zero-filled."""

    period: date
    month: str
    year: int
    month_number: int
    display_order: int
    invoice_count: int = 0
    total_amount: int = 0
    total_paid_amount: int = 0
    total_pending_amount: int = 0
    calculation_source: str = RevenueSource.TEMPLATE.value

    @classmethod
    def empty(cls, period: date, display_order: int) -> "MonthlyRevenue":
        return cls(
            period=period,
            month=MONTH_ABBREVIATIONS[period.month - 1],
            year=period.year,
            month_number=period.month,
            display_order=display_order,
        )

    @classmethod
    def from_record(cls, record: RevenueRecord, display_order: int) -> "MonthlyRevenue":
        return cls(
            period=record.period,
            month=MONTH_ABBREVIATIONS[record.period.month - 1],
            year=record.period.year,
            month_number=record.period.month,
            display_order=display_order,
            invoice_count=record.invoice_count,
            total_amount=record.total_amount,
            total_paid_amount=record.total_paid_amount,
            total_pending_amount=record.total_pending_amount,
            calculation_source=record.calculation_source,
        )


@dataclass(frozen=True, slots=True)
class RevenueStatistics:
    maximum: int = 0
    minimum: int = 0
    average: int = 0
    total: int = 0
    months_with_data: int = 0


def calculate_statistics(months: list[MonthlyRevenue]) -> RevenueStatistics:
    """Summarize a chart series.

    Months without revenue are ignored for the minimum and the average; the
    average is an integer rounded half up.
    """
    amounts = [month.total_amount for month in months if month.total_amount > 0]
    if not amounts:
        return RevenueStatistics()

    total = sum(amounts)
    count = len(amounts)
    return RevenueStatistics(
        maximum=max(amounts),
        minimum=min(amounts),
        average=(2 * total + count) // (2 * count),
        total=total,
        months_with_data=count,
    )


class RevenueStatisticsService:
    """Read-side service building the rolling 12-month view."""

    def __init__(self, session: AsyncSession) -> None:
        self.repository = RevenueRepository(session)

    async def rolling_year(self, today: date | None = None) -> list[MonthlyRevenue]:
        """Twelve months ending with the current one, oldest first.

        Months with no stored record are zero-filled and tagged ``template``.
        """
        periods = rolling_periods(today, MONTHS_IN_YEAR)
        records = await self.repository.find_by_date_range(periods[0], periods[-1])
        by_period = {record.period: record for record in records}

        months = [
            MonthlyRevenue.from_record(by_period[period], index)
            if period in by_period
            else MonthlyRevenue.empty(period, index)
            for index, period in enumerate(periods)
        ]

        logger.info(
            "rolling_year_calculated",
            start=format_period(periods[0]),
            end=format_period(periods[-1]),
            months_with_records=len(by_period),
        )
        return months

    async def rolling_year_with_statistics(
        self, today: date | None = None
    ) -> tuple[list[MonthlyRevenue], RevenueStatistics]:
        months = await self.rolling_year(today)
        return months, calculate_statistics(months)
