"""Calendar-month period keys.

A period is the first day of a UTC calendar month. Every revenue row is keyed
by one, so the derivation must never guess: anything that cannot be parsed
raises ``InvalidDateError`` instead of falling back to "now".
"""

import re
from datetime import UTC, date, datetime

from revledger.core.errors import InvalidDateError

MONTHS_IN_YEAR = 12
MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

_YEAR_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def derive_period(value: date | datetime | str) -> date:
    """Return the first day of the UTC month containing ``value``.

    Aware datetimes are converted to UTC first. Naive datetimes and plain
    dates are taken as UTC wall-clock values. Strings must be ISO 8601.

    Raises:
        InvalidDateError: if the value cannot be normalized
    """
    moment = _to_utc_date(value)
    return date(moment.year, moment.month, 1)


def parse_period(value: str) -> date:
    """Parse ``YYYY-MM`` (or any ISO date) into a period key."""
    match = _YEAR_MONTH_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= MONTHS_IN_YEAR:
            raise InvalidDateError(f"Invalid month in period {value!r}", value=value)
        return date(year, month, 1)
    return derive_period(value)


def format_period(period: date) -> str:
    """Render a period as ``YYYY-MM``."""
    return f"{period.year:04d}-{period.month:02d}"


def is_period(value: date) -> bool:
    """True when ``value`` is already a normalized period key."""
    return not isinstance(value, datetime) and isinstance(value, date) and value.day == 1


def add_months(period: date, months: int) -> date:
    """Shift a period by a (possibly negative) number of months."""
    index = period.year * MONTHS_IN_YEAR + (period.month - 1) + months
    year, month_index = divmod(index, MONTHS_IN_YEAR)
    return date(year, month_index + 1, 1)


def period_range(start: date, end: date) -> list[date]:
    """All periods from ``start`` to ``end`` inclusive, oldest first."""
    current = derive_period(start)
    last = derive_period(end)
    periods: list[date] = []
    while current <= last:
        periods.append(current)
        current = add_months(current, 1)
    return periods


def rolling_periods(today: date | None = None, months: int = MONTHS_IN_YEAR) -> list[date]:
    """The current month and the ``months - 1`` before it, oldest first."""
    anchor = derive_period(today or datetime.now(UTC))
    return [add_months(anchor, offset) for offset in range(-(months - 1), 1)]


def _to_utc_date(value: date | datetime | str) -> date:
    # datetime is a subclass of date, check it first
    if isinstance(value, datetime):
        if value.tzinfo is not None and value.utcoffset() is not None:
            value = value.astimezone(UTC)
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidDateError("Invoice date is empty", value=value)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidDateError(f"Cannot parse invoice date {value!r}", value=value) from exc
        return _to_utc_date(parsed)

    raise InvalidDateError(
        f"Unsupported date value of type {type(value).__name__}", value=value
    )
