"""Calendar-month period helpers.

A period is a ``datetime.date`` pinned to the first day of its month. It is
always derived from an invoice date, never accepted raw from a user.
"""

import re
from datetime import date, datetime

from dateutil.relativedelta import relativedelta

from billing_dashboard.core.errors import RevenueValidationError

ROLLING_WINDOW_MONTHS = 12

MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_PERIOD_PATTERN = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?$")


def derive_period(effective_date: date | datetime) -> date:
    """Map a date (or datetime) to the first day of its calendar month."""
    return date(effective_date.year, effective_date.month, 1)


def shift_period(period: date, months: int) -> date:
    """Move a period by a signed number of months."""
    return derive_period(period) + relativedelta(months=months)


def period_range(start: date, end: date) -> list[date]:
    """All periods from ``start`` to ``end`` inclusive, oldest first."""
    current, last = derive_period(start), derive_period(end)
    periods: list[date] = []
    while current <= last:
        periods.append(current)
        current = shift_period(current, 1)
    return periods


def rolling_window(now: date | datetime, months: int = ROLLING_WINDOW_MONTHS) -> list[date]:
    """``months`` consecutive periods ending with the month containing ``now``."""
    end = derive_period(now)
    return period_range(shift_period(end, -(months - 1)), end)


def format_period(period: date) -> str:
    """Render a period as ``YYYY-MM``."""
    return f"{period.year:04d}-{period.month:02d}"


def parse_period(value: str) -> date:
    """Parse ``YYYY-MM`` or ``YYYY-MM-DD`` into a period."""
    match = _PERIOD_PATTERN.match(value.strip()) if value else None
    if not match:
        raise RevenueValidationError("Period must be formatted as YYYY-MM", value=value)

    year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3) or 1)
    try:
        return derive_period(date(year, month, day))
    except ValueError as exc:
        raise RevenueValidationError("Period is not a valid calendar date", value=value) from exc


def month_name(period: date) -> str:
    """Short English month name, e.g. ``Jan``."""
    return MONTH_NAMES[period.month - 1]
