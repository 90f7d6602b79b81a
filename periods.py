import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInputError


_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    # Inclusive; None means open-ended.
    end: Optional[date]


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Step by calendar months, snapping to the last day of short months."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, min(day, days_in_month(year, month)))


def parse_year_month(value: str) -> tuple[int, int]:
    match = _YEAR_MONTH_RE.match((value or "").strip())
    if not match:
        raise InvalidInputError(f"Invalid month {value!r}; expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidInputError(f"Invalid month {value!r}; expected YYYY-MM")
    return year, month


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_bounds(year_month: str) -> tuple[date, date]:
    """Half-open ``[first day, first day of next month)`` for a YYYY-MM key."""
    year, month = parse_year_month(year_month)
    start = date(year, month, 1)
    return start, add_months(start, 1)


def shift_year_month(year_month: str, months: int) -> str:
    year, month = parse_year_month(year_month)
    shifted = add_months(date(year, month, 1), months)
    return format_year_month(shifted.year, shifted.month)


def year_month_of(d: date) -> str:
    return format_year_month(d.year, d.month)


def budget_window(
    period: str,
    start_date: date,
    end_date: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "monthly":
        # Monthly budgets always track the running calendar month.
        return Period("monthly", today.replace(day=1), end_date)
    return Period(period, start_date, end_date)


def lookback_start(days: int, *, today: Optional[date] = None) -> date:
    if days < 0:
        raise InvalidInputError("Lookback window must not be negative")
    today = today or local_today()
    return today - timedelta(days=days)
