from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

EPOCH = date(1970, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def days_in_month(year: int, month: int) -> int:
    next_year, next_month = _shift_month(year, month, 1)
    return (date(next_year, next_month, 1) - date(year, month, 1)).days


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def _month_period(slug: str, year: int, month: int) -> Period:
    return Period(
        slug, date(year, month, 1), date(year, month, days_in_month(year, month))
    )


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    """Turn the ``period``/``start``/``end`` query parameters into dates.

    Unknown slugs fall back to the current month. Raises ``ValueError`` for an
    incomplete or inverted custom range.
    """
    today = today or local_today()
    if not period or period == "all":
        return Period("all", EPOCH, today)
    if period == "custom":
        if not (start and end):
            raise ValueError("A custom period needs both start and end")
        custom = Period("custom", date.fromisoformat(start), date.fromisoformat(end))
        if custom.start > custom.end:
            raise ValueError("Period start is after its end")
        return custom
    if period == "last_month":
        return _month_period("last_month", *_shift_month(today.year, today.month, -1))
    return _month_period("this_month", today.year, today.month)


def trailing_window(today: date, days: int) -> Period:
    if days < 0:
        raise ValueError("Window length must not be negative")
    return Period("window", today - timedelta(days=days), today)


def day_in_month(year: int, month: int, day: int) -> date:
    """The given day of the month, snapped to the month's last day."""
    return date(year, month, min(day, days_in_month(year, month)))


@dataclass(frozen=True)
class BillingCycle:
    start: date
    end: date  # exclusive
    due_date: date

    def contains(self, d: date) -> bool:
        return self.start <= d < self.end


def latest_generation_date(generation_day: int, today: date) -> date:
    this_month = day_in_month(today.year, today.month, generation_day)
    if today >= this_month:
        return this_month
    year, month = _shift_month(today.year, today.month, -1)
    return day_in_month(year, month, generation_day)


def next_occurrence_after(day: int, after: date) -> date:
    candidate = day_in_month(after.year, after.month, day)
    if candidate > after:
        return candidate
    year, month = _shift_month(after.year, after.month, 1)
    return day_in_month(year, month, day)


def billing_cycle(generation_day: int, due_day: int, today: date) -> BillingCycle:
    """Most recent complete billing cycle as of ``today``.

    The cycle ends on the latest generation date on or before ``today`` and
    starts on the generation date one month earlier. The bill falls due on the
    first ``due_day`` strictly after the cycle end.
    """
    end = latest_generation_date(generation_day, today)
    year, month = _shift_month(end.year, end.month, -1)
    start = day_in_month(year, month, generation_day)
    return BillingCycle(
        start=start, end=end, due_date=next_occurrence_after(due_day, end)
    )
