"""Occurrence dates for recurring series.

All patterns are anchored at the series start date so that re-expanding from
any high-water mark lands on the same calendar. Weeks start on Sunday, the
same convention as AvailabilityWindow.day_of_week.
"""
import calendar
from datetime import date, timedelta
from typing import Iterator, Sequence

PATTERN_TYPES = ("daily", "weekly", "monthly", "yearly")

def _dow(d: date) -> int:
    # 0=Sunday..6=Saturday
    return (d.weekday() + 1) % 7

def _add_months(d: date, months: int, day: int) -> date:
    idx = d.year * 12 + (d.month - 1) + months
    y, m = divmod(idx, 12)
    last = calendar.monthrange(y, m + 1)[1]
    return date(y, m + 1, min(day, last))

def _anniversary(start: date, year: int) -> date:
    try:
        return start.replace(year=year)
    except ValueError:
        # Feb 29 in a non-leap year
        return date(year, 2, 28)

def _raw(pattern_type: str, interval: int, start: date, days_of_week: Sequence[int] | None, day_of_month: int | None) -> Iterator[date]:
    k = 0
    if pattern_type == "daily":
        while True:
            yield start + timedelta(days=interval * k)
            k += 1
    elif pattern_type == "weekly":
        days = sorted(set(days_of_week or [_dow(start)]))
        week0 = start - timedelta(days=_dow(start))
        while True:
            base = week0 + timedelta(weeks=interval * k)
            for dow in days:
                d = base + timedelta(days=dow)
                if d >= start:
                    yield d
            k += 1
    elif pattern_type == "monthly":
        dom = day_of_month or start.day
        while True:
            d = _add_months(start, interval * k, dom)
            if d >= start:
                yield d
            k += 1
    elif pattern_type == "yearly":
        while True:
            yield _anniversary(start, start.year + interval * k)
            k += 1
    else:
        raise ValueError(f"unknown pattern type {pattern_type!r}")

def occurrence_dates(pattern_type: str, interval: int, start: date, *, until: date, after: date | None = None, days_of_week: Sequence[int] | None = None, day_of_month: int | None = None) -> Iterator[date]:
    """Dates in (after, until], in order."""
    for d in _raw(pattern_type, max(1, interval), start, days_of_week, day_of_month):
        if d > until:
            return
        if after is not None and d <= after:
            continue
        yield d

def series_error(pattern_type: str, interval: int, start: date, end: date | None = None, *, days_of_week: Sequence[int] | None = None, day_of_month: int | None = None, max_occurrences: int | None = None) -> str | None:
    if pattern_type not in PATTERN_TYPES:
        return f"pattern_type must be one of {', '.join(PATTERN_TYPES)}"
    if interval < 1:
        return "interval_value must be at least 1"
    if end is not None and end < start:
        return "series_end_date must not be before series_start_date"
    if max_occurrences is not None and max_occurrences < 1:
        return "max_occurrences must be at least 1"
    if days_of_week and any(d < 0 or d > 6 for d in days_of_week):
        return "days_of_week values must be 0 (Sunday) to 6 (Saturday)"
    if days_of_week and pattern_type != "weekly":
        return "days_of_week only applies to weekly series"
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        return "day_of_month must be between 1 and 31"
    if day_of_month is not None and pattern_type != "monthly":
        return "day_of_month only applies to monthly series"
    return None
