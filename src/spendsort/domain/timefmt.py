import calendar
from collections.abc import Iterable
from datetime import date

from spendsort.models import DateRange

UNKNOWN_DATES = "unknown dates"


def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0 ms"
    if seconds < 1:
        return f"{seconds * 1000:.1f} ms"
    if seconds < 60:
        return f"{seconds:.2f} s"
    return f"{seconds / 60:.2f} min"


def month_name(month: int) -> str:
    return calendar.month_name[month]


def year_month(value: date | None) -> str:
    if value is None:
        return "undated"
    return f"{value.year:04d}-{value.month:02d}"


def date_range(dates: Iterable[date | None]) -> DateRange:
    known = [value for value in dates if value is not None]
    if not known:
        return DateRange()
    return DateRange(start=min(known), end=max(known))


def format_date_range(value: DateRange) -> str:
    """``Month Year``, ``Month - Month Year`` or ``Month Year - Month Year``."""
    start, end = value.start, value.end
    if start is None or end is None:
        return UNKNOWN_DATES
    if start.year == end.year and start.month == end.month:
        return f"{month_name(start.month)} {start.year}"
    if start.year == end.year:
        return f"{month_name(start.month)} - {month_name(end.month)} {start.year}"
    return f"{month_name(start.month)} {start.year} - {month_name(end.month)} {end.year}"
