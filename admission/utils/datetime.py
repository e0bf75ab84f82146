"""Time utilities with timezone-aware defaults."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return current UTC time with tzinfo."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from stores that drop tzinfo."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_next_day(now: datetime) -> datetime:
    return start_of_day(now) + timedelta(days=1)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return ``(first instant of the month, first instant of next month)``."""

    start = start_of_day(now).replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


__all__ = ["as_utc", "month_bounds", "start_of_day", "start_of_next_day", "utc_now"]
