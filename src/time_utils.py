"""UTC helpers for elapsed-time arithmetic and digest windows."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: date) -> datetime:
    """Return midnight UTC at the start of the given date."""
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of_day(value: date) -> datetime:
    """Return midnight UTC at the end of the given date."""
    return start_of_day(value) + timedelta(days=1)


def days_until(due: date, now: datetime) -> int:
    """Return whole calendar days from now's UTC date until a due date."""
    return (due - ensure_aware(now).date()).days


def hours_between(start: datetime, end: datetime) -> float:
    """Return elapsed hours between two datetimes (negative if end precedes start)."""
    return (ensure_aware(end) - ensure_aware(start)).total_seconds() / 3600.0


def daily_window(now: datetime) -> str:
    """Return the daily digest window key (YYYY-MM-DD)."""
    return ensure_aware(now).date().isoformat()


def weekly_window(now: datetime) -> str:
    """Return the weekly digest window key (ISO week, YYYY-Www)."""
    year, week, _ = ensure_aware(now).isocalendar()
    return f"{year:04d}-W{week:02d}"
