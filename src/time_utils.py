"""UTC helpers for scheduler timestamps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC, assuming UTC when it is naive."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Normalize optional timestamps loaded from storage backends without zones."""
    if value is None:
        return None
    return ensure_utc(value)


def delay_until(due_at: datetime, now: datetime) -> timedelta:
    """Return the non-negative delay between now and a due timestamp."""
    delay = ensure_utc(due_at) - ensure_utc(now)
    if delay < timedelta(0):
        return timedelta(0)
    return delay


def to_millis(delay: timedelta) -> int:
    """Return a timedelta as whole milliseconds."""
    return int(delay.total_seconds() * 1000)
