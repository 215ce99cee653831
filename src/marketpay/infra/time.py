"""Time utilities for consistent timestamp handling."""

from datetime import date, datetime, time, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def combine_utc(day: date, at: time) -> datetime:
    """Combine a calendar date and wall-clock time into an aware UTC datetime.

    Scheduled dates/times are stored without zone and interpreted as UTC.
    """
    if at.tzinfo is not None:
        return datetime.combine(day, at).astimezone(timezone.utc)
    return datetime.combine(day, at, tzinfo=timezone.utc)
