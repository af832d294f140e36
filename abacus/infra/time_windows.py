"""UTC window boundaries shared by the sync engine and provider adapters."""

from __future__ import annotations

from datetime import date, datetime, time, timezone


def hour_floor(now: datetime) -> datetime:
    """Start of the current UTC hour; forward windows end on whole hours."""
    return now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)
