from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # BSON dates come back naive unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def today_key(now: Optional[datetime] = None) -> str:
    """UTC calendar day as YYYY-MM-DD."""
    return as_utc(now or utc_now()).strftime("%Y-%m-%d")


def next_reset_at(now: Optional[datetime] = None) -> datetime:
    """First UTC midnight strictly after ``now``."""
    current = as_utc(now or utc_now())
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)
