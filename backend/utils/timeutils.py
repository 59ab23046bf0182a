"""
Time helpers.

All timestamps in the store are naive UTC so they compare cleanly on both
PostgreSQL ``timestamp`` columns and SQLite.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def minutes_since(dt: Optional[datetime], now: datetime) -> float:
    """Minutes elapsed since dt, or infinity when dt is unknown."""
    if dt is None:
        return float("inf")
    return max(0.0, (now - to_naive_utc(dt)).total_seconds() / 60)


def after_ms(now: datetime, ms: float) -> datetime:
    return now + timedelta(milliseconds=ms)
