"""
Time buckets for usage counters.

Daily and monthly counters are keyed by UTC date strings, so a new day or
month starts a fresh counter without any reset job.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def month_key(moment: datetime) -> str:
    """``YYYY-MM`` bucket of a moment."""
    return _as_utc(moment).strftime("%Y-%m")


def day_key(moment: datetime) -> str:
    """``YYYY-MM-DD`` bucket of a moment."""
    return _as_utc(moment).strftime("%Y-%m-%d")


def next_day_start(moment: datetime) -> datetime:
    """Midnight UTC following moment, when the daily counter resets."""
    moment = _as_utc(moment)
    return (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def next_month_start(moment: datetime) -> datetime:
    """First instant of the next UTC month, when the monthly counter resets."""
    moment = _as_utc(moment)
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
