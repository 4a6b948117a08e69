"""
shared/utils/dates.py
UTC date helpers shared by the settlement reports and scheduled jobs.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive input is taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a UTC calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def previous_period(now: datetime, days: int) -> tuple[datetime, datetime]:
    """The `days`-long window ending at the most recent UTC midnight."""
    end = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return end - timedelta(days=days), end
