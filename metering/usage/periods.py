"""
Billing period and calendar-day helpers.

Billing periods are calendar months in UTC, identified as "YYYY-MM".
"""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC tzinfo to naive datetimes for timestamptz parameters."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def billing_period_for(reference: Optional[datetime] = None) -> str:
    """Billing period identifier for a moment in time."""
    reference = as_utc(reference or utcnow())
    return reference.strftime("%Y-%m")


def period_bounds(reference: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Get the start and end of the billing period containing ``reference``.

    Uses first of month to first of next month.
    """
    reference = as_utc(reference or utcnow())
    period_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    if period_start.month == 12:
        period_end = period_start.replace(year=period_start.year + 1, month=1)
    else:
        period_end = period_start.replace(month=period_start.month + 1)

    return period_start, period_end


def day_bounds(reference: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Get the start and end of the UTC day containing ``reference``."""
    reference = as_utc(reference or utcnow())
    day_start = reference.replace(hour=0, minute=0, second=0, microsecond=0)
    return day_start, day_start + timedelta(days=1)


def today(clock: Clock = utcnow) -> date:
    """Current UTC calendar date according to ``clock``."""
    return as_utc(clock()).date()
