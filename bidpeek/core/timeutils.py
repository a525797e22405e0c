"""
Calendar helpers. All timestamps are naive UTC, matching what the store keeps.
"""
import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_unix(seconds) -> Optional[datetime]:
    """Convert provider unix seconds to naive UTC; None for missing values."""
    if seconds in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_month_window(now: datetime) -> Tuple[datetime, datetime]:
    """[first of this month, first of next month)."""
    start = month_start(now)
    return start, add_months(start, 1)


def advance_window(period_start: datetime, period_end: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """
    Roll a lapsed billing window forward by whole calendar months until it
    contains ``now``. Windows that already contain ``now`` (or lie in the
    future) are returned unchanged.
    """
    if now < period_end:
        return period_start, period_end

    months = 1
    while add_months(period_start, months) <= now:
        months += 1
    # the window keeps its anchor day, so the new start is one month before the new end
    return add_months(period_start, months - 1), add_months(period_start, months)


def metering_window(period_start: datetime, period_end: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """
    Month-long slice of a billing period that contains ``now``.

    Allotments are monthly whatever the billing interval, so a yearly period
    is metered as twelve windows anchored on its start day. The last slice
    is clipped to ``period_end``.
    """
    months = 0
    while add_months(period_start, months + 1) <= now:
        months += 1
    start = add_months(period_start, months)
    return start, min(add_months(period_start, months + 1), period_end)
