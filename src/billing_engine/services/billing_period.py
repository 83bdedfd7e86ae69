"""
Billing period arithmetic

A cycle is [start, end] where end is the final instant (microsecond) of the
period. Period specs: "monthly" (calendar months) or "days:N".
"""
import calendar
from datetime import datetime, timedelta
from typing import Tuple

ONE_MICROSECOND = timedelta(microseconds=1)


def _period_days(period: str) -> int:
    if not period.startswith("days:"):
        raise ValueError(f"Unsupported billing period: {period}")
    days = int(period.split(":", 1)[1])
    if days < 1:
        raise ValueError(f"Billing period must be at least one day: {period}")
    return days


def end_of_month(moment: datetime) -> datetime:
    """Last instant of the calendar month containing ``moment``"""
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    return datetime(moment.year, moment.month, last_day, 23, 59, 59, 999999)


def current_cycle_bounds(now: datetime, period: str = "monthly") -> Tuple[datetime, datetime]:
    """Cycle containing ``now`` for a newly created account"""
    if period == "monthly":
        start = datetime(now.year, now.month, 1)
        return start, end_of_month(start)
    
    start = datetime(now.year, now.month, now.day)
    return start, start + timedelta(days=_period_days(period)) - ONE_MICROSECOND


def next_cycle_bounds(cycle_end: datetime, period: str = "monthly") -> Tuple[datetime, datetime]:
    """Cycle immediately following the one that ends at ``cycle_end``"""
    start = cycle_end + ONE_MICROSECOND
    if period == "monthly":
        return start, end_of_month(start)
    return start, start + timedelta(days=_period_days(period)) - ONE_MICROSECOND
