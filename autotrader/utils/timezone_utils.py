"""Market-clock utilities for US equity sessions.

All session logic is evaluated in America/New_York so DST transitions are
handled by zoneinfo. Naive datetimes are assumed to be UTC.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

ET = ZoneInfo("America/New_York")

REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
PRE_MARKET_OPEN = time(4, 0)
AFTER_HOURS_CLOSE = time(20, 0)


def to_et(dt: datetime) -> datetime:
    """Convert a datetime to Eastern Time."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ET)


def now_et() -> datetime:
    return datetime.now(ET)


def is_weekend(dt: datetime) -> bool:
    return to_et(dt).weekday() >= 5


def is_regular_session(dt: datetime) -> bool:
    """True between 9:30 and 16:00 ET on weekdays."""
    et = to_et(dt)
    if et.weekday() >= 5:
        return False
    return REGULAR_OPEN <= et.time() < REGULAR_CLOSE


def is_extended_session(dt: datetime) -> bool:
    """True during pre-market (4:00-9:30) or after-hours (16:00-20:00) on weekdays."""
    et = to_et(dt)
    if et.weekday() >= 5:
        return False
    current = et.time()
    return PRE_MARKET_OPEN <= current < REGULAR_OPEN or REGULAR_CLOSE <= current < AFTER_HOURS_CLOSE


def session_phase(dt: datetime) -> str:
    """Coarse session bucket used by the learning state: PRE, OPEN, CLOSE or AFTER.

    OPEN covers the first part of the regular session, CLOSE the last two
    hours (14:00-16:00 ET).
    """
    et = to_et(dt)
    current = et.time()
    if et.weekday() >= 5:
        return "AFTER"
    if current < REGULAR_OPEN:
        return "PRE" if current >= PRE_MARKET_OPEN else "AFTER"
    if current < time(14, 0):
        return "OPEN"
    if current < REGULAR_CLOSE:
        return "CLOSE"
    return "AFTER"


def intraday_activity(dt: datetime) -> float:
    """Relative activity of the hour: opening and closing hours are busiest."""
    hour = to_et(dt).hour
    if 9 <= hour < 11:
        return 0.8
    if 11 <= hour < 14:
        return 0.3
    if 14 <= hour < 16:
        return 0.9
    return 0.1


def trading_day(dt: datetime) -> date:
    """Trading date a timestamp belongs to; the day rolls over at the regular open."""
    et = to_et(dt)
    if et.time() < REGULAR_OPEN:
        return (et - timedelta(days=1)).date()
    return et.date()


def next_market_open(dt: datetime) -> datetime:
    """Next weekday 9:30 ET strictly after ``dt``."""
    et = to_et(dt)
    candidate = datetime.combine(et.date(), REGULAR_OPEN, tzinfo=ET)
    if candidate <= et:
        candidate += timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def format_et(dt: Optional[datetime], fmt: str = "%Y-%m-%d %H:%M:%S ET") -> str:
    if dt is None:
        return "N/A"
    return to_et(dt).strftime(fmt)
