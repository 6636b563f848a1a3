from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def period_key(dt: datetime) -> str:
    """Calendar-month identifier used for monthly resets, e.g. ``2026-10``."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m")


def add_calendar_months(dt: datetime, months: int) -> datetime:
    year = dt.year + (dt.month - 1 + months) // 12
    month = (dt.month - 1 + months) % 12 + 1

    if month == 12:
        next_month_year, next_month = year + 1, 1
    else:
        next_month_year, next_month = year, month + 1

    # Clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29)
    last_day = (
        datetime(next_month_year, next_month, 1, tzinfo=dt.tzinfo) - datetime.resolution
    ).day
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))
