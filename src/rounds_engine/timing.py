"""
Time helpers: the match-week anchor, the weekend window and the run deadline.

All arithmetic is in UTC.  The match-week is the Thursday on which groups are
revealed; the meetups it covers happen on the Friday, Saturday and Sunday right
after it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Optional

from .errors import RunTimeout

THURSDAY = 3  # datetime.weekday()

_DAY_KEYS = {4: "friday", 5: "saturday", 6: "sunday"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def match_week_anchor(now: Optional[datetime] = None, cutover_hour: int = 0) -> date:
    """
    Thursday that anchors the cycle being allocated.

    On a Thursday before ``cutover_hour`` the anchor is today; otherwise it is
    the next Thursday.  With the default cutover of 0 a Thursday run always
    targets the following week, because that day's groups have been revealed.
    """
    now = _as_utc(now or utc_now())
    today = now.date()
    wd = today.weekday()
    if wd == THURSDAY and now.hour < cutover_hour:
        return today
    days_ahead = (THURSDAY - wd) % 7 or 7
    return today + timedelta(days=days_ahead)


def match_week_id(anchor: date) -> str:
    return anchor.isoformat()


def parse_match_week(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` match-week and check that it is a Thursday."""
    d = date.fromisoformat(value)
    if d.weekday() != THURSDAY:
        raise ValueError(f"match_week {value} is not a Thursday")
    return d


@dataclass(frozen=True)
class WeekendWindow:
    start: datetime
    end: datetime

    def contains(self, dt: datetime) -> bool:
        return self.start <= _as_utc(dt) <= self.end


def weekend_window(anchor: date) -> WeekendWindow:
    """Friday 00:00 right after the anchor through Sunday end of day."""
    friday = anchor + timedelta(days=1)
    sunday = anchor + timedelta(days=3)
    return WeekendWindow(
        start=datetime.combine(friday, dtime.min, tzinfo=timezone.utc),
        end=datetime.combine(sunday, dtime.max, tzinfo=timezone.utc),
    )


def day_key_for(dt: datetime) -> Optional[str]:
    """``friday`` / ``saturday`` / ``sunday`` for weekend datetimes, None otherwise."""
    return _DAY_KEYS.get(_as_utc(dt).weekday())


class Deadline:
    """Wall-clock budget for one run."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return self._expires_at - self._clock()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, stage: str) -> None:
        if self.expired():
            raise RunTimeout(f"run budget exhausted during {stage}")
