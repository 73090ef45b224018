"""
Candidate pool resolution.

Works out which users a run may place: the match-week is computed from "now",
users already holding an active group that week are excluded, and for the
day-scoped flow the remaining users are bucketed by meetup day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .models import DAYS, USER_STATUS_ACTIVE, User
from .timing import (
    WeekendWindow,
    day_key_for,
    match_week_anchor,
    match_week_id,
    parse_match_week,
    weekend_window,
)

logger = logging.getLogger(__name__)

SCOPE_DAY = "day"
SCOPE_SCORED = "scored"
SCOPES = (SCOPE_DAY, SCOPE_SCORED)

REASON_NO_EVENTS = "no_eligible_events"
REASON_NO_USERS = "no_eligible_users"


@dataclass
class EligiblePool:
    """
    Result of eligibility resolution.

    ``buckets`` maps a day key to its ordered users; the general flow uses a
    single bucket keyed by the requested day (None when unscoped).  ``reason``
    is set when there is nothing to do because demand is absent.
    """

    match_week: str
    scope: str
    buckets: Dict[Optional[str], List[User]] = field(default_factory=dict)
    already_grouped: int = 0
    reason: Optional[str] = None
    window: Optional[WeekendWindow] = None

    @property
    def users(self) -> List[User]:
        return [u for bucket in self.buckets.values() for u in bucket]

    @property
    def total(self) -> int:
        return sum(len(b) for b in self.buckets.values())

    def by_day(self) -> Dict[str, int]:
        return {day or "any": len(users) for day, users in self.buckets.items()}


class EligibilityResolver:
    def __init__(self, repo, cutover_hour: int = 0) -> None:
        self.repo = repo
        self.cutover_hour = cutover_hour

    def match_week(self, now: Optional[datetime] = None, override: Optional[str] = None) -> str:
        if override:
            return match_week_id(parse_match_week(override))
        return match_week_id(match_week_anchor(now, self.cutover_hour))

    def resolve(
        self,
        scope: str,
        now: Optional[datetime] = None,
        day: Optional[str] = None,
        match_week: Optional[str] = None,
    ) -> EligiblePool:
        if scope not in SCOPES:
            raise ValueError(f"unknown scope {scope!r}")
        if day is not None and day not in DAYS:
            raise ValueError(f"unknown day {day!r}")
        week = self.match_week(now, match_week)
        if scope == SCOPE_DAY:
            return self._resolve_day_scoped(week, day)
        return self._resolve_general(week, day)

    # -----------------------
    # Day-scoped flow (weekend bookings)
    # -----------------------
    def _resolve_day_scoped(self, week: str, only_day: Optional[str]) -> EligiblePool:
        window = weekend_window(parse_match_week(week))
        pool = EligiblePool(match_week=week, scope=SCOPE_DAY, window=window)

        events = self.repo.list_events_in_window(window)
        if not events:
            logger.info("no_eligible_events: match_week=%s window=%s..%s", week, window.start, window.end)
            pool.reason = REASON_NO_EVENTS
            return pool
        event_days = {ev.event_id: day_key_for(ev.date_time) for ev in events}

        bookings = self.repo.list_paid_bookings(list(event_days))
        if not bookings:
            logger.info("no_eligible_users: match_week=%s events=%d", week, len(events))
            pool.reason = REASON_NO_USERS
            return pool

        grouped = self.repo.grouped_user_ids(week)
        booked_ids = list(dict.fromkeys(b.user_id for b in bookings))
        profiles = self.repo.get_users(booked_ids)

        buckets: Dict[Optional[str], List[User]] = {d: [] for d in DAYS}
        seen = set()
        excluded = set()
        for b in bookings:
            if b.user_id in grouped:
                excluded.add(b.user_id)
                continue
            if b.user_id in seen:
                continue
            profile = profiles.get(b.user_id)
            if profile is not None and profile.status != USER_STATUS_ACTIVE:
                continue
            day = b.day_preference or event_days.get(b.event_id)
            if day is None:
                continue
            seen.add(b.user_id)
            gender = profile.gender if profile else None
            buckets[day].append(User(user_id=b.user_id, gender=gender, day=day))

        if only_day:
            buckets = {only_day: buckets[only_day]}
        pool.buckets = buckets
        pool.already_grouped = len(excluded)
        logger.info(
            "eligible_pool: match_week=%s scope=day by_day=%s already_grouped=%d",
            week, pool.by_day(), pool.already_grouped,
        )
        return pool

    # -----------------------
    # General flow (all active users)
    # -----------------------
    def _resolve_general(self, week: str, only_day: Optional[str]) -> EligiblePool:
        pool = EligiblePool(match_week=week, scope=SCOPE_SCORED)

        users = self.repo.list_active_users()
        if only_day:
            users = [u for u in users if u.day == only_day]
        if not users:
            logger.info("no_eligible_users: match_week=%s scope=scored day=%s", week, only_day)
            pool.reason = REASON_NO_USERS
            return pool

        grouped = self.repo.grouped_user_ids(week)
        candidates = sorted((u for u in users if u.user_id not in grouped), key=lambda u: u.user_id)
        pool.already_grouped = len(users) - len(candidates)
        pool.buckets = {only_day: candidates}
        logger.info(
            "eligible_pool: match_week=%s scope=scored candidates=%d already_grouped=%d",
            week, len(candidates), pool.already_grouped,
        )
        return pool
