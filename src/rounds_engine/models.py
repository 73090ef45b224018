"""
Data models for the match-group engine.

This module defines lightweight data classes for the records the engine reads
(users, events, bookings, existing groups, stored compatibility scores) and the
records it writes (groups, memberships, scores, waitlist entries).  Each class
that is persisted provides helpers for building its DynamoDB item and for
reading it back.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

# -----------------------
# Vocabulary
# -----------------------
DAYS: Tuple[str, ...] = ("friday", "saturday", "sunday")

GENDER_FEMALE = "female"
GENDER_MALE = "male"

GROUP_TYPE_SAME_GENDER = "same_gender"
GROUP_TYPE_MIXED = "mixed"

COMPOSITION_ALL_FEMALE = "all_female"
COMPOSITION_ALL_MALE = "all_male"
MIXED_COMPOSITIONS: Tuple[str, ...] = ("2F3M", "3F2M")

GROUP_STATUS_ACTIVE = "active"
GROUP_STATUS_DISBANDED = "disbanded"

MEMBERSHIP_ACTIVE = "active"

USER_STATUS_ACTIVE = "active"

SCORE_STATUS_PENDING = "pending"
SCORE_STATUS_REJECTED = "rejected"

EVENT_OPEN_STATUSES: Tuple[str, ...] = ("open", "full")
BOOKING_CONFIRMED = "confirmed"


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 formatted string."""
    return datetime.now(timezone.utc).isoformat()


def sha256_hex(s: str) -> str:
    """Return the hexadecimal SHA-256 digest of the given string."""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def normalize_gender(value: Any) -> Optional[str]:
    """Map a stored gender to ``female`` / ``male``; anything else is unspecified (None)."""
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    if v in ("female", "f", "woman"):
        return GENDER_FEMALE
    if v in ("male", "m", "man"):
        return GENDER_MALE
    return None


def normalize_day(value: Any) -> Optional[str]:
    """Return the day key if ``value`` names one of the three meetup days."""
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    return v if v in DAYS else None


def canonical_pair(a: str, b: str) -> Tuple[str, str]:
    lo, hi = sorted([a, b])
    return lo, hi


def pair_key(a: str, b: str) -> str:
    """Stable key for an unordered pair of users."""
    lo, hi = canonical_pair(a, b)
    return f"{lo}|{hi}"


def composition_for_gender(gender: Optional[str]) -> Optional[str]:
    if gender == GENDER_FEMALE:
        return COMPOSITION_ALL_FEMALE
    if gender == GENDER_MALE:
        return COMPOSITION_ALL_MALE
    return None


def composition_quota(composition: Optional[str]) -> Dict[str, int]:
    """
    Parse a mixed composition such as ``2F3M`` into per-gender seat counts.

    Returns an empty dict when the composition does not declare a ratio.
    """
    if not composition or composition not in MIXED_COMPOSITIONS:
        return {}
    f_part, m_part = composition[:-1].split("F")
    return {GENDER_FEMALE: int(f_part), GENDER_MALE: int(m_part)}


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() == "true"
    return bool(v)


def _parse_dt(v: Any) -> Optional[datetime]:
    if not isinstance(v, str) or not v:
        return None
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class User:
    """
    A user as seen by one run.

    Attributes:
        user_id: Stable user identifier.
        gender: ``female``, ``male`` or None when unspecified.
        status: ``active`` or ``banned``.
        day: Preferred meetup day, if the user set one.
    """

    user_id: str
    gender: Optional[str] = None
    status: str = USER_STATUS_ACTIVE
    day: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "User":
        prefs = item.get("preferences") or {}
        return cls(
            user_id=item["user_pk"],
            gender=normalize_gender(item.get("gender")),
            status=(item.get("status") or USER_STATUS_ACTIVE).lower(),
            day=normalize_day(prefs.get("day") if isinstance(prefs, dict) else None),
        )


@dataclass(frozen=True)
class Event:
    event_id: str
    date_time: datetime
    status: str

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> Optional["Event"]:
        dt = _parse_dt(item.get("date_time"))
        if dt is None:
            return None
        return cls(event_id=item["event_pk"], date_time=dt, status=item.get("status", ""))


@dataclass(frozen=True)
class Booking:
    """A booking row.  ``day_preference`` comes from the booking's preferences blob."""

    user_id: str
    event_id: str
    paid: bool
    status: str
    day_preference: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Booking":
        prefs = item.get("preferences") or {}
        return cls(
            user_id=item["user_id"],
            event_id=item["event_id"],
            paid=_as_bool(item.get("paid")),
            status=item.get("status", ""),
            day_preference=normalize_day(prefs.get("day") if isinstance(prefs, dict) else None),
            created_at=item.get("created_at", ""),
        )

    @property
    def is_paid_and_confirmed(self) -> bool:
        return self.paid and self.status == BOOKING_CONFIRMED


@dataclass(frozen=True)
class ScoreRecord:
    """
    A stored compatibility score for an unordered pair.

    ``pending`` records are accepted matches offered to the allocator;
    ``rejected`` records only exist so the pair is not scored again.
    """

    user_a: str
    user_b: str
    score: int
    status: str
    created_at: str = ""

    @classmethod
    def for_pair(cls, a: str, b: str, score: int, status: str) -> "ScoreRecord":
        lo, hi = canonical_pair(a, b)
        return cls(user_a=lo, user_b=hi, score=score, status=status, created_at=now_iso())

    @property
    def pair_pk(self) -> str:
        return pair_key(self.user_a, self.user_b)

    @property
    def accepted(self) -> bool:
        return self.status == SCORE_STATUS_PENDING

    def to_item(self) -> Dict[str, Any]:
        return {
            "pair_pk": self.pair_pk,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "score": int(self.score),
            "status": self.status,
            "created_at": self.created_at or now_iso(),
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "ScoreRecord":
        return cls(
            user_a=item["user_a"],
            user_b=item["user_b"],
            score=int(item.get("score", 0)),
            status=item.get("status", SCORE_STATUS_PENDING),
            created_at=item.get("created_at", ""),
        )


@dataclass
class MatchGroup:
    """
    A group for one match-week, either loaded from storage or planned by a run.

    Attributes:
        match_week: Thursday date anchoring the cycle (``YYYY-MM-DD``).
        group_type: ``same_gender`` or ``mixed``.
        gender_composition: ``all_female``, ``all_male``, ``2F3M``, ``3F2M`` or None.
        member_ids: Every member, existing ones first.
        new_member_ids: Members added by the current run (all of them for a new group).
        existing: True when the group row already exists in storage.
        group_id: Set for stored groups; assigned by the persister for new ones.
    """

    match_week: str
    group_type: str
    name: str = ""
    gender_composition: Optional[str] = None
    day: Optional[str] = None
    status: str = GROUP_STATUS_ACTIVE
    is_partial: bool = False
    member_ids: List[str] = field(default_factory=list)
    new_member_ids: List[str] = field(default_factory=list)
    existing: bool = False
    group_id: Optional[str] = None
    created_at: str = ""

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def add(self, user_id: str) -> None:
        self.member_ids.append(user_id)
        self.new_member_ids.append(user_id)

    def remove_new(self, user_ids: Iterable[str]) -> None:
        drop = set(user_ids)
        self.member_ids = [u for u in self.member_ids if u not in drop]
        self.new_member_ids = [u for u in self.new_member_ids if u not in drop]

    def assign_id(self) -> str:
        """Derive a stable id from the week and the member set."""
        seed = f"{self.match_week}|{self.day or ''}|" + "|".join(sorted(self.member_ids))
        self.group_id = f"g_{sha256_hex(seed)[:20]}"
        return self.group_id

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "group_pk": self.group_id,
            "name": self.name,
            "group_type": self.group_type,
            "status": self.status,
            "match_week": self.match_week,
            "is_partial_group": self.is_partial,
            "member_count": len(self.member_ids),
            "created_at": self.created_at or now_iso(),
            # GSI partition key for week lookups
            "gsi1pk": self.match_week,
        }
        if self.day:
            item["day"] = self.day
        if self.gender_composition:
            item["gender_composition"] = self.gender_composition
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any], member_ids: Optional[List[str]] = None) -> "MatchGroup":
        return cls(
            group_id=item["group_pk"],
            name=item.get("name", ""),
            match_week=item.get("match_week", ""),
            group_type=item.get("group_type", GROUP_TYPE_MIXED),
            gender_composition=item.get("gender_composition"),
            day=normalize_day(item.get("day")),
            status=item.get("status", GROUP_STATUS_ACTIVE),
            is_partial=_as_bool(item.get("is_partial_group", False)),
            member_ids=list(member_ids or []),
            existing=True,
            created_at=item.get("created_at", ""),
        )


def membership_sk(match_week: str) -> str:
    """Sort key of a membership row.  One row per user per week is the uniqueness rule."""
    return f"WEEK#{match_week}"


def membership_item(user_id: str, group_id: str, match_week: str) -> Dict[str, Any]:
    return {
        "user_pk": user_id,
        "week_sk": membership_sk(match_week),
        "group_id": group_id,
        "match_week": match_week,
        "membership_status": MEMBERSHIP_ACTIVE,
        "joined_at": now_iso(),
        "gsi1pk": match_week,
        "gsi2pk": group_id,
    }


@dataclass(frozen=True)
class WaitlistEntry:
    user_id: str
    match_week: str
    priority: int
    reason: str
    day: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "user_pk": self.user_id,
            "week_sk": membership_sk(self.match_week),
            "match_week": self.match_week,
            "priority": int(self.priority),
            "reason": self.reason,
            "updated_at": now_iso(),
        }
        if self.day:
            item["day"] = self.day
        return item
