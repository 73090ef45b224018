"""
Group allocation strategies.

Both strategies take one pool of users for a match-week and return an
``AllocationPlan``: the groups to write (new ones, plus existing ones that
received members) and the users to waitlist.  Nothing here touches storage.

* ``DayBucketChunker`` splits one day bucket into fixed-size chunks.
* ``ScoredAllocator`` runs the gender-balanced greedy pass over the general
  pool, using accepted compatibility scores.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .config import SizePolicy
from .models import (
    GENDER_FEMALE,
    GENDER_MALE,
    GROUP_STATUS_ACTIVE,
    GROUP_TYPE_MIXED,
    GROUP_TYPE_SAME_GENDER,
    MIXED_COMPOSITIONS,
    MatchGroup,
    User,
    composition_for_gender,
    composition_quota,
)

logger = logging.getLogger(__name__)

REASON_NO_COMPATIBLE_MATCH = "no_compatible_match"
REASON_NO_CAPACITY = "no_capacity"


def insufficient_reason(day: Optional[str]) -> str:
    return f"insufficient_{day}_users" if day else "insufficient_users"


def group_name(day: Optional[str], n: int) -> str:
    if day:
        return f"Rounds {day.capitalize()} Group {n}"
    return f"Rounds Group {n}"


@dataclass(frozen=True)
class WaitlistDecision:
    user_id: str
    reason: str
    day: Optional[str] = None


@dataclass
class AllocationPlan:
    groups: List[MatchGroup] = field(default_factory=list)
    waitlisted: List[WaitlistDecision] = field(default_factory=list)

    @property
    def new_groups(self) -> List[MatchGroup]:
        return [g for g in self.groups if not g.existing]

    @property
    def placed_user_ids(self) -> List[str]:
        return [uid for g in self.groups for uid in g.new_member_ids]

    def extend(self, other: "AllocationPlan") -> None:
        self.groups.extend(other.groups)
        self.waitlisted.extend(other.waitlisted)


class GroupAllocator:
    """Interface shared by the allocation strategies."""

    def __init__(self, sizes: SizePolicy) -> None:
        self.sizes = sizes

    def allocate(
        self,
        match_week: str,
        users: Sequence[User],
        day: Optional[str] = None,
        existing: Sequence[MatchGroup] = (),
        genders: Optional[Mapping[str, Optional[str]]] = None,
    ) -> AllocationPlan:
        raise NotImplementedError


# -----------------------
# Day strategy
# -----------------------
def chunk_sizes(n: int, sizes: SizePolicy) -> List[int]:
    """
    Split ``n`` users into chunk sizes.

    Chunks are ``target_size`` long.  A short tail is merged into the previous
    chunk when that stays within ``max_size``; otherwise members are borrowed
    from earlier chunks (down to ``min_size`` each) until the tail reaches
    ``min_size``; as a last resort the tail is spread over earlier chunks that
    still have room.  Returns an empty list when ``n`` is below ``min_size``.
    If no arrangement fits the policy, the returned sizes sum to less than
    ``n`` and the caller waitlists the rest.
    """
    if n < sizes.min_size:
        return []
    out = [sizes.target_size] * (n // sizes.target_size)
    rem = n % sizes.target_size
    if rem == 0:
        return out
    if rem >= sizes.min_size or not out:
        out.append(rem)
        return out

    if out[-1] + rem <= sizes.max_size:
        out[-1] += rem
        return out

    spare = sum(c - sizes.min_size for c in out)
    need = sizes.min_size - rem
    if spare >= need:
        for i in range(len(out) - 1, -1, -1):
            take = min(out[i] - sizes.min_size, need)
            out[i] -= take
            need -= take
            if need == 0:
                break
        out.append(sizes.min_size)
        return out

    room = sum(sizes.max_size - c for c in out)
    if room >= rem:
        i = len(out) - 1
        while rem:
            if out[i] < sizes.max_size:
                out[i] += 1
                rem -= 1
            i = (i - 1) % len(out)
    return out


class DayBucketChunker(GroupAllocator):
    """Chunks one day bucket, in booking order, into ``mixed`` groups."""

    def allocate(self, match_week, users, day=None, existing=(), genders=None) -> AllocationPlan:
        plan = AllocationPlan()
        ids = [u.user_id for u in users]
        reason = insufficient_reason(day)

        sizes = chunk_sizes(len(ids), self.sizes)
        if not sizes:
            if ids:
                logger.info("day_bucket_too_small: day=%s users=%d floor=%d", day, len(ids), self.sizes.min_size)
            plan.waitlisted = [WaitlistDecision(uid, reason, day) for uid in ids]
            return plan

        offset = sum(1 for g in existing if g.day == day)
        pos = 0
        for n, size in enumerate(sizes, start=offset + 1):
            group = MatchGroup(
                match_week=match_week,
                group_type=GROUP_TYPE_MIXED,
                name=group_name(day, n),
                day=day,
            )
            for uid in ids[pos:pos + size]:
                group.add(uid)
            pos += size
            plan.groups.append(group)

        if pos < len(ids):
            logger.warning("day_bucket_overflow: day=%s unplaced=%d", day, len(ids) - pos)
            plan.waitlisted = [WaitlistDecision(uid, REASON_NO_CAPACITY, day) for uid in ids[pos:]]
        return plan


# -----------------------
# Scored strategy
# -----------------------
class ScoredAllocator(GroupAllocator):
    """
    Greedy, randomized, gender-balanced allocation.

    Users already on the waitlist (``priorities``) are processed first, highest
    priority first; everybody else follows in an order shuffled by ``rng``.
    ``compatible(a, b)`` says whether a pair holds an accepted score.
    """

    def __init__(
        self,
        sizes: SizePolicy,
        rng: Optional[random.Random] = None,
        compatible: Optional[Callable[[str, str], bool]] = None,
        priorities: Optional[Mapping[str, int]] = None,
        require_compatible: bool = True,
    ) -> None:
        super().__init__(sizes)
        self.rng = rng or random.Random()
        self.compatible = compatible or (lambda a, b: True)
        self.priorities = dict(priorities or {})
        self.require_compatible = require_compatible

    def processing_order(self, users: Sequence[User]) -> List[User]:
        prioritized = sorted(
            (u for u in users if self.priorities.get(u.user_id, 0) > 0),
            key=lambda u: (-self.priorities[u.user_id], u.user_id),
        )
        rest = sorted((u for u in users if self.priorities.get(u.user_id, 0) <= 0), key=lambda u: u.user_id)
        self.rng.shuffle(rest)
        return prioritized + rest

    def _fits(self, group: MatchGroup, uid: str) -> bool:
        if group.size >= self.sizes.max_size:
            return False
        if not self.require_compatible:
            return True
        return any(self.compatible(uid, m) for m in group.member_ids)

    def allocate(self, match_week, users, day=None, existing=(), genders=None) -> AllocationPlan:
        gender_of: Dict[str, Optional[str]] = dict(genders or {})
        gender_of.update({u.user_id: u.gender for u in users})

        groups: List[MatchGroup] = [
            replace(g, member_ids=list(g.member_ids), new_member_ids=[])
            for g in existing
            if g.day == day and g.status == GROUP_STATUS_ACTIVE
        ]
        counts = {GROUP_TYPE_SAME_GENDER: 0, GROUP_TYPE_MIXED: 0}
        for g in groups:
            counts[g.group_type] = counts.get(g.group_type, 0) + 1
        next_n = len(groups) + 1

        order = self.processing_order(users)
        unplaced = [u.user_id for u in order]
        placed = set()

        for u in order:
            uid = u.user_id
            if uid in placed:
                continue
            target = self._find_group(groups, uid, u.gender, gender_of)
            if target is None:
                if self.require_compatible and not any(
                    v != uid and v not in placed and self.compatible(uid, v) for v in unplaced
                ):
                    continue
                gtype = GROUP_TYPE_MIXED
                if u.gender is not None and counts[GROUP_TYPE_SAME_GENDER] <= counts[GROUP_TYPE_MIXED]:
                    gtype = GROUP_TYPE_SAME_GENDER
                if gtype == GROUP_TYPE_SAME_GENDER:
                    composition = composition_for_gender(u.gender)
                elif u.gender in (GENDER_FEMALE, GENDER_MALE):
                    # the opener's gender holds the larger share
                    composition = max(MIXED_COMPOSITIONS, key=lambda c: composition_quota(c)[u.gender])
                else:
                    composition = self.rng.choice(MIXED_COMPOSITIONS)
                target = MatchGroup(
                    match_week=match_week,
                    group_type=gtype,
                    name=group_name(day, next_n),
                    gender_composition=composition,
                    day=day,
                )
                next_n += 1
                counts[gtype] += 1
                groups.append(target)
            target.add(uid)
            placed.add(uid)

        # single-member groups go back to the pool
        for g in groups:
            if not g.existing and g.size == 1:
                placed.discard(g.member_ids[0])
                counts[g.group_type] -= 1
        groups = [g for g in groups if g.existing or g.size > 1]

        leftover = [uid for uid in unplaced if uid not in placed]
        groups.extend(self._partial_groups(match_week, day, leftover, gender_of, placed, next_n))

        for g in groups:
            if not g.existing:
                g.is_partial = g.size < self.sizes.min_size

        plan = AllocationPlan(groups=[g for g in groups if g.new_member_ids])
        for uid in unplaced:
            if uid in placed:
                continue
            has_partner = any(v != uid and self.compatible(uid, v) for v in unplaced)
            reason = insufficient_reason(day) if has_partner or not self.require_compatible else REASON_NO_COMPATIBLE_MATCH
            plan.waitlisted.append(WaitlistDecision(uid, reason, day))

        logger.info(
            "scored_allocation: match_week=%s day=%s users=%d new_groups=%d joined=%d waitlisted=%d",
            match_week, day, len(order), len(plan.new_groups),
            len(plan.groups) - len(plan.new_groups), len(plan.waitlisted),
        )
        return plan

    def _find_group(
        self,
        groups: List[MatchGroup],
        uid: str,
        gender: Optional[str],
        gender_of: Mapping[str, Optional[str]],
    ) -> Optional[MatchGroup]:
        if gender is not None:
            own = composition_for_gender(gender)
            for g in groups:
                if g.group_type == GROUP_TYPE_SAME_GENDER and g.gender_composition == own and self._fits(g, uid):
                    return g

        fallback = None
        for g in groups:
            if g.group_type != GROUP_TYPE_MIXED or not self._fits(g, uid):
                continue
            quota = composition_quota(g.gender_composition)
            if gender is not None and quota:
                seated = sum(1 for m in g.member_ids if gender_of.get(m) == gender)
                if seated < quota[gender]:
                    return g
            if fallback is None:
                fallback = g
        return fallback

    def _partial_groups(
        self,
        match_week: str,
        day: Optional[str],
        leftover: List[str],
        gender_of: Mapping[str, Optional[str]],
        placed: set,
        next_n: int,
    ) -> List[MatchGroup]:
        out: List[MatchGroup] = []
        for gender in (GENDER_FEMALE, GENDER_MALE):
            pool = [uid for uid in leftover if gender_of.get(uid) == gender]
            if len(pool) < self.sizes.partial_min_size:
                continue
            members = self._connected_subset(pool)
            if len(members) < self.sizes.partial_min_size:
                continue
            group = MatchGroup(
                match_week=match_week,
                group_type=GROUP_TYPE_SAME_GENDER,
                name=group_name(day, next_n),
                gender_composition=composition_for_gender(gender),
                day=day,
            )
            next_n += 1
            for uid in members:
                group.add(uid)
                placed.add(uid)
            out.append(group)
        return out

    def _connected_subset(self, pool: List[str]) -> List[str]:
        """First set of mutually compatible users, seeded from each user in turn."""
        best: List[str] = []
        for start in pool:
            members = [start]
            for uid in pool:
                if len(members) >= self.sizes.target_size:
                    break
                if uid == start:
                    continue
                if not self.require_compatible or all(self.compatible(uid, m) for m in members):
                    members.append(uid)
            if len(members) > len(best):
                best = members
            if len(best) >= self.sizes.partial_min_size:
                break
        return best
