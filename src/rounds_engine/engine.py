"""
One run of the match-group engine.

``MatchEngine.run`` wires the stages together: resolve the eligible pool,
score pairs (scored flow only), allocate, persist, update the waitlist and
publish notifications.  It returns a ``RunSummary`` with the counts the
trigger reports back.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .allocator import AllocationPlan, DayBucketChunker, ScoredAllocator, WaitlistDecision
from .config import EngineConfig
from .eligibility import SCOPE_DAY, SCOPE_SCORED, EligibilityResolver, EligiblePool
from .errors import PersistenceError
from .models import MatchGroup, User, WaitlistEntry
from .notify import NullNotifier, Notifier
from .persister import GroupPersister, PersistOutcome
from .scoring import ExpansionStats, HttpPairScorer, PairScoreProvider, PairwiseMatchExpander
from .timing import Deadline

logger = logging.getLogger(__name__)

REASON_POOL_LIMIT = "pool_limit"


@dataclass
class RunSummary:
    match_week: str
    scope: str
    dry_run: bool = False
    reason: Optional[str] = None
    groups_created: int = 0
    groups_joined: int = 0
    partial_groups_created: int = 0
    users_placed: int = 0
    users_waitlisted: int = 0
    users_failed: int = 0
    users_already_grouped: int = 0
    users_conflicted: int = 0
    pairs_scored: int = 0
    pairs_accepted: int = 0
    pairs_rejected: int = 0
    pairs_skipped: int = 0
    by_day: Dict[str, int] = field(default_factory=dict)
    timed_out: bool = False
    groups: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def nothing_to_do(self) -> bool:
        return self.reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "match_week": self.match_week,
            "scope": self.scope,
            "dry_run": self.dry_run,
            "reason": self.reason,
            "groups_created": self.groups_created,
            "groups_joined": self.groups_joined,
            "partial_groups_created": self.partial_groups_created,
            "users_placed": self.users_placed,
            "users_waitlisted": self.users_waitlisted,
            "users_failed": self.users_failed,
            "users_already_grouped": self.users_already_grouped,
            "users_conflicted": self.users_conflicted,
            "pairs_scored": self.pairs_scored,
            "pairs_accepted": self.pairs_accepted,
            "pairs_rejected": self.pairs_rejected,
            "pairs_skipped": self.pairs_skipped,
            "by_day": dict(self.by_day),
            "timed_out": self.timed_out,
            "groups": list(self.groups),
        }


def _group_view(g: MatchGroup) -> Dict[str, Any]:
    return {
        "group_id": g.group_id,
        "name": g.name,
        "day": g.day,
        "group_type": g.group_type,
        "gender_composition": g.gender_composition,
        "is_partial_group": g.is_partial,
        "existing": g.existing,
        "member_ids": list(g.member_ids),
        "added_user_ids": list(g.new_member_ids),
    }


class MatchEngine:
    def __init__(
        self,
        config: EngineConfig,
        repo,
        scorer: Optional[PairScoreProvider] = None,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.repo = repo
        self.scorer = scorer
        self.notifier = notifier or NullNotifier()
        self.rng = rng or random.Random()
        self.clock = clock

    def _scorer(self) -> PairScoreProvider:
        if self.scorer is None:
            self.config.require_scorer()
            self.scorer = HttpPairScorer(
                url=self.config.scorer_url,
                api_key=self.config.scorer_api_key,
                secret_id=self.config.scorer_secret_id,
                region=self.config.region,
                retry_max=self.config.score_retry_max,
                retry_base_delay=self.config.score_retry_base_delay,
            )
        return self.scorer

    def run(
        self,
        scope: str = SCOPE_DAY,
        now: Optional[datetime] = None,
        match_week: Optional[str] = None,
        dry_run: bool = False,
        day: Optional[str] = None,
    ) -> RunSummary:
        """
        Run one allocation for a match-week.

        Raises:
            ConfigError: Before any read, when the configuration cannot serve the scope.
            PersistenceError: When the pool or this week's groups cannot be read.
            RunTimeout: When the budget runs out before any group is written.
        """
        deadline = Deadline(self.config.run_budget_seconds, self.clock)
        scorer = self._scorer() if scope == SCOPE_SCORED else None

        resolver = EligibilityResolver(self.repo, self.config.cutover_hour)
        pool = resolver.resolve(scope, now=now, day=day, match_week=match_week)
        summary = RunSummary(
            match_week=pool.match_week,
            scope=scope,
            dry_run=dry_run,
            reason=pool.reason,
            by_day=pool.by_day(),
            users_already_grouped=pool.already_grouped,
        )
        if pool.reason:
            return summary
        deadline.check("eligibility")

        existing = self.repo.list_active_groups(pool.match_week)
        if scope == SCOPE_DAY:
            plan = self._plan_day_flow(pool, existing)
            priorities: Dict[str, int] = {}
        else:
            plan, priorities = self._plan_scored_flow(pool, existing, scorer, deadline, summary, day, dry_run)

        outcome = GroupPersister(self.repo, self.config.sizes, deadline).persist(plan.groups, dry_run=dry_run)
        entries = self._settle_waitlist(pool.match_week, plan.waitlisted, outcome, priorities, dry_run)

        if not dry_run:
            self.notifier.groups_ready(outcome.groups_created + outcome.groups_joined)
            self.notifier.waitlisted(entries)

        summary.groups_created = len(outcome.groups_created)
        summary.groups_joined = len(outcome.groups_joined)
        summary.partial_groups_created = outcome.partial_groups_created
        summary.users_placed = len(outcome.placed)
        summary.users_waitlisted = len(entries)
        summary.users_failed = len(outcome.failed)
        summary.users_conflicted = len(outcome.conflicted)
        summary.users_already_grouped += len(outcome.conflicted)
        summary.timed_out = outcome.timed_out
        summary.groups = [_group_view(g) for g in outcome.groups_created + outcome.groups_joined]

        logger.info(
            "run_done: match_week=%s scope=%s dry_run=%s created=%d placed=%d waitlisted=%d failed=%d",
            summary.match_week, scope, dry_run, summary.groups_created,
            summary.users_placed, summary.users_waitlisted, summary.users_failed,
        )
        return summary

    # -----------------------
    # Planning
    # -----------------------
    def _plan_day_flow(self, pool: EligiblePool, existing: List[MatchGroup]) -> AllocationPlan:
        chunker = DayBucketChunker(self.config.sizes)
        plan = AllocationPlan()
        for bucket_day, users in pool.buckets.items():
            plan.extend(chunker.allocate(pool.match_week, users, day=bucket_day, existing=existing))
        return plan

    def _plan_scored_flow(
        self,
        pool: EligiblePool,
        existing: List[MatchGroup],
        scorer: PairScoreProvider,
        deadline: Deadline,
        summary: RunSummary,
        day: Optional[str],
        dry_run: bool,
    ):
        users = pool.buckets.get(day, [])
        priorities = self.repo.waitlist_priorities([u.user_id for u in users])
        users, overflow = self._bound_pool(users, priorities)

        expander = PairwiseMatchExpander(
            self.repo,
            scorer,
            threshold=self.config.min_match_score,
            batch_size=self.config.score_batch_size,
            concurrency=self.config.score_concurrency,
            deadline=deadline,
        )
        expansion = expander.expand([u.user_id for u in users], dry_run=dry_run)
        self._copy_stats(expansion.stats, summary)

        in_scope = [g for g in existing if g.day == day]
        member_ids = [m for g in in_scope for m in g.member_ids]
        genders = {uid: u.gender for uid, u in self.repo.get_users(member_ids).items()} if member_ids else {}

        allocator = ScoredAllocator(
            self.config.sizes,
            rng=self.rng,
            compatible=expansion.compatible,
            priorities=priorities,
            require_compatible=self.config.require_compatible_match,
        )
        plan = allocator.allocate(pool.match_week, users, day=day, existing=in_scope, genders=genders)
        plan.waitlisted.extend(WaitlistDecision(u.user_id, REASON_POOL_LIMIT, day) for u in overflow)
        return plan, priorities

    def _bound_pool(self, users: List[User], priorities: Dict[str, int]):
        """Keep at most ``max_pool_size`` users, waitlisted ones first."""
        limit = self.config.max_pool_size
        if len(users) <= limit:
            return users, []
        first = sorted((u for u in users if priorities.get(u.user_id, 0) > 0),
                       key=lambda u: (-priorities[u.user_id], u.user_id))
        rest = [u for u in users if priorities.get(u.user_id, 0) <= 0]
        self.rng.shuffle(rest)
        ordered = first + rest
        logger.warning("pool_truncated: users=%d limit=%d", len(users), limit)
        return ordered[:limit], ordered[limit:]

    @staticmethod
    def _copy_stats(stats: ExpansionStats, summary: RunSummary) -> None:
        summary.pairs_scored = stats.pairs_scored
        summary.pairs_accepted = stats.pairs_accepted
        summary.pairs_rejected = stats.pairs_rejected
        summary.pairs_skipped = stats.pairs_skipped

    # -----------------------
    # Waitlist
    # -----------------------
    def _settle_waitlist(
        self,
        match_week: str,
        decisions: List[WaitlistDecision],
        outcome: PersistOutcome,
        priorities: Dict[str, int],
        dry_run: bool,
    ) -> List[WaitlistEntry]:
        """Upsert waitlisted users with a bumped priority and drop placed users from the waitlist."""
        missing = [d.user_id for d in decisions if d.user_id not in priorities]
        if missing and not dry_run:
            try:
                priorities = {**priorities, **self.repo.waitlist_priorities(missing)}
            except PersistenceError:
                logger.exception("waitlist_read_failed: match_week=%s", match_week)

        entries = [
            WaitlistEntry(d.user_id, match_week, priorities.get(d.user_id, 0) + 1, d.reason, d.day)
            for d in decisions
        ]
        if dry_run:
            return entries

        try:
            if entries:
                self.repo.upsert_waitlist(entries)
            if outcome.placed:
                self.repo.clear_waitlist(outcome.placed)
        except PersistenceError:
            logger.exception("waitlist_update_failed: match_week=%s waitlisted=%d", match_week, len(entries))
        return entries
