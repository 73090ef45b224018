"""
Writes an allocation plan, one group per transaction.

Each new group goes out as a single unit (group row, memberships, conversation);
members joining a stored group go out as one unit guarded by the group still
being active.  Users another run grouped first are reported as conflicted and
the group is retried once without them.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .config import SizePolicy
from .errors import PersistenceError
from .models import MatchGroup
from .timing import Deadline

logger = logging.getLogger(__name__)


def new_conversation_id() -> str:
    return secrets.token_urlsafe(16)


@dataclass
class PersistOutcome:
    groups_created: List[MatchGroup] = field(default_factory=list)
    groups_joined: List[MatchGroup] = field(default_factory=list)
    placed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    conflicted: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def partial_groups_created(self) -> int:
        return sum(1 for g in self.groups_created if g.is_partial)


class GroupPersister:
    def __init__(
        self,
        repo,
        sizes: SizePolicy,
        deadline: Optional[Deadline] = None,
        conversation_id_factory: Callable[[], str] = new_conversation_id,
    ) -> None:
        self.repo = repo
        self.sizes = sizes
        self.deadline = deadline
        self.conversation_id_factory = conversation_id_factory

    def persist(self, groups: Sequence[MatchGroup], dry_run: bool = False) -> PersistOutcome:
        out = PersistOutcome()
        for idx, group in enumerate(groups):
            if self.deadline is not None and self.deadline.expired():
                rest = [uid for g in groups[idx:] for uid in g.new_member_ids]
                logger.warning("persist_timed_out: groups_left=%d users=%d", len(groups) - idx, len(rest))
                out.failed.extend(rest)
                out.timed_out = True
                break

            if dry_run:
                if not group.existing:
                    group.assign_id()
                    out.groups_created.append(group)
                else:
                    out.groups_joined.append(group)
                out.placed.extend(group.new_member_ids)
                continue

            try:
                if group.existing:
                    self._join(group, out)
                else:
                    self._create(group, out)
            except PersistenceError:
                logger.exception("group_write_failed: match_week=%s group=%s", group.match_week, group.group_id)
                out.failed.extend(group.new_member_ids)

        logger.info(
            "persist_done: created=%d joined=%d placed=%d conflicted=%d failed=%d",
            len(out.groups_created), len(out.groups_joined),
            len(out.placed), len(out.conflicted), len(out.failed),
        )
        return out

    def _create(self, group: MatchGroup, out: PersistOutcome) -> None:
        for attempt in range(2):
            group.assign_id()
            group.is_partial = group.size < self.sizes.min_size
            res = self.repo.create_group(group, self.conversation_id_factory())
            if res.ok:
                logger.info(
                    "group_created: group=%s match_week=%s type=%s size=%d partial=%s",
                    group.group_id, group.match_week, group.group_type, group.size, group.is_partial,
                )
                out.groups_created.append(group)
                out.placed.extend(group.new_member_ids)
                return

            out.conflicted.extend(res.conflicted)
            group.remove_new(res.conflicted)
            logger.warning(
                "group_conflict: group=%s conflicted=%d group_unavailable=%s attempt=%d",
                group.group_id, len(res.conflicted), res.group_unavailable, attempt,
            )
            if not res.conflicted or group.size < self.sizes.partial_min_size:
                break
        out.failed.extend(group.new_member_ids)

    def _join(self, group: MatchGroup, out: PersistOutcome) -> None:
        for attempt in range(2):
            if not group.new_member_ids:
                return
            res = self.repo.add_members(group, list(group.new_member_ids))
            if res.ok:
                logger.info("group_joined: group=%s added=%d size=%d", group.group_id, len(group.new_member_ids), group.size)
                out.groups_joined.append(group)
                out.placed.extend(group.new_member_ids)
                return

            out.conflicted.extend(res.conflicted)
            group.remove_new(res.conflicted)
            logger.warning(
                "group_join_conflict: group=%s conflicted=%d group_unavailable=%s attempt=%d",
                group.group_id, len(res.conflicted), res.group_unavailable, attempt,
            )
            if res.group_unavailable:
                break
        out.failed.extend(group.new_member_ids)
