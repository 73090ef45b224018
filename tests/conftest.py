from datetime import datetime, timezone

import pytest

from rounds_engine.config import EngineConfig
from rounds_engine.errors import PersistenceError
from rounds_engine.models import (
    GROUP_STATUS_ACTIVE,
    MEMBERSHIP_ACTIVE,
    Booking,
    Event,
    MatchGroup,
    User,
    membership_item,
)
from rounds_engine.repo import WriteResult

# Monday; the match-week it resolves to is Thursday 2026-01-08
MONDAY = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
MATCH_WEEK = "2026-01-08"
FRIDAY_EVENING = datetime(2026, 1, 9, 19, 0, tzinfo=timezone.utc)
SATURDAY_EVENING = datetime(2026, 1, 10, 19, 0, tzinfo=timezone.utc)
SUNDAY_EVENING = datetime(2026, 1, 11, 19, 0, tzinfo=timezone.utc)


class InMemoryRepo:
    """Stand-in for DynamoRepo with the same conditional-write rules."""

    def __init__(self):
        self.users = {}
        self.events = []
        self.bookings = []
        self.groups = {}
        self.memberships = {}
        self.conversations = {}
        self.scores = {}
        self.waitlist = {}
        self.fail_group_writes = 0
        self.transactions = 0
        self.max_size = 5

    # -- seeding helpers --
    def add_user(self, user_id, gender=None, status="active", day=None):
        self.users[user_id] = User(user_id=user_id, gender=gender, status=status, day=day)
        return self.users[user_id]

    def add_event(self, event_id, when, status="open"):
        self.events.append(Event(event_id=event_id, date_time=when, status=status))

    def add_booking(self, user_id, event_id, paid=True, status="confirmed", day=None, gender=None):
        if user_id not in self.users:
            self.add_user(user_id, gender=gender)
        n = len(self.bookings)
        self.bookings.append(Booking(
            user_id=user_id, event_id=event_id, paid=paid, status=status,
            day_preference=day, created_at=f"2026-01-01T00:00:{n:02d}+00:00",
        ))

    def seed_group(self, group_id, match_week, member_ids, group_type="mixed", composition=None, day=None):
        self.groups[group_id] = MatchGroup(
            match_week=match_week, group_type=group_type, gender_composition=composition,
            day=day, group_id=group_id, existing=True, name=group_id, member_ids=list(member_ids),
        ).to_item()
        for uid in member_ids:
            self.memberships[(uid, match_week)] = membership_item(uid, group_id, match_week)

    def active_memberships(self, match_week):
        return [m for (uid, week), m in self.memberships.items()
                if week == match_week and m["membership_status"] == MEMBERSHIP_ACTIVE]

    # -- repository interface --
    def list_events_in_window(self, window):
        return [e for e in self.events if e.status in ("open", "full") and window.contains(e.date_time)]

    def list_paid_bookings(self, event_ids):
        ids = set(event_ids)
        out = [b for b in self.bookings if b.event_id in ids and b.is_paid_and_confirmed]
        return sorted(out, key=lambda b: b.created_at)

    def list_active_users(self):
        return [u for u in self.users.values() if u.status == "active"]

    def get_users(self, user_ids):
        return {uid: self.users[uid] for uid in user_ids if uid in self.users}

    def list_active_groups(self, match_week):
        out = []
        for gid, item in self.groups.items():
            if item["match_week"] != match_week or item["status"] != GROUP_STATUS_ACTIVE:
                continue
            members = [m["user_pk"] for m in self.active_memberships(match_week) if m["group_id"] == gid]
            out.append(MatchGroup.from_item(item, members))
        return out

    def grouped_user_ids(self, match_week):
        return {uid for g in self.list_active_groups(match_week) for uid in g.member_ids}

    def get_scores(self, pair_keys):
        return {k: self.scores[k] for k in pair_keys if k in self.scores}

    def put_score_if_new(self, record):
        if record.pair_pk in self.scores:
            return False
        self.scores[record.pair_pk] = record
        return True

    def _conflicts(self, match_week, user_ids):
        return [uid for uid in user_ids
                if self.memberships.get((uid, match_week), {}).get("membership_status") == MEMBERSHIP_ACTIVE]

    def create_group(self, group, conversation_id):
        self.transactions += 1
        if self.fail_group_writes:
            self.fail_group_writes -= 1
            raise PersistenceError("group transaction failed: simulated")
        conflicted = self._conflicts(group.match_week, group.member_ids)
        unavailable = group.group_id in self.groups
        if conflicted or unavailable:
            return WriteResult(ok=False, conflicted=conflicted, group_unavailable=unavailable)
        self.groups[group.group_id] = group.to_item()
        for uid in group.member_ids:
            self.memberships[(uid, group.match_week)] = membership_item(uid, group.group_id, group.match_week)
        self.conversations[group.group_id] = conversation_id
        return WriteResult(ok=True)

    def add_members(self, group, user_ids):
        self.transactions += 1
        item = self.groups.get(group.group_id)
        unavailable = (
            item is None
            or item["status"] != GROUP_STATUS_ACTIVE
            or item.get("member_count", len(group.member_ids) - len(user_ids)) + len(user_ids) > self.max_size
        )
        conflicted = self._conflicts(group.match_week, user_ids)
        if conflicted or unavailable:
            return WriteResult(ok=False, conflicted=conflicted, group_unavailable=unavailable)
        item["member_count"] = item.get("member_count", len(group.member_ids) - len(user_ids)) + len(user_ids)
        for uid in user_ids:
            self.memberships[(uid, group.match_week)] = membership_item(uid, group.group_id, group.match_week)
        return WriteResult(ok=True)

    def waitlist_priorities(self, user_ids):
        wanted = set(user_ids)
        out = {}
        for (uid, _), row in self.waitlist.items():
            if uid in wanted:
                out[uid] = max(out.get(uid, 0), row["priority"])
        return out

    def upsert_waitlist(self, entries):
        n = 0
        for e in entries:
            self.waitlist[(e.user_id, e.match_week)] = e.to_item()
            n += 1
        return n

    def clear_waitlist(self, user_ids):
        drop = set(user_ids)
        keys = [k for k in self.waitlist if k[0] in drop]
        for k in keys:
            del self.waitlist[k]
        return len(keys)


class RecordingNotifier:
    def __init__(self):
        self.ready = []
        self.waitlisted_entries = []

    def groups_ready(self, groups):
        self.ready.extend(groups)
        return len(self.ready)

    def waitlisted(self, entries):
        self.waitlisted_entries.extend(entries)
        return len(self.waitlisted_entries)


@pytest.fixture
def repo():
    return InMemoryRepo()


@pytest.fixture
def config():
    return EngineConfig(scorer_url="https://scorer.invalid/score", scorer_api_key="k")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def weekend(repo):
    """One open event per weekend day."""
    repo.add_event("ev_fri", FRIDAY_EVENING)
    repo.add_event("ev_sat", SATURDAY_EVENING)
    repo.add_event("ev_sun", SUNDAY_EVENING)
    return repo
