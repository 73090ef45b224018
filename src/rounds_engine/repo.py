"""
DynamoDB repository for the match-group engine.

This module wraps every DynamoDB operation the engine performs: reading the
candidate pool (users, weekend events, paid bookings), reading this week's
groups and memberships, storing compatibility scores, writing groups as one
transaction, and maintaining the waitlist.

Idempotency rests on two conditional writes:

* a score row is keyed by the unordered pair and only written when absent, so
  a pair is never scored twice and a stored score is never overwritten;
* a membership row is keyed by ``(user, WEEK#<match_week>)`` and only written
  when no active row exists, so no user can hold two active groups in a week,
  no matter how many runs overlap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Set

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from .config import GSI_EVENT_NAME, GSI_WEEK_NAME, EngineConfig
from .errors import PersistenceError
from .models import (
    BOOKING_CONFIRMED,
    EVENT_OPEN_STATUSES,
    GROUP_STATUS_ACTIVE,
    MEMBERSHIP_ACTIVE,
    USER_STATUS_ACTIVE,
    Booking,
    Event,
    MatchGroup,
    ScoreRecord,
    User,
    WaitlistEntry,
    membership_item,
    now_iso,
)
from .timing import WeekendWindow

logger = logging.getLogger(__name__)

BATCH_GET_LIMIT = 100

_MEMBERSHIP_CONDITION = "attribute_not_exists(week_sk) OR membership_status <> :active"


@dataclass
class WriteResult:
    """
    Outcome of one group transaction.

    Attributes:
        ok: The transaction committed.
        conflicted: Users that already hold an active membership this week.
        group_unavailable: The group row already existed (new group) or is no
            longer active (existing group).
    """

    ok: bool
    conflicted: List[str] = field(default_factory=list)
    group_unavailable: bool = False


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class DynamoRepo:
    """Repository for users, bookings, groups, memberships, scores and the waitlist."""

    def __init__(self, config: EngineConfig, dynamodb=None, client=None) -> None:
        self.config = config
        self.dynamodb = dynamodb or boto3.resource("dynamodb", region_name=config.region)
        self.client = client or boto3.client("dynamodb", region_name=config.region)
        t = config.tables
        self.users_table = self.dynamodb.Table(t.users)
        self.events_table = self.dynamodb.Table(t.events)
        self.bookings_table = self.dynamodb.Table(t.bookings)
        self.groups_table = self.dynamodb.Table(t.groups)
        self.members_table = self.dynamodb.Table(t.members)
        self.matches_table = self.dynamodb.Table(t.matches)
        self.conversations_table = self.dynamodb.Table(t.conversations)
        self.waitlist_table = self.dynamodb.Table(t.waitlist)
        self._serializer = TypeSerializer()

    # -----------------------
    # Paging helpers
    # -----------------------
    @staticmethod
    def _scan_all(table, **kwargs) -> List[Dict[str, Any]]:
        resp = table.scan(**kwargs)
        items = resp.get("Items", [])
        while "LastEvaluatedKey" in resp:
            resp = table.scan(ExclusiveStartKey=resp["LastEvaluatedKey"], **kwargs)
            items.extend(resp.get("Items", []))
        return items

    @staticmethod
    def _query_all(table, **kwargs) -> List[Dict[str, Any]]:
        resp = table.query(**kwargs)
        items = resp.get("Items", [])
        while "LastEvaluatedKey" in resp:
            resp = table.query(ExclusiveStartKey=resp["LastEvaluatedKey"], **kwargs)
            items.extend(resp.get("Items", []))
        return items

    def _batch_get(self, table_name: str, key_name: str, keys: Sequence[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        unique = list(dict.fromkeys(keys))
        for i in range(0, len(unique), BATCH_GET_LIMIT):
            request = {table_name: {"Keys": [{key_name: k} for k in unique[i:i + BATCH_GET_LIMIT]]}}
            while request:
                resp = self.dynamodb.batch_get_item(RequestItems=request)
                out.extend(resp.get("Responses", {}).get(table_name, []))
                request = resp.get("UnprocessedKeys") or {}
        return out

    # -----------------------
    # Candidate pool
    # -----------------------
    def list_events_in_window(self, window: WeekendWindow) -> List[Event]:
        """Open or full events scheduled inside the weekend window."""
        try:
            items = self._scan_all(
                self.events_table,
                FilterExpression=Attr("status").is_in(list(EVENT_OPEN_STATUSES)),
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"events scan failed: {e}") from e

        events = []
        for it in items:
            ev = Event.from_item(it)
            if ev is None:
                logger.warning("event_skipped_bad_date: event=%s", it.get("event_pk"))
                continue
            if window.contains(ev.date_time):
                events.append(ev)
        return events

    def list_paid_bookings(self, event_ids: Iterable[str]) -> List[Booking]:
        """Paid + confirmed bookings for the given events, oldest first."""
        bookings: List[Booking] = []
        try:
            for event_id in event_ids:
                items = self._query_all(
                    self.bookings_table,
                    IndexName=GSI_EVENT_NAME,
                    KeyConditionExpression=Key("event_id").eq(event_id),
                    FilterExpression=Attr("paid").eq(True) & Attr("status").eq(BOOKING_CONFIRMED),
                )
                bookings.extend(Booking.from_item(it) for it in items)
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"bookings query failed: {e}") from e
        bookings.sort(key=lambda b: b.created_at)
        return bookings

    def list_active_users(self) -> List[User]:
        try:
            items = self._scan_all(
                self.users_table,
                FilterExpression=Attr("status").eq(USER_STATUS_ACTIVE),
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"users scan failed: {e}") from e
        return [User.from_item(it) for it in items]

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, User]:
        try:
            items = self._batch_get(self.config.tables.users, "user_pk", list(user_ids))
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"users batch get failed: {e}") from e
        return {it["user_pk"]: User.from_item(it) for it in items}

    # -----------------------
    # Groups for a week
    # -----------------------
    def _memberships_for_week(self, match_week: str) -> List[Dict[str, Any]]:
        return self._query_all(
            self.members_table,
            IndexName=GSI_WEEK_NAME,
            KeyConditionExpression=Key("gsi1pk").eq(match_week),
            FilterExpression=Attr("membership_status").eq(MEMBERSHIP_ACTIVE),
        )

    def list_active_groups(self, match_week: str) -> List[MatchGroup]:
        """Active groups of the week with their active members attached."""
        try:
            group_items = self._query_all(
                self.groups_table,
                IndexName=GSI_WEEK_NAME,
                KeyConditionExpression=Key("gsi1pk").eq(match_week),
                FilterExpression=Attr("status").eq(GROUP_STATUS_ACTIVE),
            )
            if not group_items:
                return []
            memberships = self._memberships_for_week(match_week)
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"groups query failed for {match_week}: {e}") from e

        by_group: Dict[str, List[str]] = {}
        for m in memberships:
            by_group.setdefault(m.get("group_id"), []).append(m["user_pk"])
        return [MatchGroup.from_item(it, by_group.get(it["group_pk"], [])) for it in group_items]

    def grouped_user_ids(self, match_week: str) -> Set[str]:
        """Users holding an active membership in an active group this week."""
        grouped: Set[str] = set()
        for g in self.list_active_groups(match_week):
            grouped.update(g.member_ids)
        return grouped

    # -----------------------
    # Compatibility scores
    # -----------------------
    def get_scores(self, pair_keys: Iterable[str]) -> Dict[str, ScoreRecord]:
        try:
            items = self._batch_get(self.config.tables.matches, "pair_pk", list(pair_keys))
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"scores batch get failed: {e}") from e
        return {it["pair_pk"]: ScoreRecord.from_item(it) for it in items}

    def put_score_if_new(self, record: ScoreRecord) -> bool:
        """
        Store a score unless one exists for the pair.

        Returns:
            True if the item was inserted, False if the pair was already scored.
        Raises:
            PersistenceError: For DynamoDB errors other than conditional check failures.
        """
        try:
            self.matches_table.put_item(
                Item=record.to_item(),
                ConditionExpression="attribute_not_exists(pair_pk)",
            )
            return True
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise PersistenceError(f"score write failed for {record.pair_pk}: {e}") from e

    # -----------------------
    # Group writes (one transaction per group)
    # -----------------------
    def _av(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._serializer.serialize(v) for k, v in item.items()}

    def _membership_puts(self, group_id: str, match_week: str, user_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return [
            {
                "Put": {
                    "TableName": self.config.tables.members,
                    "Item": self._av(membership_item(uid, group_id, match_week)),
                    "ConditionExpression": _MEMBERSHIP_CONDITION,
                    "ExpressionAttributeValues": {":active": {"S": MEMBERSHIP_ACTIVE}},
                }
            }
            for uid in user_ids
        ]

    def _run_transaction(self, items: List[Dict[str, Any]], member_offset: int, user_ids: Sequence[str]) -> WriteResult:
        """
        Execute a transaction whose items ``member_offset .. member_offset+len(user_ids)``
        are membership puts.  Condition failures are mapped back to users.
        """
        try:
            self.client.transact_write_items(TransactItems=items)
            return WriteResult(ok=True)
        except ClientError as e:
            if _error_code(e) != "TransactionCanceledException":
                raise PersistenceError(f"group transaction failed: {e}") from e
            reasons = e.response.get("CancellationReasons") or []
            conflicted: List[str] = []
            unavailable = False
            for idx, reason in enumerate(reasons):
                code = (reason or {}).get("Code") or "None"
                if code == "None":
                    continue
                if code != "ConditionalCheckFailed":
                    raise PersistenceError(f"group transaction cancelled: {code}") from e
                if member_offset <= idx < member_offset + len(user_ids):
                    conflicted.append(user_ids[idx - member_offset])
                else:
                    unavailable = True
            return WriteResult(ok=False, conflicted=conflicted, group_unavailable=unavailable)
        except BotoCoreError as e:
            raise PersistenceError(f"group transaction failed: {e}") from e

    def create_group(self, group: MatchGroup, conversation_id: str) -> WriteResult:
        """
        Write the group row, its memberships and its conversation atomically.

        Either all rows are written or none is, so a failed write never leaves
        a group without members behind.
        """
        if not group.group_id:
            raise ValueError("group_id must be assigned before writing")
        items: List[Dict[str, Any]] = [
            {
                "Put": {
                    "TableName": self.config.tables.groups,
                    "Item": self._av(group.to_item()),
                    "ConditionExpression": "attribute_not_exists(group_pk)",
                }
            }
        ]
        items.extend(self._membership_puts(group.group_id, group.match_week, group.member_ids))
        items.append(
            {
                "Put": {
                    "TableName": self.config.tables.conversations,
                    "Item": self._av({
                        "group_pk": group.group_id,
                        "conversation_id": conversation_id,
                        "created_at": now_iso(),
                    }),
                    "ConditionExpression": "attribute_not_exists(group_pk)",
                }
            }
        )
        return self._run_transaction(items, 1, list(group.member_ids))

    def add_members(self, group: MatchGroup, user_ids: Sequence[str]) -> WriteResult:
        """
        Add members to a stored group, provided it is still active and has room.

        The group row's ``member_count`` is bumped in the same transaction, so
        two runs joining the same group cannot push it past the maximum size.
        """
        added = len(user_ids)
        stored = max(0, len(group.member_ids) - added)
        items: List[Dict[str, Any]] = [
            {
                "Update": {
                    "TableName": self.config.tables.groups,
                    "Key": {"group_pk": {"S": group.group_id}},
                    "UpdateExpression": "SET member_count = if_not_exists(member_count, :stored) + :added",
                    "ConditionExpression": (
                        "#s = :active AND (attribute_not_exists(member_count) OR member_count <= :room)"
                    ),
                    "ExpressionAttributeNames": {"#s": "status"},
                    "ExpressionAttributeValues": {
                        ":active": {"S": GROUP_STATUS_ACTIVE},
                        ":stored": {"N": str(stored)},
                        ":added": {"N": str(added)},
                        ":room": {"N": str(self.config.sizes.max_size - added)},
                    },
                }
            }
        ]
        items.extend(self._membership_puts(group.group_id, group.match_week, user_ids))
        return self._run_transaction(items, 1, list(user_ids))

    # -----------------------
    # Waitlist
    # -----------------------
    def waitlist_priorities(self, user_ids: Iterable[str]) -> Dict[str, int]:
        """Highest stored priority per user, across weeks."""
        wanted = set(user_ids)
        if not wanted:
            return {}
        try:
            items = self._scan_all(self.waitlist_table, ProjectionExpression="user_pk, priority")
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"waitlist scan failed: {e}") from e
        out: Dict[str, int] = {}
        for it in items:
            uid = it.get("user_pk")
            if uid in wanted:
                out[uid] = max(out.get(uid, 0), int(it.get("priority", 0)))
        return out

    def upsert_waitlist(self, entries: Iterable[WaitlistEntry]) -> int:
        n = 0
        try:
            with self.waitlist_table.batch_writer(overwrite_by_pkeys=["user_pk", "week_sk"]) as batch:
                for entry in entries:
                    batch.put_item(Item=entry.to_item())
                    n += 1
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"waitlist write failed: {e}") from e
        return n

    def clear_waitlist(self, user_ids: Iterable[str]) -> int:
        """Remove every waitlist row of the given users."""
        n = 0
        try:
            with self.waitlist_table.batch_writer() as batch:
                for uid in user_ids:
                    rows = self._query_all(
                        self.waitlist_table,
                        KeyConditionExpression=Key("user_pk").eq(uid),
                        ProjectionExpression="user_pk, week_sk",
                    )
                    for row in rows:
                        batch.delete_item(Key={"user_pk": row["user_pk"], "week_sk": row["week_sk"]})
                        n += 1
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"waitlist cleanup failed: {e}") from e
        return n


