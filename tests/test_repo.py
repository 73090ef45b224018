import pytest
from botocore.exceptions import ClientError

from conftest import FRIDAY_EVENING, MATCH_WEEK
from rounds_engine.config import EngineConfig
from rounds_engine.errors import PersistenceError
from rounds_engine.models import MatchGroup, ScoreRecord
from rounds_engine.repo import DynamoRepo
from rounds_engine.timing import parse_match_week, weekend_window


def client_error(code, op="PutItem", **extra):
    response = {"Error": {"Code": code, "Message": code}}
    response.update(extra)
    return ClientError(response, op)


class FakeTable:
    def __init__(self, name, pages=None):
        self.name = name
        self.pages = pages or [[]]
        self.calls = []
        self.put_error = None
        self.puts = []

    def _paged(self, kwargs):
        self.calls.append(kwargs)
        idx = 0
        if "ExclusiveStartKey" in kwargs:
            idx = kwargs["ExclusiveStartKey"]["page"]
        resp = {"Items": list(self.pages[idx])}
        if idx + 1 < len(self.pages):
            resp["LastEvaluatedKey"] = {"page": idx + 1}
        return resp

    def scan(self, **kwargs):
        return self._paged(kwargs)

    def query(self, **kwargs):
        return self._paged(kwargs)

    def put_item(self, **kwargs):
        if self.put_error:
            raise self.put_error
        self.puts.append(kwargs)


class FakeResource:
    def __init__(self, tables=None):
        self.tables = tables or {}
        self.batch_calls = []
        self.batch_responses = []

    def Table(self, name):
        return self.tables.setdefault(name, FakeTable(name))

    def batch_get_item(self, RequestItems):
        self.batch_calls.append(RequestItems)
        return self.batch_responses.pop(0)


class FakeClient:
    def __init__(self, error=None):
        self.error = error
        self.transactions = []

    def transact_write_items(self, TransactItems):
        self.transactions.append(TransactItems)
        if self.error:
            raise self.error
        return {}


def make_repo(resource=None, client=None):
    return DynamoRepo(EngineConfig(), dynamodb=resource or FakeResource(), client=client or FakeClient())


def cancelled(*codes):
    return client_error(
        "TransactionCanceledException", "TransactWriteItems",
        CancellationReasons=[{"Code": c} for c in codes],
    )


def test_scan_follows_pagination():
    resource = FakeResource({
        "rounds_users": FakeTable("rounds_users", pages=[
            [{"user_pk": "a", "status": "active"}],
            [{"user_pk": "b", "status": "active", "gender": "f"}],
        ]),
    })
    users = make_repo(resource).list_active_users()
    assert [u.user_id for u in users] == ["a", "b"]
    assert users[1].gender == "female"
    assert resource.tables["rounds_users"].calls[1]["ExclusiveStartKey"] == {"page": 1}


def test_scan_error_becomes_persistence_error():
    resource = FakeResource()
    table = resource.Table("rounds_users")

    def failing_scan(**kwargs):
        raise client_error("ProvisionedThroughputExceededException", "Scan")

    table.scan = failing_scan
    with pytest.raises(PersistenceError):
        make_repo(resource).list_active_users()


def test_events_filtered_to_window():
    resource = FakeResource({
        "rounds_events": FakeTable("rounds_events", pages=[[
            {"event_pk": "in", "date_time": FRIDAY_EVENING.isoformat(), "status": "open"},
            {"event_pk": "later", "date_time": "2026-01-16T19:00:00Z", "status": "open"},
            {"event_pk": "broken", "date_time": "not a date", "status": "open"},
        ]]),
    })
    window = weekend_window(parse_match_week(MATCH_WEEK))
    events = make_repo(resource).list_events_in_window(window)
    assert [e.event_id for e in events] == ["in"]


def test_put_score_if_new():
    repo = make_repo()
    rec = ScoreRecord.for_pair("b", "a", 33, "pending")
    assert repo.put_score_if_new(rec) is True
    put = repo.matches_table.puts[0]
    assert put["ConditionExpression"] == "attribute_not_exists(pair_pk)"
    assert put["Item"]["pair_pk"] == "a|b"

    repo.matches_table.put_error = client_error("ConditionalCheckFailedException")
    assert repo.put_score_if_new(rec) is False

    repo.matches_table.put_error = client_error("ValidationException")
    with pytest.raises(PersistenceError):
        repo.put_score_if_new(rec)


def test_batch_get_retries_unprocessed_keys():
    resource = FakeResource()
    resource.batch_responses = [
        {"Responses": {"rounds_matches": [{"pair_pk": "a|b", "user_a": "a", "user_b": "b", "score": 40}]},
         "UnprocessedKeys": {"rounds_matches": {"Keys": [{"pair_pk": "a|c"}]}}},
        {"Responses": {"rounds_matches": []}},
    ]
    scores = make_repo(resource).get_scores(["a|b", "a|c"])
    assert list(scores) == ["a|b"]
    assert len(resource.batch_calls) == 2


def _group(members):
    g = MatchGroup(match_week=MATCH_WEEK, group_type="mixed", name="Rounds Friday Group 1", day="friday")
    for uid in members:
        g.add(uid)
    g.assign_id()
    return g


def test_create_group_is_one_transaction():
    client = FakeClient()
    res = make_repo(client=client).create_group(_group(["a", "b", "c"]), "conv1")
    assert res.ok
    items = client.transactions[0]
    assert len(items) == 5
    assert items[0]["Put"]["TableName"] == "rounds_match_groups"
    assert items[0]["Put"]["ConditionExpression"] == "attribute_not_exists(group_pk)"
    assert items[0]["Put"]["Item"]["member_count"] == {"N": "3"}
    member_put = items[1]["Put"]
    assert member_put["TableName"] == "rounds_group_members"
    assert member_put["Item"]["week_sk"] == {"S": f"WEEK#{MATCH_WEEK}"}
    assert "attribute_not_exists(week_sk)" in member_put["ConditionExpression"]
    assert items[4]["Put"]["TableName"] == "rounds_group_conversations"
    assert items[4]["Put"]["Item"]["conversation_id"] == {"S": "conv1"}


def test_create_group_maps_cancellation_to_users():
    client = FakeClient(error=cancelled("None", "None", "ConditionalCheckFailed", "None", "None"))
    res = make_repo(client=client).create_group(_group(["a", "b", "c"]), "conv1")
    assert not res.ok
    assert res.conflicted == ["b"]
    assert not res.group_unavailable


def test_add_members_to_inactive_group():
    client = FakeClient(error=cancelled("ConditionalCheckFailed", "None"))
    g = MatchGroup(match_week=MATCH_WEEK, group_type="mixed", group_id="g_old", existing=True, member_ids=["a"])
    g.add("z")
    res = make_repo(client=client).add_members(g, ["z"])
    assert not res.ok
    assert res.group_unavailable
    update = client.transactions[0][0]["Update"]
    assert update["Key"] == {"group_pk": {"S": "g_old"}}
    assert "member_count <= :room" in update["ConditionExpression"]
    values = update["ExpressionAttributeValues"]
    assert values[":room"] == {"N": "4"}
    assert values[":stored"] == {"N": "1"}
    assert values[":added"] == {"N": "1"}


def test_unexpected_cancellation_raises():
    client = FakeClient(error=cancelled("None", "ThrottlingError", "None", "None", "None"))
    with pytest.raises(PersistenceError):
        make_repo(client=client).create_group(_group(["a", "b", "c"]), "conv1")


def test_list_active_groups_attaches_members():
    resource = FakeResource({
        "rounds_match_groups": FakeTable("rounds_match_groups", pages=[[
            {"group_pk": "g1", "match_week": MATCH_WEEK, "group_type": "mixed", "status": "active"},
        ]]),
        "rounds_group_members": FakeTable("rounds_group_members", pages=[[
            {"user_pk": "a", "group_id": "g1", "membership_status": "active"},
            {"user_pk": "b", "group_id": "g1", "membership_status": "active"},
        ]]),
    })
    repo = make_repo(resource)
    groups = repo.list_active_groups(MATCH_WEEK)
    assert groups[0].member_ids == ["a", "b"]
    assert groups[0].existing
    assert repo.grouped_user_ids(MATCH_WEEK) == {"a", "b"}
