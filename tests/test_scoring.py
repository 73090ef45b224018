import io
import json
import threading
import time
import urllib.error

import pytest

from rounds_engine.errors import RunTimeout, ScoringError
from rounds_engine.models import ScoreRecord
from rounds_engine.scoring import HttpPairScorer, PairwiseMatchExpander, coerce_score
from rounds_engine.timing import Deadline


def table_scorer(table, default=50):
    def score(a, b):
        return table.get(frozenset((a, b)), default)
    return score


def test_coerce_score():
    assert coerce_score(20) == 20.0
    assert coerce_score("35.5") == 35.5
    assert coerce_score(True) is None
    assert coerce_score(None) is None
    assert coerce_score(float("nan")) is None
    assert coerce_score("abc") is None
    assert coerce_score({"score": 3}) is None


def test_threshold_splits_accepted_and_rejected(repo):
    provider = table_scorer({frozenset(("a", "b")): 19, frozenset(("a", "c")): 20})
    result = PairwiseMatchExpander(repo, provider).expand(["a", "b", "c"])
    assert result.compatible("a", "c")
    assert result.compatible("c", "b")
    assert not result.compatible("a", "b")
    assert result.stats.pairs_scored == 3
    assert result.stats.pairs_accepted == 2
    assert result.stats.pairs_rejected == 1
    assert repo.scores["a|b"].status == "rejected"
    assert repo.scores["a|c"].status == "pending"


def test_below_threshold_never_stored_as_accepted(repo):
    provider = table_scorer({}, default=19.9)
    PairwiseMatchExpander(repo, provider).expand(["a", "b", "c", "d"])
    assert repo.scores
    assert all(not rec.accepted for rec in repo.scores.values())


def test_failures_and_invalid_values_are_skipped(repo):
    def provider(a, b):
        if "x" in (a, b):
            raise RuntimeError("oracle down")
        return "n/a"

    result = PairwiseMatchExpander(repo, provider).expand(["a", "b", "x"])
    assert result.stats.pairs_skipped == 3
    assert result.stats.pairs_scored == 0
    assert repo.scores == {}
    assert not result.accepted


def test_stored_scores_are_reused(repo):
    repo.scores["a|b"] = ScoreRecord.for_pair("a", "b", 80, "pending")
    repo.scores["a|c"] = ScoreRecord.for_pair("a", "c", 5, "rejected")
    calls = []

    def provider(a, b):
        calls.append((a, b))
        return 90

    result = PairwiseMatchExpander(repo, provider).expand(["a", "b", "c"])
    assert calls == [("b", "c")]
    assert result.stats.pairs_cached == 2
    assert result.compatible("a", "b")
    assert not result.compatible("a", "c")
    assert repo.scores["a|b"].score == 80


def test_dry_run_writes_nothing(repo):
    result = PairwiseMatchExpander(repo, table_scorer({})).expand(["a", "b"], dry_run=True)
    assert result.compatible("a", "b")
    assert repo.scores == {}


def test_concurrency_is_bounded(repo):
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def provider(a, b):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        with lock:
            active["now"] -= 1
        return 40

    users = [f"u{i:02d}" for i in range(10)]
    result = PairwiseMatchExpander(repo, provider, batch_size=7, concurrency=3).expand(users)
    assert result.stats.pairs_scored == 45
    assert active["peak"] <= 3
    assert len(repo.scores) == 45


def test_deadline_stops_scoring(repo):
    ticks = iter([0.0] + [100.0] * 10)
    deadline = Deadline(10, clock=lambda: next(ticks))
    with pytest.raises(RunTimeout):
        PairwiseMatchExpander(repo, table_scorer({}), deadline=deadline).expand(["a", "b", "c"])
    assert repo.scores == {}


class _Resp(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_http_scorer_retries_on_429(monkeypatch):
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(json.loads(req.data.decode("utf-8")))
        if len(calls) == 1:
            raise urllib.error.HTTPError(req.full_url, 429, "slow down", {}, io.BytesIO(b""))
        return _Resp(json.dumps({"score": 42}).encode("utf-8"))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    sleeps = []
    scorer = HttpPairScorer("https://scorer.invalid", api_key="k", sleep=sleeps.append)
    assert scorer("a", "b") == 42
    assert calls[0] == {"user1_id": "a", "user2_id": "b"}
    assert sleeps == [0.5]


def test_http_scorer_gives_up(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 503, "unavailable", {}, io.BytesIO(b""))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    scorer = HttpPairScorer("https://scorer.invalid", api_key="k", retry_max=1, sleep=lambda s: None)
    with pytest.raises(ScoringError):
        scorer("a", "b")


def test_http_scorer_reads_key_from_secret_once():
    class FakeSecrets:
        calls = 0

        def get_secret_value(self, SecretId):
            FakeSecrets.calls += 1
            return {"SecretString": json.dumps({"SCORER_API_KEY": " abc "})}

    scorer = HttpPairScorer("https://scorer.invalid", secret_id="arn:x", secrets_client=FakeSecrets())
    assert scorer._api_key() == "abc"
    assert scorer._api_key() == "abc"
    assert FakeSecrets.calls == 1


def test_secret_fetched_once_across_scoring_workers(repo, monkeypatch):
    fetched_by = []

    class SlowSecrets:
        def get_secret_value(self, SecretId):
            fetched_by.append(threading.current_thread().name)
            time.sleep(0.05)
            return {"SecretString": json.dumps({"api_key": "abc"})}

    seen_auth = set()

    def fake_urlopen(req, timeout=None):
        seen_auth.add(req.get_header("Authorization"))
        return _Resp(json.dumps({"score": 42}).encode("utf-8"))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    scorer = HttpPairScorer("https://scorer.invalid", secret_id="arn:x", secrets_client=SlowSecrets())
    result = PairwiseMatchExpander(repo, scorer, concurrency=4).expand(["a", "b", "c", "d", "e", "f"])
    assert len(fetched_by) == 1
    assert seen_auth == {"Bearer abc"}
    assert result.stats.pairs_accepted == 15
