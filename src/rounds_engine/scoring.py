"""
Pairwise compatibility scoring for the scored flow.

A score provider is any callable ``(user_a, user_b) -> number``.  The expander
asks it about every unordered pair of the pool that has no stored score,
stores the answer once, and hands the allocator the set of accepted pairs.
"""

from __future__ import annotations

import base64
import json
import logging
import math
import threading
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import boto3

from .errors import ScoringError
from .models import SCORE_STATUS_PENDING, SCORE_STATUS_REJECTED, ScoreRecord, canonical_pair, pair_key
from .timing import Deadline

logger = logging.getLogger(__name__)

PairScoreProvider = Callable[[str, str], Any]


def coerce_score(value: Any) -> Optional[float]:
    """Return a finite number, or None when the provider's answer is unusable."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        f = float(value)
    elif isinstance(value, str):
        try:
            f = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return f if math.isfinite(f) else None


# -----------------------
# HTTP oracle
# -----------------------
class HttpPairScorer:
    """
    Calls a remote compatibility endpoint with a JSON POST.

    The API key comes from ``api_key`` or, when ``secret_id`` is set, from
    Secrets Manager (cached after the first lookup).  429 and 5xx answers are
    retried with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        secret_id: Optional[str] = None,
        region: Optional[str] = None,
        retry_max: int = 2,
        retry_base_delay: float = 0.5,
        timeout: float = 10.0,
        secrets_client=None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.secret_id = secret_id
        self.region = region
        self.retry_max = retry_max
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout
        self._secrets_client = secrets_client
        self._sleep = sleep
        self._cached_key = api_key.strip() if api_key else None
        self._key_lock = threading.Lock()

    def _api_key(self) -> str:
        if self._cached_key:
            return self._cached_key
        # workers share one lookup
        with self._key_lock:
            if not self._cached_key:
                self._cached_key = self._fetch_key()
        return self._cached_key

    def _fetch_key(self) -> str:
        if not self.secret_id:
            raise ScoringError("SCORER_API_KEY is not set and SCORER_SECRET_ID is empty")

        client = self._secrets_client or boto3.client("secretsmanager", region_name=self.region)
        resp = client.get_secret_value(SecretId=self.secret_id)
        if resp.get("SecretString"):
            s = resp["SecretString"]
        else:
            s = base64.b64decode(resp["SecretBinary"]).decode("utf-8")

        try:
            obj = json.loads(s)
        except ValueError:
            key = s
        else:
            key = (obj.get("SCORER_API_KEY") or obj.get("api_key") or obj.get("key")) if isinstance(obj, dict) else None
        if not key:
            raise ScoringError(f"secret {self.secret_id} holds no scorer api key")
        return key.strip()

    def __call__(self, user_a: str, user_b: str) -> Any:
        data = json.dumps({"user1_id": user_a, "user2_id": user_b}).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key()}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )

        attempt = 0
        while True:
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                    body = resp.read().decode("utf-8")
                break
            except urllib.error.HTTPError as e:
                retryable = e.code == 429 or e.code >= 500
                if retryable and attempt < self.retry_max:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning("scorer_retry: status=%s delay=%.2fs", e.code, delay)
                    self._sleep(delay)
                    attempt += 1
                    continue
                raise ScoringError(f"scorer returned HTTP {e.code}") from e
            except (urllib.error.URLError, OSError) as e:
                raise ScoringError(f"scorer unreachable: {e}") from e

        try:
            payload = json.loads(body) if body else None
        except ValueError as e:
            raise ScoringError("scorer returned invalid JSON") from e
        if isinstance(payload, dict):
            return payload.get("score")
        return payload


# -----------------------
# Expansion
# -----------------------
@dataclass
class ExpansionStats:
    pairs_total: int = 0
    pairs_cached: int = 0
    pairs_scored: int = 0
    pairs_accepted: int = 0
    pairs_rejected: int = 0
    pairs_skipped: int = 0


@dataclass
class ExpansionResult:
    accepted: Set[str] = field(default_factory=set)
    stats: ExpansionStats = field(default_factory=ExpansionStats)

    def compatible(self, a: str, b: str) -> bool:
        return pair_key(a, b) in self.accepted


class PairwiseMatchExpander:
    """
    Scores every unscored pair of a pool and records the outcome.

    Provider calls run in batches on a bounded thread pool; the results of a
    batch are written serially before the next batch starts.  A pair whose
    call fails or returns something that is not a number is skipped: nothing
    is stored and it counts as unknown, never as zero.
    """

    def __init__(
        self,
        repo,
        provider: PairScoreProvider,
        threshold: float = 20,
        batch_size: int = 20,
        concurrency: int = 4,
        deadline: Optional[Deadline] = None,
    ) -> None:
        self.repo = repo
        self.provider = provider
        self.threshold = threshold
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.deadline = deadline

    def expand(self, user_ids: Sequence[str], dry_run: bool = False) -> ExpansionResult:
        result = ExpansionResult()
        stats = result.stats

        pairs = [canonical_pair(a, b) for a, b in combinations(sorted(set(user_ids)), 2)]
        stats.pairs_total = len(pairs)
        if not pairs:
            return result

        stored = self.repo.get_scores([pair_key(a, b) for a, b in pairs])
        todo: List[Tuple[str, str]] = []
        for a, b in pairs:
            rec = stored.get(pair_key(a, b))
            if rec is None:
                todo.append((a, b))
                continue
            stats.pairs_cached += 1
            if rec.accepted and rec.score >= self.threshold:
                result.accepted.add(rec.pair_pk)

        logger.info(
            "scoring_start: pairs=%d cached=%d to_score=%d batch=%d workers=%d",
            stats.pairs_total, stats.pairs_cached, len(todo), self.batch_size, self.concurrency,
        )

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            for i in range(0, len(todo), self.batch_size):
                if self.deadline is not None:
                    self.deadline.check("scoring")
                batch = todo[i:i + self.batch_size]
                answers = self._score_batch(executor, batch)
                self._record_batch(batch, answers, result, dry_run)

        logger.info(
            "scoring_done: scored=%d accepted=%d rejected=%d skipped=%d",
            stats.pairs_scored, stats.pairs_accepted, stats.pairs_rejected, stats.pairs_skipped,
        )
        return result

    def _score_batch(self, executor: ThreadPoolExecutor, batch: List[Tuple[str, str]]) -> Dict[Tuple[str, str], Optional[float]]:
        answers: Dict[Tuple[str, str], Optional[float]] = {}
        futures = {executor.submit(self.provider, a, b): (a, b) for a, b in batch}
        for fut in as_completed(futures):
            pair = futures[fut]
            try:
                raw = fut.result()
            except Exception as e:
                logger.warning("score_failed: pair=%s error=%r", pair_key(*pair), e)
                answers[pair] = None
                continue
            value = coerce_score(raw)
            if value is None:
                logger.warning("score_invalid: pair=%s value=%r", pair_key(*pair), raw)
            answers[pair] = value
        return answers

    def _record_batch(
        self,
        batch: List[Tuple[str, str]],
        answers: Dict[Tuple[str, str], Optional[float]],
        result: ExpansionResult,
        dry_run: bool,
    ) -> None:
        stats = result.stats
        for a, b in batch:
            value = answers.get((a, b))
            if value is None:
                stats.pairs_skipped += 1
                continue
            stats.pairs_scored += 1
            accepted = value >= self.threshold
            status = SCORE_STATUS_PENDING if accepted else SCORE_STATUS_REJECTED
            if accepted:
                stats.pairs_accepted += 1
                result.accepted.add(pair_key(a, b))
            else:
                stats.pairs_rejected += 1
            if dry_run:
                continue
            record = ScoreRecord.for_pair(a, b, int(round(value)), status)
            if not self.repo.put_score_if_new(record):
                logger.info("score_already_stored: pair=%s", record.pair_pk)
