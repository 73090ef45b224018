"""
Configuration for the match-group engine.

Every setting comes from an environment variable with a default, the same way
the Lambda handlers read their table names and tuning knobs.  ``EngineConfig.from_env``
gathers them into one object and validates them up front so that a bad
deployment fails before the first DynamoDB read.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import ConfigError

# -----------------------
# Defaults
# -----------------------
DEFAULT_REGION = "us-east-1"

DEFAULT_TABLES = {
    "users": "rounds_users",
    "events": "rounds_events",
    "bookings": "rounds_bookings",
    "groups": "rounds_match_groups",
    "members": "rounds_group_members",
    "matches": "rounds_matches",
    "conversations": "rounds_group_conversations",
    "waitlist": "rounds_waitlist",
}

GSI_WEEK_NAME = "gsi_week"
GSI_GROUP_NAME = "gsi_group"
GSI_EVENT_NAME = "gsi_event"

MIN_MATCH_SCORE = 20

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SizePolicy:
    """
    Group size bounds shared by both flows.

    Attributes:
        min_size: Smallest regular group.  Day buckets below it are waitlisted.
        target_size: Chunk size used by the day flow.
        max_size: Hard ceiling for any group, in either flow.
        partial_min_size: Smallest "partial" group the scored flow may create.
    """

    min_size: int = 3
    target_size: int = 4
    max_size: int = 5
    partial_min_size: int = 2

    def validate(self) -> None:
        if self.partial_min_size < 2:
            raise ConfigError("PARTIAL_MIN_SIZE must be at least 2")
        if not self.partial_min_size <= self.min_size <= self.target_size <= self.max_size:
            raise ConfigError(
                "group sizes must satisfy PARTIAL_MIN_SIZE <= GROUP_MIN_SIZE "
                "<= GROUP_TARGET_SIZE <= GROUP_MAX_SIZE "
                f"(got {self.partial_min_size}/{self.min_size}/{self.target_size}/{self.max_size})"
            )


@dataclass(frozen=True)
class TableNames:
    users: str = DEFAULT_TABLES["users"]
    events: str = DEFAULT_TABLES["events"]
    bookings: str = DEFAULT_TABLES["bookings"]
    groups: str = DEFAULT_TABLES["groups"]
    members: str = DEFAULT_TABLES["members"]
    matches: str = DEFAULT_TABLES["matches"]
    conversations: str = DEFAULT_TABLES["conversations"]
    waitlist: str = DEFAULT_TABLES["waitlist"]


@dataclass(frozen=True)
class EngineConfig:
    region: str = DEFAULT_REGION
    tables: TableNames = field(default_factory=TableNames)
    sizes: SizePolicy = field(default_factory=SizePolicy)

    # Scoring
    min_match_score: int = MIN_MATCH_SCORE
    score_batch_size: int = 20
    score_concurrency: int = 4
    score_retry_max: int = 2
    score_retry_base_delay: float = 0.5
    max_pool_size: int = 400
    require_compatible_match: bool = True
    scorer_url: Optional[str] = None
    scorer_api_key: Optional[str] = None
    scorer_secret_id: Optional[str] = None

    # Run control
    run_budget_seconds: float = 240.0
    cutover_hour: int = 0

    # Trigger / notifications
    cron_secret: Optional[str] = None
    admin_group: str = "admin"
    notify_topic_arn: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from environment variables.  Raises ConfigError on bad values."""
        env = os.environ if environ is None else environ

        tables = TableNames(**{
            key: _str(env, f"{key.upper()}_TABLE", default)
            for key, default in DEFAULT_TABLES.items()
        })
        for key, value in vars(tables).items():
            if not value:
                raise ConfigError(f"{key.upper()}_TABLE must not be empty")

        sizes = SizePolicy(
            min_size=_int(env, "GROUP_MIN_SIZE", 3),
            target_size=_int(env, "GROUP_TARGET_SIZE", 4),
            max_size=_int(env, "GROUP_MAX_SIZE", 5),
            partial_min_size=_int(env, "PARTIAL_MIN_SIZE", 2),
        )
        sizes.validate()

        cfg = cls(
            region=_str(env, "AWS_REGION", DEFAULT_REGION),
            tables=tables,
            sizes=sizes,
            min_match_score=_int(env, "MIN_MATCH_SCORE", MIN_MATCH_SCORE),
            score_batch_size=_int(env, "SCORE_BATCH_SIZE", 20),
            score_concurrency=_int(env, "SCORE_CONCURRENCY", 4),
            score_retry_max=_int(env, "SCORE_RETRY_MAX", 2),
            score_retry_base_delay=_float(env, "SCORE_RETRY_BASE_DELAY", 0.5),
            max_pool_size=_int(env, "MAX_POOL_SIZE", 400),
            require_compatible_match=_bool(env, "REQUIRE_COMPATIBLE_MATCH", True),
            scorer_url=_str(env, "SCORER_URL", None),
            scorer_api_key=_str(env, "SCORER_API_KEY", None),
            scorer_secret_id=_str(env, "SCORER_SECRET_ID", None),
            run_budget_seconds=_float(env, "RUN_BUDGET_SECONDS", 240.0),
            cutover_hour=_int(env, "CUTOVER_HOUR", 0),
            cron_secret=_str(env, "CRON_SECRET", None),
            admin_group=_str(env, "ADMIN_GROUP", "admin"),
            notify_topic_arn=_str(env, "NOTIFY_TOPIC_ARN", None),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        self.sizes.validate()
        if self.score_batch_size < 1:
            raise ConfigError("SCORE_BATCH_SIZE must be positive")
        if self.score_concurrency < 1:
            raise ConfigError("SCORE_CONCURRENCY must be positive")
        if self.score_retry_max < 0:
            raise ConfigError("SCORE_RETRY_MAX must not be negative")
        if self.max_pool_size < 2:
            raise ConfigError("MAX_POOL_SIZE must be at least 2")
        if self.run_budget_seconds <= 0:
            raise ConfigError("RUN_BUDGET_SECONDS must be positive")
        if not 0 <= self.cutover_hour <= 23:
            raise ConfigError("CUTOVER_HOUR must be between 0 and 23")

    def require_scorer(self) -> None:
        """The scored flow cannot run without somewhere to send pairs."""
        if not self.scorer_url:
            raise ConfigError("SCORER_URL is not set; the scored flow needs a compatibility oracle")
        if not self.scorer_api_key and not self.scorer_secret_id:
            raise ConfigError("SCORER_API_KEY is not set and SCORER_SECRET_ID is empty")


# -----------------------
# Env parsing helpers
# -----------------------
def _str(env: Mapping[str, str], name: str, default):
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw if raw else default


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    val = raw.strip().lower()
    if val in _TRUE:
        return True
    if val in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")
