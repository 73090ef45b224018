import json
import os
import base64
import hmac
import logging

from rounds_engine.config import EngineConfig
from rounds_engine.eligibility import REASON_NO_EVENTS, REASON_NO_USERS, SCOPE_DAY
from rounds_engine.engine import MatchEngine
from rounds_engine.errors import ConfigError, PersistenceError, RunTimeout
from rounds_engine.notify import NullNotifier, SnsNotifier
from rounds_engine.repo import DynamoRepo

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ========= ENV =========
ALLOW_ORIGIN = os.environ.get("ALLOW_ORIGIN", "*")

_TRUE = ("1", "true", "yes")


def _resp(status: int, body: dict):
    return {
        "statusCode": status,
        "headers": {
            "Access-Control-Allow-Origin": ALLOW_ORIGIN,
            "Access-Control-Allow-Headers": "Content-Type,Authorization,x-cron-secret",
            "Access-Control-Allow-Methods": "OPTIONS,POST",
            "Content-Type": "application/json",
        },
        "body": json.dumps(body),
    }


def _get_header(event, name: str):
    h = event.get("headers") or {}
    for k, v in h.items():
        if k.lower() == name.lower():
            return v
    return ""


def _method(event) -> str:
    return (
        event.get("requestContext", {}).get("http", {}).get("method")
        or event.get("httpMethod")
        or ""
    ).upper()


def _is_http(event) -> bool:
    return bool(_method(event))


def _claims(event) -> dict:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    return (authorizer.get("jwt") or {}).get("claims") or authorizer.get("claims") or {}


def _claim_groups(claims: dict) -> set:
    raw = claims.get("cognito:groups")
    if isinstance(raw, list):
        return {str(x) for x in raw}
    if isinstance(raw, str):
        # API Gateway flattens list claims to "[a b]"
        return {x for x in raw.strip("[]").replace(",", " ").split() if x}
    return set()


def _authorize(event, config: EngineConfig):
    """Return None when the caller may trigger a run, else 401 or 403."""
    secret = (_get_header(event, "x-cron-secret") or "").strip()
    if secret:
        if config.cron_secret and hmac.compare_digest(secret, config.cron_secret):
            return None
        return 401

    claims = _claims(event)
    if not claims:
        return 401
    if config.admin_group in _claim_groups(claims) or claims.get("role") == config.admin_group:
        return None
    return 403


def _http_options(event) -> dict:
    qs = event.get("queryStringParameters") or {}
    opts = {}
    raw_body = event.get("body")
    if raw_body:
        if event.get("isBase64Encoded"):
            raw_body = base64.b64decode(raw_body).decode("utf-8", errors="replace")
        data = json.loads(raw_body)
        if isinstance(data, dict):
            opts.update({k: data[k] for k in ("scope", "dry_run", "day") if k in data})
    opts.update({k: qs[k] for k in ("scope", "dry_run", "day") if qs.get(k)})
    return opts


def _as_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in _TRUE
    return bool(v)


def _as_text(opts: dict, key: str):
    v = opts.get(key)
    if v is None or v == "":
        return None
    if not isinstance(v, str):
        raise ValueError(f"{key} must be a string")
    return v.strip().lower() or None


def build_engine(config: EngineConfig) -> MatchEngine:
    repo = DynamoRepo(config)
    if config.notify_topic_arn:
        notifier = SnsNotifier(config.notify_topic_arn, region=config.region)
    else:
        notifier = NullNotifier()
    return MatchEngine(config, repo, notifier=notifier)


def _status_for(summary) -> int:
    if summary.reason in (REASON_NO_EVENTS, REASON_NO_USERS):
        return 404
    if summary.users_failed and not summary.users_placed:
        return 500
    return 200


def lambda_handler(event, context):
    """
    HTTP (POST):
      - auth: x-cron-secret header, or an admin claim from the JWT authorizer
      - ?scope=day|scored&dry_run=true&day=friday

    Direct / scheduled invocation:
      - {"scope": "scored", "dry_run": true, "match_week": "2026-01-08", "day": "friday"}
    """
    event = event or {}
    is_http = _is_http(event)

    def reply(status: int, body: dict):
        if is_http:
            return _resp(status, body)
        return dict(body, status=status)

    if is_http:
        if _method(event) == "OPTIONS":
            return _resp(200, {"ok": True})
        if _method(event) != "POST":
            return _resp(405, {"ok": False, "error": "Method not allowed"})

    try:
        config = EngineConfig.from_env()
    except ConfigError as e:
        logger.error("config_invalid: %s", e)
        return reply(500, {"ok": False, "error": str(e)})

    if is_http:
        denied = _authorize(event, config)
        if denied:
            logger.warning("trigger_denied: status=%s", denied)
            error = "Unauthorized" if denied == 401 else "Forbidden"
            return _resp(denied, {"ok": False, "error": error})
        try:
            opts = _http_options(event)
        except ValueError:
            return _resp(400, {"ok": False, "error": "Invalid JSON body"})
        match_week = None
    else:
        opts = event
        match_week = event.get("match_week")

    try:
        scope = _as_text(opts, "scope") or SCOPE_DAY
        day = _as_text(opts, "day")
        if match_week is not None and not isinstance(match_week, str):
            raise ValueError("match_week must be a string")
    except ValueError as e:
        return reply(400, {"ok": False, "error": str(e)})
    dry_run = _as_bool(opts.get("dry_run"))

    try:
        engine = build_engine(config)
        summary = engine.run(scope=scope, match_week=match_week, dry_run=dry_run, day=day)
    except ConfigError as e:
        logger.error("config_invalid: %s", e)
        return reply(500, {"ok": False, "error": str(e)})
    except RunTimeout as e:
        logger.error("run_timed_out: %s", e)
        return reply(500, {"ok": False, "error": str(e), "timed_out": True})
    except PersistenceError as e:
        logger.exception("run_failed: scope=%s", scope)
        return reply(500, {"ok": False, "error": str(e)})
    except ValueError as e:
        return reply(400, {"ok": False, "error": str(e)})

    body = summary.to_dict()
    status = _status_for(summary)
    if status != 200:
        body["ok"] = False
    logger.info("trigger_done: status=%s match_week=%s scope=%s", status, summary.match_week, scope)
    return reply(status, body)
