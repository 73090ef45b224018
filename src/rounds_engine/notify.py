"""
Fire-and-forget notifications for the outcome of a run.

Messages are published to an SNS topic; whatever subscribes to it (push,
email, chat bootstrap) does the delivery.  A failed publish is logged and
never undoes the writes that triggered it.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import MatchGroup, WaitlistEntry, now_iso

logger = logging.getLogger(__name__)

KIND_GROUP_READY = "group_ready"
KIND_SMALLER_GROUP = "smaller_group"
KIND_PRIORITIZED_NEXT_ROUND = "prioritized_next_round"


class Notifier:
    def publish(self, kind: str, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def groups_ready(self, groups: Iterable[MatchGroup]) -> int:
        sent = 0
        for g in groups:
            kind = KIND_SMALLER_GROUP if g.is_partial else KIND_GROUP_READY
            payload = {
                "group_id": g.group_id,
                "name": g.name,
                "match_week": g.match_week,
                "day": g.day,
                "user_ids": list(g.new_member_ids),
            }
            if self.publish(kind, payload):
                sent += 1
        return sent

    def waitlisted(self, entries: Iterable[WaitlistEntry]) -> int:
        sent = 0
        for e in entries:
            payload = {
                "user_id": e.user_id,
                "match_week": e.match_week,
                "priority": e.priority,
                "reason": e.reason,
            }
            if self.publish(KIND_PRIORITIZED_NEXT_ROUND, payload):
                sent += 1
        return sent


class NullNotifier(Notifier):
    """Used when no topic is configured."""

    def publish(self, kind: str, payload: Dict[str, Any]) -> bool:
        logger.debug("notify_skipped: kind=%s", kind)
        return False


class SnsNotifier(Notifier):
    def __init__(self, topic_arn: str, region: Optional[str] = None, client=None) -> None:
        self.topic_arn = topic_arn
        self.client = client or boto3.client("sns", region_name=region)

    def publish(self, kind: str, payload: Dict[str, Any]) -> bool:
        message = dict(payload, type=kind, sent_at=now_iso())
        try:
            self.client.publish(
                TopicArn=self.topic_arn,
                Message=json.dumps(message),
                MessageAttributes={"type": {"DataType": "String", "StringValue": kind}},
            )
            return True
        except (ClientError, BotoCoreError):
            logger.exception("notify_failed: kind=%s", kind)
            return False
