"""Kind-specific job processors and the collaborator bundle they call out to."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .alerts import dedupe_alerts, form_alerts
from .campaigns import (
    get_tweet, record_engagement, set_engagement_score, unscored_engagements, update_tweet_metrics,
)
from .models import (
    ALERT_FORMATION, ENGAGER_DISCOVERY, METRICS_REFRESH, SNAPSHOT,
    AlertFormationPayload, EngagerDiscoveryPayload, Job, MetricsRefreshPayload, parse_payload,
)
from .snapshots import create_snapshot

logger = logging.getLogger(__name__)

METRIC_FIELDS = ("like_count", "retweet_count", "quote_count", "reply_count", "view_count", "bookmark_count")


class RateLimitError(Exception):
    """Raised by a collaborator when the upstream API asks us to back off.

    The unit is parked for `retry_after` seconds; the job keeps its retries.
    """

    def __init__(self, message: str = "rate limited", retry_after: float = 900.0):
        super().__init__(message)
        self.retry_after = retry_after


def no_fresh_metrics(tweet_id: str) -> Optional[Dict[str, int]]:
    return None


def no_new_engagements(tweet_id: str, action_type: str) -> List[dict]:
    return []


def follower_score(engagement: dict) -> float:
    """Fallback importance: log-scaled follower count, 0-100."""
    followers = max(int(engagement.get("followers") or 0), 0)
    return round(min(100.0, math.log10(followers + 1) * 10), 2)


@dataclass
class Services:
    """External collaborators used by job handlers.

    fetch_metrics(tweet_id) -> counters dict, or None when nothing new
    fetch_engagements(tweet_id, action_type) -> engagement dicts from ingestion
    score(engagement) -> importance score
    generate_copy(campaign, engagement) -> notification text or None

    fetch_metrics and fetch_engagements may raise RateLimitError.
    """
    fetch_metrics: Callable[[str], Optional[Dict[str, int]]] = no_fresh_metrics
    fetch_engagements: Callable[[str, str], List[dict]] = no_new_engagements
    score: Callable[[dict], float] = follower_score
    generate_copy: Optional[Callable[[dict, dict], Optional[str]]] = None


def refresh_metrics(conn, job: Job, payload: MetricsRefreshPayload, services: Services, now: datetime):
    tweet = get_tweet(conn, job.campaign_id, payload.tweet_id)
    if not tweet:
        raise ValueError(f"Tweet {payload.tweet_id} is not tracked by campaign {job.campaign_id}")

    current = services.fetch_metrics(payload.tweet_id)
    if current is None:
        logger.debug(f"No fresh metrics for tweet {payload.tweet_id}; keeping baseline")
        return

    delta = {f: int(current.get(f, 0)) - tweet[f] for f in METRIC_FIELDS}
    logger.info(f"Metrics delta for tweet {payload.tweet_id}: {delta}")
    update_tweet_metrics(conn, job.campaign_id, payload.tweet_id, current, now=now)


def discover_engagers(conn, job: Job, payload: EngagerDiscoveryPayload, services: Services, now: datetime):
    for item in services.fetch_engagements(payload.tweet_id, payload.action_type):
        record_engagement(
            conn,
            campaign_id=job.campaign_id,
            tweet_id=payload.tweet_id,
            action_type=payload.action_type,
            user_id=str(item["user_id"]),
            username=item.get("username"),
            name=item.get("name"),
            followers=item.get("followers", 0),
            text=item.get("text"),
            timestamp=item.get("timestamp"),
        )

    scored = 0
    for engagement in unscored_engagements(conn, job.campaign_id, payload.tweet_id, payload.action_type):
        set_engagement_score(conn, engagement["id"], services.score(dict(engagement)))
        scored += 1
    if scored:
        logger.info(f"Scored {scored} {payload.action_type} engager(s) on tweet {payload.tweet_id}")


def run_alert_formation(conn, job: Job, payload: AlertFormationPayload, services: Services, now: datetime):
    form_alerts(conn, job.campaign_id, generate_copy=services.generate_copy, now=now, limit=payload.limit)
    dedupe_alerts(conn, job.campaign_id)


def run_snapshot(conn, job: Job, payload, services: Services, now: datetime):
    create_snapshot(conn, job.campaign_id, now=now)


HANDLERS = {
    METRICS_REFRESH: refresh_metrics,
    ENGAGER_DISCOVERY: discover_engagers,
    ALERT_FORMATION: run_alert_formation,
    SNAPSHOT: run_snapshot,
}


def dispatch(conn, job: Job, services: Services, now: datetime):
    handler = HANDLERS.get(job.kind)
    if handler is None:
        raise ValueError(f"Unknown job kind: {job.kind}")
    handler(conn, job, parse_payload(job.kind, job.payload), services, now)
