"""Job queue API: typed enqueue, per-campaign fan-out, stats and the trigger cycle."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .campaigns import check_and_complete_campaigns, get_campaign, list_active_campaigns, list_tweets
from .models import (
    ACTION_TYPES, CAMPAIGN_ACTIVE, ENGAGER_DISCOVERY, METRICS_REFRESH,
    EngagerDiscoveryPayload, MetricsRefreshPayload, parse_payload, payload_to_json,
)
from .repository import config_int, counts, get_job, insert_jobs, outstanding_units
from .utils import utcnow

logger = logging.getLogger(__name__)


def enqueue(conn, campaign_id: str, kind: str, payload: Optional[Dict[str, Any]] = None,
            now: Optional[datetime] = None):
    """Create one pending job. Does not check for identical outstanding jobs."""
    if not campaign_id or not campaign_id.strip():
        raise ValueError("Campaign id cannot be empty.")
    if not get_campaign(conn, campaign_id):
        raise ValueError(f"Campaign '{campaign_id}' not found.")
    parsed = parse_payload(kind, payload)

    ids = insert_jobs(conn, [{
        "campaign_id": campaign_id,
        "kind": kind,
        "payload": payload_to_json(parsed),
        "unit_key": parsed.unit_key(),
        "max_retries": config_int(conn, "max_retries_default"),
    }], now=now)
    return get_job(conn, ids[0])


def enqueue_campaign_jobs(conn, campaign_id: str, now: Optional[datetime] = None) -> int:
    """Fan out one metrics-refresh job and one engager-discovery job per action
    type for every tracked tweet of an active campaign.

    Units that still have an outstanding job are left alone, so a trigger that
    runs faster than the workers does not pile up duplicates.
    """
    campaign = get_campaign(conn, campaign_id)
    if not campaign:
        raise ValueError(f"Campaign '{campaign_id}' not found.")
    if campaign["status"] != CAMPAIGN_ACTIVE:
        logger.info(f"Campaign {campaign_id} is {campaign['status']}; no jobs enqueued")
        return 0

    tweets = list_tweets(conn, campaign_id)
    if not tweets:
        raise ValueError(f"Campaign '{campaign_id}' has no tracked tweets.")

    max_retries = config_int(conn, "max_retries_default")
    busy = {
        METRICS_REFRESH: outstanding_units(conn, campaign_id, METRICS_REFRESH),
        ENGAGER_DISCOVERY: outstanding_units(conn, campaign_id, ENGAGER_DISCOVERY),
    }

    jobs = []
    for tweet in tweets:
        payloads = [(METRICS_REFRESH, MetricsRefreshPayload(tweet_id=tweet["tweet_id"]))]
        payloads += [
            (ENGAGER_DISCOVERY, EngagerDiscoveryPayload(tweet_id=tweet["tweet_id"], action_type=action))
            for action in ACTION_TYPES
        ]
        for kind, payload in payloads:
            if payload.unit_key() in busy[kind]:
                continue
            jobs.append({
                "campaign_id": campaign_id,
                "kind": kind,
                "payload": payload_to_json(payload),
                "unit_key": payload.unit_key(),
                "max_retries": max_retries,
            })

    enqueued = len(insert_jobs(conn, jobs, now=now))
    logger.info(
        f"Campaign {campaign_id}: {enqueued} jobs enqueued for {len(tweets)} tweets "
        f"({len(tweets) * (1 + len(ACTION_TYPES)) - enqueued} already outstanding)"
    )
    return enqueued


def get_job_queue_stats(conn) -> Dict[str, int]:
    return counts(conn)


def trigger(conn, now: Optional[datetime] = None) -> Dict[str, Any]:
    """One scheduling cycle: close finished campaigns, then enqueue jobs for
    every campaign that is still active."""
    now = now or utcnow()
    completion = check_and_complete_campaigns(conn, now=now)
    logger.info(f"Campaign completion check: {completion['completed']} completed, {completion['errors']} errors")

    campaigns = list_active_campaigns(conn)
    total, errors, results = 0, 0, []
    for campaign in campaigns:
        try:
            enqueued = enqueue_campaign_jobs(conn, campaign["id"], now=now)
            total += enqueued
            results.append({"campaign_id": campaign["id"], "jobs_enqueued": enqueued, "status": "success"})
        except Exception as e:
            errors += 1
            logger.error(f"Error enqueuing jobs for campaign {campaign['id']}: {e}")
            results.append({"campaign_id": campaign["id"], "jobs_enqueued": 0, "status": "error", "error": str(e)})

    return {
        "completion": completion,
        "campaigns_processed": len(campaigns),
        "jobs_enqueued": total,
        "errors": errors,
        "results": results,
    }
