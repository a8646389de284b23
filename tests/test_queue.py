import pytest

from campaignwatch.campaigns import create_campaign, get_campaign, set_campaign_status
from campaignwatch.models import (
    ALERT_FORMATION, CAMPAIGN_COMPLETED, ENGAGER_DISCOVERY, METRICS_REFRESH, PENDING, SNAPSHOT,
)
from campaignwatch.queue import enqueue, enqueue_campaign_jobs, get_job_queue_stats, trigger
from campaignwatch.repository import claim_one, list_jobs


def test_enqueue_creates_pending_job(conn, campaign, clock):
    job = enqueue(conn, "X", ENGAGER_DISCOVERY, {"tweet_id": "t1", "action_type": "quote"}, now=clock.now)

    assert job.status == PENDING
    assert job.retry_count == 0
    assert job.retry_after is None
    assert job.max_retries == 3
    assert job.payload == {"tweet_id": "t1", "action_type": "quote"}
    assert job.unit_key == "t1:quote"


def test_enqueue_fills_payload_defaults(conn, campaign, clock):
    assert enqueue(conn, "X", ALERT_FORMATION, {}, now=clock.now).payload == {"limit": 1000}
    assert enqueue(conn, "X", SNAPSHOT, None, now=clock.now).payload == {}


@pytest.mark.parametrize(
    "campaign_id, kind, payload, message",
    [
        ("missing", METRICS_REFRESH, {"tweet_id": "t1"}, "not found"),
        ("X", "reticulate", {}, "Unknown job kind"),
        ("X", METRICS_REFRESH, {}, "Invalid payload"),
        ("X", METRICS_REFRESH, {"tweet_id": "  "}, "tweet_id"),
        ("X", METRICS_REFRESH, {"tweet_id": "t1", "extra": 1}, "Unexpected payload"),
        ("X", ENGAGER_DISCOVERY, {"tweet_id": "t1", "action_type": "like"}, "action_type"),
        ("X", ALERT_FORMATION, {"limit": 0}, "positive integer"),
    ],
)
def test_enqueue_rejects_malformed_input_without_writing(conn, campaign, campaign_id, kind, payload, message):
    with pytest.raises(ValueError, match=message):
        enqueue(conn, campaign_id, kind, payload)
    assert list_jobs(conn) == []


def test_enqueue_campaign_jobs_fans_out_per_tweet(conn, campaign, clock):
    assert enqueue_campaign_jobs(conn, "X", now=clock.now) == 12

    jobs = list_jobs(conn, campaign_id="X")
    assert sum(j.kind == METRICS_REFRESH for j in jobs) == 3
    assert sum(j.kind == ENGAGER_DISCOVERY for j in jobs) == 9
    assert {j.payload["action_type"] for j in jobs if j.kind == ENGAGER_DISCOVERY} == {"retweet", "reply", "quote"}


def test_enqueue_campaign_jobs_skips_outstanding_units(conn, campaign, clock):
    enqueue_campaign_jobs(conn, "X", now=clock.now)
    assert enqueue_campaign_jobs(conn, "X", now=clock.now) == 0

    # once a unit is claimed and finished it can be scheduled again
    claimed = claim_one(conn, "w", now=clock.now)
    conn.execute("UPDATE jobs SET status='completed' WHERE id=?", (claimed.id,))
    conn.commit()
    assert enqueue_campaign_jobs(conn, "X", now=clock.now) == 1


def test_enqueue_campaign_jobs_ignores_inactive_campaign(conn, campaign, clock):
    set_campaign_status(conn, "X", CAMPAIGN_COMPLETED, now=clock.now)
    assert enqueue_campaign_jobs(conn, "X", now=clock.now) == 0
    assert list_jobs(conn) == []


def test_enqueue_campaign_jobs_rejects_unknown_or_empty(conn, campaign, clock):
    with pytest.raises(ValueError, match="not found"):
        enqueue_campaign_jobs(conn, "nope")

    create_campaign(conn, campaign_id="empty", launch_name="No tweets",
                    start_date="2025-05-01", end_date="2025-07-01", now=clock.now)
    with pytest.raises(ValueError, match="no tracked tweets"):
        enqueue_campaign_jobs(conn, "empty")


def test_trigger_completes_ended_campaigns_before_enqueueing(conn, campaign, clock):
    create_campaign(conn, campaign_id="old", launch_name="Ended", start_date="2025-01-01",
                    end_date="2025-02-01", now=clock.now)
    create_campaign(conn, campaign_id="bare", launch_name="No tweets", start_date="2025-05-01",
                    end_date="2025-07-01", now=clock.now)

    result = trigger(conn, now=clock.now)

    assert result["completion"] == {"completed": 1, "errors": 0}
    assert get_campaign(conn, "old")["status"] == CAMPAIGN_COMPLETED
    assert result["campaigns_processed"] == 2
    assert result["jobs_enqueued"] == 12
    assert result["errors"] == 1
    assert {r["campaign_id"]: r["status"] for r in result["results"]} == {"X": "success", "bare": "error"}
    assert list_jobs(conn, campaign_id="old") == []


def test_job_queue_stats(conn, campaign, clock):
    enqueue_campaign_jobs(conn, "X", now=clock.now)
    claim_one(conn, "w", now=clock.now)

    stats = get_job_queue_stats(conn)
    assert stats["pending"] == 11
    assert stats["processing"] == 1
    assert sum(stats.values()) == 12
