import threading
from datetime import timedelta

from campaignwatch.campaigns import get_engagement, get_tweet
from campaignwatch.handlers import RateLimitError, Services
from campaignwatch.models import (
    ALERT_FORMATION, COMPLETED, ENGAGER_DISCOVERY, FAILED, METRICS_REFRESH, PENDING, RETRYING,
)
from campaignwatch.queue import enqueue, enqueue_campaign_jobs
from campaignwatch.repository import claim_one, get_job, list_jobs
from campaignwatch.snapshots import list_snapshots
from campaignwatch.unit_state import get_unit_state, record_failure
from campaignwatch.utils import to_iso
from campaignwatch.worker import Orchestrator, process_jobs


class FlakyFetcher:
    """Raises for the first `failures` calls, then returns fixed counters."""

    def __init__(self, failures, metrics=None):
        self.failures = failures
        self.metrics = metrics or {"like_count": 5, "retweet_count": 2}
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, tweet_id):
        with self._lock:
            self.calls += 1
            if self.calls <= self.failures:
                raise RuntimeError(f"upstream timeout #{self.calls}")
        return self.metrics


def _metrics_job(conn, clock, tweet_id="t1"):
    return enqueue(conn, "X", METRICS_REFRESH, {"tweet_id": tweet_id}, now=clock.now)


def test_batch_completes_all_metrics_jobs_and_snapshots_once(db_path, conn, campaign, clock):
    for tweet_id in ("t1", "t2", "t3"):
        _metrics_job(conn, clock, tweet_id)
    services = Services(fetch_metrics=lambda tweet_id: {"like_count": 10, "view_count": 100})

    stats = process_jobs(db_path, max_jobs=3, concurrency=2, services=services, clock=clock)

    assert stats == {"processed": 3, "succeeded": 3, "failed": 0, "retried": 0}
    assert {j.status for j in list_jobs(conn)} == {COMPLETED}
    assert get_tweet(conn, "X", "t2")["like_count"] == 10

    snapshots = list_snapshots(conn, "X")
    assert len(snapshots) == 1
    assert snapshots[0]["total_likes"] == 30
    assert snapshots[0]["total_views"] == 300


def test_max_jobs_bounds_the_batch(db_path, conn, campaign, clock):
    enqueue_campaign_jobs(conn, "X", now=clock.now)

    stats = process_jobs(db_path, max_jobs=5, concurrency=3, clock=clock)

    assert stats["processed"] == 5
    assert len(list_jobs(conn, status=COMPLETED)) == 5
    assert len([j for j in list_jobs(conn, status=PENDING) if j.kind != ALERT_FORMATION]) == 7


def test_job_recovers_after_retries(db_path, conn, campaign, clock):
    job = _metrics_job(conn, clock)
    services = Services(fetch_metrics=FlakyFetcher(failures=2))

    assert process_jobs(db_path, services=services, clock=clock)["retried"] == 1
    assert get_job(conn, job.id).status == RETRYING

    # not yet due
    assert process_jobs(db_path, services=services, clock=clock)["processed"] == 0

    clock.advance(minutes=2)
    assert process_jobs(db_path, services=services, clock=clock)["retried"] == 1
    clock.advance(minutes=4)
    assert process_jobs(db_path, services=services, clock=clock)["succeeded"] == 1

    stored = get_job(conn, job.id)
    assert stored.status == COMPLETED
    assert stored.retry_count == 2
    assert get_tweet(conn, "X", "t1")["like_count"] == 5


def test_job_fails_permanently_after_max_retries(db_path, conn, campaign, clock):
    job = _metrics_job(conn, clock)
    services = Services(fetch_metrics=FlakyFetcher(failures=100))

    for delay in (2, 4, 8):
        process_jobs(db_path, services=services, clock=clock)
        clock.advance(minutes=delay)
    stats = process_jobs(db_path, services=services, clock=clock)

    assert stats == {"processed": 1, "succeeded": 0, "failed": 1, "retried": 0}
    stored = get_job(conn, job.id)
    assert stored.status == FAILED
    assert stored.retry_count == 3
    assert "upstream timeout #4" in stored.last_error
    assert list_snapshots(conn, "X") == []


def test_one_failure_does_not_abort_the_batch(db_path, conn, campaign, clock):
    def fetch(tweet_id):
        if tweet_id == "t2":
            raise RuntimeError("rate limited")
        return {"like_count": 1}

    for tweet_id in ("t1", "t2", "t3"):
        _metrics_job(conn, clock, tweet_id)

    stats = process_jobs(db_path, concurrency=3, services=Services(fetch_metrics=fetch), clock=clock)

    assert stats == {"processed": 3, "succeeded": 2, "failed": 0, "retried": 1}
    # a metrics job of the campaign is still outstanding
    assert list_snapshots(conn, "X") == []


def test_untracked_tweet_is_a_job_failure(db_path, conn, campaign, clock):
    job = enqueue(conn, "X", METRICS_REFRESH, {"tweet_id": "unknown"}, now=clock.now)

    assert process_jobs(db_path, clock=clock)["retried"] == 1
    assert "not tracked" in get_job(conn, job.id).last_error


def test_zero_deadline_claims_nothing(db_path, conn, campaign, clock):
    _metrics_job(conn, clock)

    stats = process_jobs(db_path, soft_deadline_seconds=0, clock=clock)

    assert stats["processed"] == 0
    assert list_jobs(conn)[0].status == PENDING


def test_discovery_scores_engagers_and_leads_to_alerts(db_path, conn, campaign, clock):
    engagers = {
        ("t1", "retweet"): [
            {"user_id": "u-big", "username": "big", "followers": 90000, "timestamp": "2025-06-01T11:50:00Z"},
            {"user_id": "u-small", "username": "small", "followers": 12, "timestamp": "2025-06-01T11:55:00Z"},
        ],
    }
    services = Services(
        fetch_engagements=lambda tweet_id, action: engagers.get((tweet_id, action), []),
        score=lambda e: 80.0 if e["followers"] > 1000 else 10.0,
        generate_copy=lambda campaign, e: f"@{e['username']} boosted {campaign['launch_name']}",
    )
    job = enqueue(conn, "X", ENGAGER_DISCOVERY, {"tweet_id": "t1", "action_type": "retweet"}, now=clock.now)

    assert process_jobs(db_path, services=services, clock=clock)["succeeded"] == 1
    assert get_job(conn, job.id).status == COMPLETED

    follow_ups = list_jobs(conn, campaign_id="X")
    formation = [j for j in follow_ups if j.kind == ALERT_FORMATION]
    assert len(formation) == 1
    assert formation[0].status == PENDING

    assert process_jobs(db_path, services=services, clock=clock)["succeeded"] == 1

    alerts = conn.execute("SELECT * FROM alerts WHERE campaign_id='X'").fetchall()
    assert len(alerts) == 1
    assert alerts[0]["user_id"] == "u-big"
    assert alerts[0]["llm_copy"] == "@big boosted Launch X"
    assert get_engagement(conn, alerts[0]["engagement_id"])["importance_score"] == 80.0


def test_alert_formation_not_enqueued_twice(db_path, conn, campaign, clock):
    enqueue(conn, "X", ALERT_FORMATION, {}, now=clock.now)
    for action in ("retweet", "reply"):
        enqueue(conn, "X", ENGAGER_DISCOVERY, {"tweet_id": "t1", "action_type": action}, now=clock.now)

    # the formation job is claimed first and runs; discovery completes alongside it
    process_jobs(db_path, max_jobs=3, concurrency=1, clock=clock)
    assert len([j for j in list_jobs(conn) if j.kind == ALERT_FORMATION]) == 2

    enqueue(conn, "X", ENGAGER_DISCOVERY, {"tweet_id": "t2", "action_type": "quote"}, now=clock.now)
    # the pending formation job is taken by another worker and still running
    assert claim_one(conn, "other", now=clock.now).kind == ALERT_FORMATION
    assert process_jobs(db_path, max_jobs=1, clock=clock)["succeeded"] == 1
    assert len([j for j in list_jobs(conn) if j.kind == ALERT_FORMATION]) == 2


def test_stale_claims_are_recovered_at_batch_start(db_path, conn, campaign, clock):
    job = _metrics_job(conn, clock)
    claim_one(conn, "crashed-worker", now=clock.now)
    clock.advance(minutes=20)

    stats = Orchestrator(db_path, clock=clock).process_jobs()

    assert stats["succeeded"] == 1
    stored = get_job(conn, job.id)
    assert stored.status == COMPLETED
    assert stored.retry_count == 1


def test_rate_limit_parks_the_unit_without_using_a_retry(db_path, conn, campaign, clock):
    job = _metrics_job(conn, clock)

    def fetch(tweet_id):
        raise RateLimitError("429 Too Many Requests", retry_after=600)

    stats = process_jobs(db_path, services=Services(fetch_metrics=fetch), clock=clock)

    assert stats == {"processed": 1, "succeeded": 0, "failed": 0, "retried": 1}
    until = to_iso(clock.now + timedelta(minutes=10))
    stored = get_job(conn, job.id)
    assert stored.status == RETRYING
    assert stored.retry_count == 0
    assert stored.retry_after == until
    state = get_unit_state(conn, "X", METRICS_REFRESH, "t1")
    assert state["blocked_until"] == until
    assert state["failure_count"] == 1
    assert "429" in state["last_error"]
    assert list_snapshots(conn, "X") == []


def test_blocked_unit_is_parked_until_the_block_ends(db_path, conn, campaign, clock):
    record_failure(conn, "X", METRICS_REFRESH, "t1", "RateLimitError: 429",
                   blocked=clock.now + timedelta(minutes=10), now=clock.now)
    job = _metrics_job(conn, clock)
    fetcher = FlakyFetcher(failures=0)
    services = Services(fetch_metrics=fetcher)

    assert process_jobs(db_path, services=services, clock=clock)["retried"] == 1
    assert fetcher.calls == 0
    assert get_job(conn, job.id).retry_count == 0

    clock.advance(minutes=9)
    assert process_jobs(db_path, services=services, clock=clock)["processed"] == 0

    clock.advance(minutes=1)
    assert process_jobs(db_path, services=services, clock=clock)["succeeded"] == 1
    assert fetcher.calls == 1
    state = get_unit_state(conn, "X", METRICS_REFRESH, "t1")
    assert state["last_success"] == to_iso(clock.now)
    assert state["blocked_until"] is None
    assert state["failure_count"] == 0


def test_ordinary_failure_is_recorded_on_the_unit_without_a_block(db_path, conn, campaign, clock):
    _metrics_job(conn, clock)

    process_jobs(db_path, services=Services(fetch_metrics=FlakyFetcher(failures=1)), clock=clock)

    state = get_unit_state(conn, "X", METRICS_REFRESH, "t1")
    assert state["blocked_until"] is None
    assert state["last_error"] == "RuntimeError: upstream timeout #1"
    assert state["last_success"] is None
