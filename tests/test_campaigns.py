from datetime import datetime, timedelta, timezone

import pytest

from campaignwatch.campaigns import (
    add_tweet, check_and_complete_campaigns, create_campaign, get_campaign, get_engagement,
    record_engagement, set_campaign_status,
)
from campaignwatch.models import CAMPAIGN_ACTIVE, CAMPAIGN_COMPLETED, CAMPAIGN_DELETED
from campaignwatch.snapshots import create_snapshot, list_snapshots


def test_completion_only_after_end_date(conn, campaign, clock):
    assert check_and_complete_campaigns(conn, now=clock.now) == {"completed": 0, "errors": 0}
    assert get_campaign(conn, "X")["status"] == CAMPAIGN_ACTIVE

    clock.advance(days=31)
    assert check_and_complete_campaigns(conn, now=clock.now) == {"completed": 1, "errors": 0}
    assert get_campaign(conn, "X")["status"] == CAMPAIGN_COMPLETED

    # nothing left to complete
    assert check_and_complete_campaigns(conn, now=clock.now) == {"completed": 0, "errors": 0}


def test_completed_campaign_is_never_reactivated(conn, campaign, clock):
    assert set_campaign_status(conn, "X", CAMPAIGN_COMPLETED, now=clock.now)
    assert not set_campaign_status(conn, "X", CAMPAIGN_ACTIVE, now=clock.now)
    assert get_campaign(conn, "X")["status"] == CAMPAIGN_COMPLETED

    assert set_campaign_status(conn, "X", CAMPAIGN_DELETED, now=clock.now)
    assert not set_campaign_status(conn, "X", CAMPAIGN_COMPLETED, now=clock.now)

    with pytest.raises(ValueError):
        set_campaign_status(conn, "X", "paused")


def test_create_campaign_validation(conn, campaign, clock):
    with pytest.raises(ValueError, match="already exists"):
        create_campaign(conn, campaign_id="X", launch_name="Again", start_date="2025-05-01",
                        end_date="2025-06-01")
    with pytest.raises(ValueError, match="after start_date"):
        create_campaign(conn, campaign_id="Y", launch_name="Backwards", start_date="2025-06-01",
                        end_date="2025-05-01")
    with pytest.raises(ValueError, match="Invalid timestamp"):
        create_campaign(conn, campaign_id="Y", launch_name="Bad", start_date="soon", end_date="later")
    with pytest.raises(ValueError, match="not found"):
        add_tweet(conn, "nope", "t9")


def test_record_engagement_upserts_and_keeps_score(conn, campaign):
    first = record_engagement(conn, campaign_id="X", tweet_id="t1", user_id="u1", action_type="quote",
                              followers=10, importance_score=77, timestamp="2025-06-01T11:00:00Z")
    again = record_engagement(conn, campaign_id="X", tweet_id="t1", user_id="u1", action_type="quote",
                              followers=25, timestamp="2025-06-01T11:00:00Z")

    assert first == again
    row = get_engagement(conn, first)
    assert row["followers"] == 25
    assert row["importance_score"] == 77

    with pytest.raises(ValueError):
        record_engagement(conn, campaign_id="X", tweet_id="t1", user_id="u1", action_type="like")


def test_one_snapshot_per_campaign_hour(conn, campaign, clock):
    conn.execute("UPDATE campaign_tweets SET like_count=4, view_count=40 WHERE campaign_id='X'")
    conn.commit()

    assert create_snapshot(conn, "X", now=clock.now) is True
    assert create_snapshot(conn, "X", now=clock.advance(minutes=50)) is False
    assert create_snapshot(conn, "X", now=clock.advance(minutes=10)) is True

    snapshots = list_snapshots(conn, "X")
    assert [s["snapshot_hour"] for s in snapshots] == [
        "2025-06-01T12:00:00.000000Z",
        "2025-06-01T13:00:00.000000Z",
    ]
    assert snapshots[0]["tweet_count"] == 3
    assert snapshots[0]["total_likes"] == 12
    assert snapshots[0]["total_views"] == 120


def test_snapshot_hour_is_the_utc_hour_for_offset_clocks(conn, campaign):
    india = timezone(timedelta(hours=5, minutes=30))

    assert create_snapshot(conn, "X", now=datetime(2025, 6, 1, 17, 35, tzinfo=india)) is True
    # 12:59 UTC, same hour
    assert create_snapshot(conn, "X", now=datetime(2025, 6, 1, 18, 29, tzinfo=india)) is False

    assert [s["snapshot_hour"] for s in list_snapshots(conn, "X")] == ["2025-06-01T12:00:00.000000Z"]
