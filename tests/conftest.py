"""Shared fixtures: a file-backed store per test and a controllable clock."""
from datetime import datetime, timedelta, timezone

import pytest

from campaignwatch.campaigns import add_tweet, create_campaign
from campaignwatch.db import connect_db, init_db


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "campaignwatch.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def clock():
    return Clock(datetime(2025, 6, 1, 12, 5, tzinfo=timezone.utc))


@pytest.fixture
def campaign(conn, clock):
    """Active campaign `X` tracking tweets t1, t2 and t3."""
    row = create_campaign(
        conn,
        campaign_id="X",
        launch_name="Launch X",
        start_date="2025-05-01T00:00:00Z",
        end_date="2025-07-01T00:00:00Z",
        importance_threshold=50,
        channels=["slack"],
        client_email="client@example.com",
        now=clock.now,
    )
    for tweet_id in ("t1", "t2", "t3"):
        add_tweet(conn, "X", tweet_id)
    return row
