import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from .utils import to_iso, truncate_to_hour, utcnow

logger = logging.getLogger(__name__)


def create_snapshot(conn, campaign_id: str, now: Optional[datetime] = None) -> bool:
    """Roll up tracked tweet counters into an hourly snapshot.

    At most one snapshot exists per campaign and clock hour; returns False
    when the hour is already covered.
    """
    now = now or utcnow()
    hour = to_iso(truncate_to_hour(now))
    totals = conn.execute(
        """SELECT COUNT(1) AS tweet_count,
                  COALESCE(SUM(like_count), 0) AS total_likes,
                  COALESCE(SUM(retweet_count), 0) AS total_retweets,
                  COALESCE(SUM(quote_count), 0) AS total_quotes,
                  COALESCE(SUM(reply_count), 0) AS total_replies,
                  COALESCE(SUM(view_count), 0) AS total_views
           FROM campaign_tweets WHERE campaign_id=?""",
        (campaign_id,),
    ).fetchone()
    with conn:
        res = conn.execute(
            """INSERT OR IGNORE INTO metric_snapshots
               (campaign_id, snapshot_hour, tweet_count, total_likes, total_retweets,
                total_quotes, total_replies, total_views, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (campaign_id, hour, totals["tweet_count"], totals["total_likes"], totals["total_retweets"],
             totals["total_quotes"], totals["total_replies"], totals["total_views"], to_iso(now)),
        )
    created = res.rowcount == 1
    if created:
        logger.info(f"Created metric snapshot for campaign {campaign_id} at {hour}")
    return created


def list_snapshots(conn, campaign_id: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM metric_snapshots WHERE campaign_id=? ORDER BY snapshot_hour ASC",
        (campaign_id,),
    ).fetchall()
