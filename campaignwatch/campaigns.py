"""Campaign, tracked-tweet and engagement records, plus the completion checker."""
import json
import logging
import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import (
    ACTION_TYPES, CAMPAIGN_ACTIVE, CAMPAIGN_COMPLETED, CAMPAIGN_DELETED, CAMPAIGN_STATES,
)
from .utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


# ---------- Campaigns ----------
def create_campaign(
    conn,
    *,
    campaign_id: str,
    launch_name: str,
    start_date: str,
    end_date: str,
    client_email: Optional[str] = None,
    importance_threshold: float = 0.0,
    channels: Iterable[str] = (),
    frequency_window_minutes: int = 30,
    alert_spacing_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> sqlite3.Row:
    if not campaign_id or not campaign_id.strip():
        raise ValueError("Campaign id cannot be empty.")
    if not launch_name or not launch_name.strip():
        raise ValueError("Launch name cannot be empty.")
    start, end = parse_iso(start_date), parse_iso(end_date)
    if end <= start:
        raise ValueError("end_date must be after start_date")
    if alert_spacing_minutes is not None and alert_spacing_minutes <= 0:
        raise ValueError("alert_spacing_minutes must be > 0")

    ts = to_iso(now or utcnow())
    try:
        with conn:
            conn.execute(
                """INSERT INTO campaigns
                   (id, launch_name, client_email, status, start_date, end_date,
                    importance_threshold, channels, frequency_window_minutes,
                    alert_spacing_minutes, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (campaign_id, launch_name, client_email, CAMPAIGN_ACTIVE, to_iso(start), to_iso(end),
                 float(importance_threshold), json.dumps(list(channels)), int(frequency_window_minutes),
                 alert_spacing_minutes, ts, ts),
            )
    except sqlite3.IntegrityError:
        raise ValueError(f"Campaign '{campaign_id}' already exists.")
    return get_campaign(conn, campaign_id)


def get_campaign(conn, campaign_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()


def campaign_channels(campaign) -> List[str]:
    return json.loads(campaign["channels"] or "[]")


def list_active_campaigns(conn) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM campaigns WHERE status=? ORDER BY created_at ASC, id ASC", (CAMPAIGN_ACTIVE,)
    ).fetchall()


def set_campaign_status(conn, campaign_id: str, status: str, now: Optional[datetime] = None) -> bool:
    """Move a campaign to `status`. Completed and deleted campaigns are never
    moved back to active."""
    if status not in CAMPAIGN_STATES:
        raise ValueError(f"Unknown campaign status {status!r}")
    if status == CAMPAIGN_ACTIVE:
        allowed_from = (CAMPAIGN_ACTIVE,)
    elif status == CAMPAIGN_COMPLETED:
        allowed_from = (CAMPAIGN_ACTIVE,)
    else:
        allowed_from = (CAMPAIGN_ACTIVE, CAMPAIGN_COMPLETED)
    marks = ",".join("?" * len(allowed_from))
    with conn:
        res = conn.execute(
            f"UPDATE campaigns SET status=?, updated_at=? WHERE id=? AND status IN ({marks})",
            (status, to_iso(now or utcnow()), campaign_id, *allowed_from),
        )
    return res.rowcount == 1


def check_and_complete_campaigns(conn, now: Optional[datetime] = None) -> Dict[str, int]:
    """Close out active campaigns whose monitor window has ended."""
    now = now or utcnow()
    stats = {"completed": 0, "errors": 0}

    for campaign in list_active_campaigns(conn):
        try:
            if parse_iso(campaign["end_date"]) < now:
                if set_campaign_status(conn, campaign["id"], CAMPAIGN_COMPLETED, now=now):
                    stats["completed"] += 1
                    logger.info(f"Campaign {campaign['launch_name']} ({campaign['id']}) marked as completed")
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"Error completing campaign {campaign['id']}: {e}")

    return stats


# ---------- Tracked tweets ----------
def add_tweet(conn, campaign_id: str, tweet_id: str, category: str = "main_twt"):
    if not get_campaign(conn, campaign_id):
        raise ValueError(f"Campaign '{campaign_id}' not found.")
    if not tweet_id or not tweet_id.strip():
        raise ValueError("Tweet id cannot be empty.")
    with conn:
        conn.execute(
            "INSERT OR IGNORE INTO campaign_tweets(campaign_id, tweet_id, category) VALUES(?,?,?)",
            (campaign_id, tweet_id, category),
        )


def list_tweets(conn, campaign_id: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM campaign_tweets WHERE campaign_id=? ORDER BY tweet_id", (campaign_id,)
    ).fetchall()


def get_tweet(conn, campaign_id: str, tweet_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM campaign_tweets WHERE campaign_id=? AND tweet_id=?", (campaign_id, tweet_id)
    ).fetchone()


def update_tweet_metrics(conn, campaign_id: str, tweet_id: str, metrics: Dict[str, int],
                         now: Optional[datetime] = None):
    with conn:
        conn.execute(
            """UPDATE campaign_tweets
               SET like_count=?, retweet_count=?, quote_count=?, reply_count=?, view_count=?,
                   bookmark_count=?, metrics_updated_at=?
               WHERE campaign_id=? AND tweet_id=?""",
            (int(metrics.get("like_count", 0)), int(metrics.get("retweet_count", 0)),
             int(metrics.get("quote_count", 0)), int(metrics.get("reply_count", 0)),
             int(metrics.get("view_count", 0)), int(metrics.get("bookmark_count", 0)),
             to_iso(now or utcnow()), campaign_id, tweet_id),
        )


# ---------- Engagements ----------
def record_engagement(
    conn,
    *,
    campaign_id: str,
    tweet_id: str,
    user_id: str,
    action_type: str,
    username: Optional[str] = None,
    name: Optional[str] = None,
    followers: int = 0,
    text: Optional[str] = None,
    importance_score: Optional[float] = None,
    timestamp: Optional[str] = None,
) -> int:
    """Upsert an engagement keyed by (campaign, tweet, user, action); returns its id.
    An existing score is kept when the new record carries none."""
    if action_type not in ACTION_TYPES:
        raise ValueError(f"action_type must be one of: {', '.join(ACTION_TYPES)}")
    ts = to_iso(parse_iso(timestamp)) if timestamp else to_iso(utcnow())
    with conn:
        conn.execute(
            """INSERT INTO engagements
               (campaign_id, tweet_id, user_id, username, name, followers, action_type, text,
                importance_score, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(campaign_id, tweet_id, user_id, action_type) DO UPDATE SET
                   username=excluded.username, name=excluded.name, followers=excluded.followers,
                   text=excluded.text,
                   importance_score=COALESCE(excluded.importance_score, engagements.importance_score)""",
            (campaign_id, tweet_id, user_id, username, name, int(followers), action_type, text,
             importance_score, ts),
        )
    row = conn.execute(
        "SELECT id FROM engagements WHERE campaign_id=? AND tweet_id=? AND user_id=? AND action_type=?",
        (campaign_id, tweet_id, user_id, action_type),
    ).fetchone()
    return row["id"]


def get_engagement(conn, engagement_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM engagements WHERE id=?", (engagement_id,)).fetchone()


def unscored_engagements(conn, campaign_id: str, tweet_id: str, action_type: str) -> List[sqlite3.Row]:
    return conn.execute(
        """SELECT * FROM engagements
           WHERE campaign_id=? AND tweet_id=? AND action_type=? AND importance_score IS NULL
           ORDER BY id""",
        (campaign_id, tweet_id, action_type),
    ).fetchall()


def set_engagement_score(conn, engagement_id: int, score: float):
    with conn:
        conn.execute("UPDATE engagements SET importance_score=? WHERE id=?", (float(score), engagement_id))
