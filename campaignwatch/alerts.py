"""Alert formation, deduplication and rate-limited sending."""
import logging
import math
from datetime import datetime, timedelta
from functools import cmp_to_key
from typing import Callable, Dict, List, Optional

from .campaigns import campaign_channels, get_campaign, get_engagement
from .models import ALERT_PENDING, ALERT_SENT, ALERT_SKIPPED, CAMPAIGN_ACTIVE, CAMPAIGN_DELETED, Alert
from .repository import config_float, config_int
from .utils import parse_iso, to_iso, truncate_to_hour, utcnow

logger = logging.getLogger(__name__)

CopyGenerator = Callable[[dict, dict], Optional[str]]


# ---------- Formation ----------
def form_alerts(
    conn,
    campaign_id: str,
    generate_copy: Optional[CopyGenerator] = None,
    now: Optional[datetime] = None,
    limit: int = 1000,
) -> int:
    """Queue a pending alert for every scored engagement at or above the
    campaign's importance threshold that has no alert yet.

    The new alerts are spread across the campaign's spacing window, highest
    importance first, so the whole run drains before the next one starts.
    """
    now = now or utcnow()
    campaign = get_campaign(conn, campaign_id)
    if not campaign:
        raise ValueError(f"Campaign {campaign_id} not found")
    if campaign["status"] != CAMPAIGN_ACTIVE:
        logger.info(f"Campaign {campaign_id} is {campaign['status']}; not forming alerts")
        return 0

    candidates = conn.execute(
        """SELECT e.* FROM engagements e
           WHERE e.campaign_id=? AND e.importance_score IS NOT NULL AND e.importance_score >= ?
             AND NOT EXISTS (
                 SELECT 1 FROM alerts a WHERE a.campaign_id=e.campaign_id AND a.engagement_id=e.id
             )
           ORDER BY e.timestamp DESC, e.id DESC
           LIMIT ?""",
        (campaign_id, campaign["importance_threshold"], limit),
    ).fetchall()

    qualifying = [e for e in candidates if not _sent_recently(conn, campaign, e)]
    qualifying.sort(key=lambda e: e["importance_score"], reverse=True)
    spacing = alert_spacing_minutes(conn, campaign)

    for i, engagement in enumerate(qualifying):
        llm_copy = None
        if generate_copy is not None:
            try:
                llm_copy = generate_copy(dict(campaign), dict(engagement))
            except Exception as e:
                logger.error(f"Copy generation failed for engagement {engagement['id']}: {e}")

        send_at = now + timedelta(minutes=spacing * i / len(qualifying))
        with conn:
            conn.execute(
                """INSERT INTO alerts
                   (campaign_id, engagement_id, user_id, action_type, importance_score, llm_copy,
                    status, created_at, scheduled_send_time)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (campaign_id, engagement["id"], engagement["user_id"], engagement["action_type"],
                 engagement["importance_score"], llm_copy, ALERT_PENDING, to_iso(now), to_iso(send_at)),
            )

    if qualifying:
        logger.info(f"Campaign {campaign_id}: {len(qualifying)} alert(s) queued over {spacing} min")
    return len(qualifying)


def _sent_recently(conn, campaign, engagement) -> bool:
    window_start = parse_iso(engagement["timestamp"]) - timedelta(minutes=campaign["frequency_window_minutes"])
    row = conn.execute(
        """SELECT 1 FROM alert_history
           WHERE campaign_id=? AND user_id=? AND action_type=? AND sent_at >= ?
           LIMIT 1""",
        (campaign["id"], engagement["user_id"], engagement["action_type"], to_iso(window_start)),
    ).fetchone()
    return row is not None


# ---------- Deduplication ----------
def compare_alerts(a: Alert, b: Alert) -> int:
    """Order alerts of one engagement by how much they are worth keeping.

    Alerts carrying LLM copy come first, then the most recently created,
    then the highest id. The first alert in this order is kept.
    """
    if a.has_llm_copy != b.has_llm_copy:
        return -1 if a.has_llm_copy else 1
    if a.created_at != b.created_at:
        return -1 if a.created_at > b.created_at else 1
    if a.id != b.id:
        return -1 if a.id > b.id else 1
    return 0


def pick_kept_alert(group: List[Alert]) -> Alert:
    return sorted(group, key=cmp_to_key(compare_alerts))[0]


def dedupe_alerts(conn, campaign_id: Optional[str] = None) -> Dict[str, int]:
    """Keep one alert per (campaign, engagement) and delete the others.
    Safe to run repeatedly."""
    if campaign_id:
        rows = conn.execute("SELECT * FROM alerts WHERE campaign_id=?", (campaign_id,)).fetchall()
    else:
        rows = conn.execute("SELECT * FROM alerts").fetchall()

    groups: Dict[tuple, List[Alert]] = {}
    for row in rows:
        alert = Alert.from_row(row)
        groups.setdefault((alert.campaign_id, str(alert.engagement_id)), []).append(alert)

    delete_ids = []
    for group in groups.values():
        kept = pick_kept_alert(group)
        delete_ids.extend(a.id for a in group if a.id != kept.id)

    deleted = 0
    if delete_ids:
        with conn:
            conn.executemany("DELETE FROM alerts WHERE id=?", [(i,) for i in delete_ids])
        deleted = len(delete_ids)
        logger.info(f"Alert dedupe removed {deleted} duplicate(s)")

    return {
        "alerts_total": len(rows),
        "unique_engagements": len(groups),
        "kept": len(groups),
        "deleted": deleted,
    }


# ---------- Sending ----------
def alert_spacing_minutes(conn, campaign) -> int:
    """Window one formation run's alerts are spread across.

    Defaults to a fraction of the schedule interval so one run's alerts go
    out before the next run starts.
    """
    if campaign["alert_spacing_minutes"]:
        return int(campaign["alert_spacing_minutes"])
    interval = config_int(conn, "schedule_interval_minutes")
    ratio = config_float(conn, "alert_spacing_ratio")
    return max(config_int(conn, "min_alert_spacing_minutes"), math.floor(interval * ratio))


def pending_alerts(conn, limit: int, now: Optional[datetime] = None) -> List[Alert]:
    """Due pending alerts, most important first."""
    rows = conn.execute(
        """SELECT * FROM alerts
           WHERE status=? AND COALESCE(scheduled_send_time, created_at) <= ?
           ORDER BY importance_score DESC, COALESCE(scheduled_send_time, created_at) ASC,
                    created_at ASC, id ASC
           LIMIT ?""",
        (ALERT_PENDING, to_iso(now or utcnow()), limit),
    ).fetchall()
    return [Alert.from_row(r) for r in rows]


def count_not_due(conn, now: Optional[datetime] = None) -> int:
    row = conn.execute(
        """SELECT COUNT(1) AS c FROM alerts
           WHERE status=? AND COALESCE(scheduled_send_time, created_at) > ?""",
        (ALERT_PENDING, to_iso(now or utcnow())),
    ).fetchone()
    return row["c"]


def mark_skipped(conn, alert_id: int, reason: str):
    with conn:
        conn.execute(
            "UPDATE alerts SET status=?, skip_reason=?, sent_at=NULL WHERE id=? AND status=?",
            (ALERT_SKIPPED, reason, alert_id, ALERT_PENDING),
        )


def mark_sent(conn, alert: Alert, engagement, channels: List[str], now: datetime):
    ts = to_iso(now)
    hour = to_iso(truncate_to_hour(parse_iso(engagement["timestamp"])))
    with conn:
        conn.execute(
            "UPDATE alerts SET status=?, sent_at=? WHERE id=? AND status=?",
            (ALERT_SENT, ts, alert.id, ALERT_PENDING),
        )
        conn.executemany(
            """INSERT INTO alert_history (campaign_id, user_id, action_type, timestamp_hour, sent_at, channel)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [(alert.campaign_id, engagement["user_id"], engagement["action_type"], hour, ts, channel)
             for channel in channels],
        )


def build_message(alert: Alert, campaign, engagement, channels: List[str]) -> dict:
    return {
        "alert_id": alert.id,
        "campaign_id": alert.campaign_id,
        "campaign_name": campaign["launch_name"],
        "client_email": campaign["client_email"],
        "channels": channels,
        "engagement_id": alert.engagement_id,
        "user_id": engagement["user_id"],
        "username": engagement["username"],
        "name": engagement["name"],
        "followers": engagement["followers"],
        "action_type": engagement["action_type"],
        "text": engagement["text"],
        "timestamp": engagement["timestamp"],
        "importance_score": alert.importance_score,
        "llm_copy": alert.llm_copy,
    }


def send_alerts(conn, transport, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """Dispatch the most important due alerts.

    Pending alerts whose scheduled send time is still ahead stay pending and
    are reported as skipped. Alerts the campaign cannot accept (missing,
    deleted, no channels) or whose engagement is gone are marked skipped for
    good. Delivery failures are counted as errors and retried on
    the next run.
    """
    now = now or utcnow()
    if limit is None:
        limit = config_int(conn, "alert_batch_limit")
    stats = {"sent": 0, "skipped": count_not_due(conn, now), "errors": 0}

    for alert in pending_alerts(conn, limit, now):
        try:
            campaign = get_campaign(conn, alert.campaign_id)
            if not campaign or campaign["status"] == CAMPAIGN_DELETED:
                mark_skipped(conn, alert.id, "Campaign not found")
                stats["skipped"] += 1
                continue

            channels = campaign_channels(campaign)
            if not channels:
                mark_skipped(conn, alert.id, "No channels configured")
                stats["skipped"] += 1
                continue

            engagement = get_engagement(conn, alert.engagement_id)
            if not engagement:
                mark_skipped(conn, alert.id, "Engagement not found")
                stats["skipped"] += 1
                continue

            result = transport.deliver(build_message(alert, campaign, engagement, channels))
            if not result.get("delivered"):
                logger.warning(f"Alert {alert.id} was not delivered; keeping it pending")
                stats["errors"] += 1
                continue

            mark_sent(conn, alert, engagement, channels, now)
            stats["sent"] += 1
        except Exception as e:
            logger.error(f"Error processing alert {alert.id}: {e}")
            stats["errors"] += 1

    return stats
