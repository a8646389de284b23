"""Per-unit worker state: last success, last error and rate-limit blocks.

A unit is one (campaign, job kind, unit key) triple, e.g. the retweet
discovery of one tweet. A blocked unit is parked until `blocked_until`.
"""
import sqlite3
from datetime import datetime
from typing import List, Optional

from .utils import parse_iso, to_iso, utcnow


def get_unit_state(conn, campaign_id: str, kind: str, unit_key: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM unit_state WHERE campaign_id=? AND kind=? AND unit_key=?",
        (campaign_id, kind, unit_key),
    ).fetchone()


def list_unit_states(conn, campaign_id: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM unit_state WHERE campaign_id=? ORDER BY kind, unit_key", (campaign_id,)
    ).fetchall()


def blocked_until(conn, campaign_id: str, kind: str, unit_key: str,
                  now: Optional[datetime] = None) -> Optional[datetime]:
    """When the unit is blocked past `now`, the time the block ends."""
    state = get_unit_state(conn, campaign_id, kind, unit_key)
    if not state or not state["blocked_until"]:
        return None
    until = parse_iso(state["blocked_until"])
    return until if until > (now or utcnow()) else None


def record_success(conn, campaign_id: str, kind: str, unit_key: str, now: Optional[datetime] = None):
    ts = to_iso(now or utcnow())
    with conn:
        conn.execute(
            """INSERT INTO unit_state (campaign_id, kind, unit_key, last_success, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(campaign_id, kind, unit_key) DO UPDATE SET
                   last_success=excluded.last_success, blocked_until=NULL, last_error=NULL,
                   failure_count=0, updated_at=excluded.updated_at""",
            (campaign_id, kind, unit_key, ts, ts),
        )


def record_failure(conn, campaign_id: str, kind: str, unit_key: str, error: str,
                   blocked: Optional[datetime] = None, now: Optional[datetime] = None):
    ts = to_iso(now or utcnow())
    until = to_iso(blocked) if blocked else None
    with conn:
        conn.execute(
            """INSERT INTO unit_state
                   (campaign_id, kind, unit_key, blocked_until, last_error, failure_count, updated_at)
               VALUES (?, ?, ?, ?, ?, 1, ?)
               ON CONFLICT(campaign_id, kind, unit_key) DO UPDATE SET
                   blocked_until=excluded.blocked_until, last_error=excluded.last_error,
                   failure_count=unit_state.failure_count + 1, updated_at=excluded.updated_at""",
            (campaign_id, kind, unit_key, until, error[:500], ts),
        )
