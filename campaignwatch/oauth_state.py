"""Store-backed OAuth/PKCE state: random single-use tokens with an expiry."""
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .utils import to_iso, utcnow


def issue_state(conn, payload: Dict[str, Any], ttl_seconds: int = 600, now: Optional[datetime] = None) -> str:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be > 0")
    now = now or utcnow()
    token = secrets.token_urlsafe(32)
    with conn:
        conn.execute(
            "INSERT INTO oauth_states(token, payload, expires_at) VALUES(?,?,?)",
            (token, json.dumps(payload), to_iso(now + timedelta(seconds=ttl_seconds))),
        )
    return token


def consume_state(conn, token: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Return the payload stored under `token` and delete it. Unknown, already
    used or expired tokens give None."""
    if not token:
        return None
    with conn:
        row = conn.execute("SELECT * FROM oauth_states WHERE token=?", (token,)).fetchone()
        if not row:
            return None
        res = conn.execute("DELETE FROM oauth_states WHERE token=?", (token,))
    if res.rowcount != 1 or row["expires_at"] <= to_iso(now or utcnow()):
        return None
    return json.loads(row["payload"])


def purge_expired_states(conn, now: Optional[datetime] = None) -> int:
    with conn:
        res = conn.execute("DELETE FROM oauth_states WHERE expires_at <= ?", (to_iso(now or utcnow()),))
    return res.rowcount
