import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from .config import ALLOWED_CONFIG_KEYS, DEFAULT_CONFIG, FLOAT_CONFIG_RANGES, INT_CONFIG_MINIMUMS
from .models import (
    PENDING, PROCESSING, COMPLETED, FAILED, RETRYING,
    JOB_STATES, OUTSTANDING_STATES, Job,
)
from .utils import to_iso, iso_minutes_from, backoff_minutes, utcnow

logger = logging.getLogger(__name__)

CLAIMABLE = f"(status='{PENDING}' OR (status='{RETRYING}' AND retry_after <= ?))"


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cfg = dict(DEFAULT_CONFIG)
    cur = conn.execute("SELECT key, value FROM config")
    cfg.update({r["key"]: r["value"] for r in cur.fetchall()})
    return cfg


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    value = str(value).strip()
    if key in INT_CONFIG_MINIMUMS:
        minimum = INT_CONFIG_MINIMUMS[key]
        try:
            number = int(value)
        except ValueError:
            raise ValueError(f"{key} must be a whole number, got {value!r}")
        if number < minimum:
            raise ValueError(f"{key} must be >= {minimum}")
    else:
        low, high = FLOAT_CONFIG_RANGES[key]
        try:
            number = float(value)
        except ValueError:
            raise ValueError(f"{key} must be numeric, got {value!r}")
        if not number > low or (high is not None and number > high):
            bound = f"in ({low}, {high}]" if high is not None else f"> {low}"
            raise ValueError(f"{key} must be {bound}")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


def config_int(conn, key: str) -> int:
    return int(float(get_config(conn)[key]))


def config_float(conn, key: str) -> float:
    return float(get_config(conn)[key])


# ---------- Jobs: insert / claim / complete / retry ----------
def insert_jobs(conn, jobs: Iterable[dict], now: Optional[datetime] = None) -> List[int]:
    """Insert jobs in a single transaction. Each dict needs campaign_id, kind,
    payload (JSON text), unit_key and max_retries. Returns the new ids."""
    ts = to_iso(now or utcnow())
    rows = [
        (j["campaign_id"], j["kind"], j["payload"], j.get("unit_key", ""),
         PENDING, 0, int(j["max_retries"]), ts, ts)
        for j in jobs
    ]
    ids = []
    try:
        with conn:
            for row in rows:
                cur = conn.execute(
                    """INSERT INTO jobs
                       (campaign_id, kind, payload, unit_key, status, retry_count, max_retries,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    row,
                )
                ids.append(cur.lastrowid)
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting jobs: {e}")
    return ids


def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def find_due_jobs(conn, now: Optional[datetime] = None, limit: int = 10) -> List[Job]:
    ts = to_iso(now or utcnow())
    rows = conn.execute(
        f"""SELECT * FROM jobs WHERE {CLAIMABLE}
            ORDER BY COALESCE(retry_after, created_at) ASC, created_at ASC, id ASC
            LIMIT ?""",
        (ts, limit),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def claim_job(conn, job_id: int, worker_name: str, now: Optional[datetime] = None) -> Optional[Job]:
    """Compare-and-set a single job into `processing`. Returns None if another
    worker got it first or it is not due yet."""
    ts = to_iso(now or utcnow())
    with conn:
        updated = conn.execute(
            f"""UPDATE jobs SET status=?, claimed_by=?, claimed_at=?, updated_at=?
                WHERE id=? AND {CLAIMABLE}""",
            (PROCESSING, worker_name, ts, ts, job_id, ts),
        )
    if updated.rowcount != 1:
        return None
    return get_job(conn, job_id)


def claim_one(conn, worker_name: str, now: Optional[datetime] = None, attempts: int = 5) -> Optional[Job]:
    """Claim the oldest due job. Losing a race moves on to the next candidate."""
    for _ in range(attempts):
        candidates = find_due_jobs(conn, now=now, limit=attempts)
        if not candidates:
            return None
        for candidate in candidates:
            job = claim_job(conn, candidate.id, worker_name, now=now)
            if job:
                return job
    return None


def complete(conn, job: Job, now: Optional[datetime] = None) -> bool:
    ts = to_iso(now or utcnow())
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, updated_at=?, completed_at=?, claimed_by=NULL
               WHERE id=? AND status=? AND claimed_by IS ?""",
            (COMPLETED, ts, ts, job.id, PROCESSING, job.claimed_by),
        )
    return res.rowcount == 1


def schedule_retry(conn, job: Job, error: str, base: int = 2, now: Optional[datetime] = None) -> Optional[str]:
    """Apply the failure transition to a job we own.

    Returns the new status (`retrying` or `failed`), or None when the job is
    no longer ours (e.g. it was reclaimed as stale in the meantime).
    """
    now = now or utcnow()
    ts = to_iso(now)
    if job.retry_count < job.max_retries:
        retry_count = job.retry_count + 1
        retry_after = iso_minutes_from(now, backoff_minutes(retry_count, base))
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, retry_count=?, retry_after=?, updated_at=?, last_error=?,
                       claimed_by=NULL, claimed_at=NULL
                   WHERE id=? AND status=? AND claimed_by IS ?""",
                (RETRYING, retry_count, retry_after, ts, error[:500], job.id, PROCESSING, job.claimed_by),
            )
        new_status = RETRYING
        logger.info(f"Job {job.id} will retry ({retry_count}/{job.max_retries}) after {retry_after}")
    else:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, retry_after=NULL, updated_at=?, last_error=?, claimed_by=NULL
                   WHERE id=? AND status=? AND claimed_by IS ?""",
                (FAILED, ts, error[:500], job.id, PROCESSING, job.claimed_by),
            )
        new_status = FAILED
        logger.warning(f"Job {job.id} permanently failed after {job.retry_count} retries: {error}")
    return new_status if res.rowcount == 1 else None


def defer_job(conn, job: Job, until: datetime, reason: str, now: Optional[datetime] = None) -> Optional[str]:
    """Park a job we own until `until` without using up a retry."""
    ts = to_iso(now or utcnow())
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET status=?, retry_after=?, updated_at=?, last_error=?, claimed_by=NULL, claimed_at=NULL
               WHERE id=? AND status=? AND claimed_by IS ?""",
            (RETRYING, to_iso(until), ts, reason[:500], job.id, PROCESSING, job.claimed_by),
        )
    if res.rowcount != 1:
        return None
    logger.info(f"Job {job.id} parked until {to_iso(until)}: {reason}")
    return RETRYING


def requeue_stale(conn, older_than_minutes: float, now: Optional[datetime] = None) -> Dict[str, int]:
    """Release `processing` jobs whose owner stopped reporting.

    A stale claim counts as a failed attempt: the job becomes immediately
    claimable again, or `failed` once its retries are used up.
    """
    now = now or utcnow()
    ts = to_iso(now)
    cutoff = to_iso(now - timedelta(minutes=older_than_minutes))
    out = {"requeued": 0, "failed": 0}
    rows = conn.execute(
        "SELECT * FROM jobs WHERE status=? AND updated_at < ?", (PROCESSING, cutoff)
    ).fetchall()
    for row in rows:
        error = f"stale claim by {row['claimed_by']} since {row['updated_at']}"
        exhausted = row["retry_count"] >= row["max_retries"]
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, retry_count=?, retry_after=?, updated_at=?, last_error=?,
                       claimed_by=NULL, claimed_at=NULL
                   WHERE id=? AND status=? AND updated_at=?""",
                (
                    FAILED if exhausted else RETRYING,
                    row["retry_count"] if exhausted else row["retry_count"] + 1,
                    None if exhausted else ts,
                    ts, error, row["id"], PROCESSING, row["updated_at"],
                ),
            )
        if res.rowcount == 1:
            out["failed" if exhausted else "requeued"] += 1
            logger.warning(f"Job {row['id']}: {error}")
    return out


# ---------- Queries ----------
def list_jobs(conn, status: Optional[str] = None, campaign_id: Optional[str] = None) -> List[Job]:
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if campaign_id:
        clauses.append("campaign_id=?")
        params.append(campaign_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(f"SELECT * FROM jobs {where} ORDER BY created_at ASC, id ASC", params).fetchall()
    return [Job.from_row(r) for r in rows]


def outstanding_units(conn, campaign_id: str, kind: str) -> Set[str]:
    marks = ",".join("?" * len(OUTSTANDING_STATES))
    rows = conn.execute(
        f"SELECT unit_key FROM jobs WHERE campaign_id=? AND kind=? AND status IN ({marks})",
        (campaign_id, kind, *OUTSTANDING_STATES),
    ).fetchall()
    return {r["unit_key"] for r in rows}


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in JOB_STATES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status").fetchall():
        out[r["status"]] = r["c"]
    return out


def cleanup_old_jobs(conn, older_than_seconds: int, now: Optional[datetime] = None) -> int:
    cutoff = to_iso((now or utcnow()) - timedelta(seconds=older_than_seconds))
    with conn:
        res = conn.execute(
            "DELETE FROM jobs WHERE status=? AND completed_at < ?", (COMPLETED, cutoff)
        )
    return res.rowcount
