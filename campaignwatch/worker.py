import logging
import signal
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .db import connect_db
from .handlers import RateLimitError, Services, dispatch
from .models import ALERT_FORMATION, COMPLETED, ENGAGER_DISCOVERY, FAILED, METRICS_REFRESH, RETRYING, Job
from .queue import enqueue
from .repository import (
    claim_one, complete, config_float, config_int, defer_job, outstanding_units, requeue_stale,
    schedule_retry,
)
from .snapshots import create_snapshot
from .unit_state import blocked_until, record_failure, record_success
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}. Stopping workers")
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # only the main thread may install handlers
            logger.debug(f"Could not install handler for signal {sig}")


class Orchestrator:
    """Drains due jobs in bounded batches.

    Claims happen one at a time on the calling thread; handlers run on a pool
    of `concurrency` threads, each with its own store connection. Every status
    change goes through the store's compare-and-set updates, so nothing here
    has to survive between invocations.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        services: Optional[Services] = None,
        concurrency: Optional[int] = None,
        soft_deadline_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path
        self.services = services or Services()
        self.concurrency = concurrency
        self.soft_deadline_seconds = soft_deadline_seconds
        self.clock = clock

    def _run_job(self, job: Job, backoff_base: int) -> Optional[str]:
        """Run one claimed job and record its outcome. Never raises."""
        conn = connect_db(self.db_path)
        unit = (job.campaign_id, job.kind, job.unit_key) if job.unit_key else None
        try:
            if unit:
                until = blocked_until(conn, *unit, now=self.clock())
                if until:
                    return defer_job(conn, job, until, f"unit blocked until {to_iso(until)}", now=self.clock())
            try:
                dispatch(conn, job, self.services, self.clock())
            except RateLimitError as e:
                until = self.clock() + timedelta(seconds=e.retry_after)
                logger.warning(f"Job {job.id} ({job.kind}, campaign {job.campaign_id}) rate limited: {e}")
                if unit:
                    record_failure(conn, *unit, f"RateLimitError: {e}", blocked=until, now=self.clock())
                return defer_job(conn, job, until, f"RateLimitError: {e}", now=self.clock())
            except Exception as e:
                logger.warning(f"Job {job.id} ({job.kind}, campaign {job.campaign_id}) failed: {e}")
                if unit:
                    record_failure(conn, *unit, f"{type(e).__name__}: {e}", now=self.clock())
                return schedule_retry(conn, job, f"{type(e).__name__}: {e}", base=backoff_base, now=self.clock())
            if complete(conn, job, now=self.clock()):
                if unit:
                    record_success(conn, *unit, now=self.clock())
                return COMPLETED
            logger.warning(f"Job {job.id} finished after losing its claim; outcome dropped")
            return None
        except Exception as e:
            logger.error(f"Could not record outcome of job {job.id}: {e}")
            return None
        finally:
            conn.close()

    def process_jobs(self, max_jobs: Optional[int] = None) -> Dict[str, int]:
        stats = {"processed": 0, "succeeded": 0, "failed": 0, "retried": 0}
        worker_name = f"orchestrator-{uuid.uuid4().hex[:12]}"
        conn = connect_db(self.db_path)
        try:
            if max_jobs is None:
                max_jobs = config_int(conn, "max_jobs")
            concurrency = self.concurrency or config_int(conn, "concurrency")
            deadline = self.soft_deadline_seconds
            if deadline is None:
                deadline = config_float(conn, "soft_deadline_seconds")
            backoff_base = config_int(conn, "backoff_base")

            stale = requeue_stale(conn, config_float(conn, "stale_claim_minutes"), now=self.clock())
            if stale["requeued"] or stale["failed"]:
                logger.warning(f"Stale claims: {stale['requeued']} requeued, {stale['failed']} failed")

            outcomes: List[Tuple[Job, Optional[str]]] = []
            started = time.monotonic()
            with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=worker_name) as pool:
                in_flight = {}
                while stats["processed"] < max_jobs:
                    if time.monotonic() - started >= deadline:
                        logger.warning(f"Soft deadline of {deadline}s reached; no further claims this batch")
                        break
                    if len(in_flight) >= concurrency:
                        done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                        for future in done:
                            outcomes.append((in_flight.pop(future), future.result()))
                        continue

                    job = claim_one(conn, worker_name, now=self.clock())
                    if not job:
                        break
                    stats["processed"] += 1
                    logger.debug(f"[{worker_name}] Claimed job {job.id} ({job.kind})")
                    in_flight[pool.submit(self._run_job, job, backoff_base)] = job

                for future in list(in_flight):
                    outcomes.append((in_flight.pop(future), future.result()))

            for _, status in outcomes:
                if status == COMPLETED:
                    stats["succeeded"] += 1
                elif status == FAILED:
                    stats["failed"] += 1
                elif status == RETRYING:
                    stats["retried"] += 1

            self._after_batch(conn, outcomes)
        finally:
            conn.close()

        logger.info(f"[{worker_name}] Batch done: {stats}")
        return stats

    def _after_batch(self, conn, outcomes: List[Tuple[Job, Optional[str]]]):
        """Cross-job follow-ups.

        A campaign whose metrics jobs in this batch all completed, with none
        left outstanding, gets its hourly snapshot. A campaign with newly
        discovered engagers gets one alert-formation job.
        """
        metrics = defaultdict(list)
        discovered = set()
        for job, status in outcomes:
            if job.kind == METRICS_REFRESH:
                metrics[job.campaign_id].append(status)
            elif job.kind == ENGAGER_DISCOVERY and status == COMPLETED:
                discovered.add(job.campaign_id)

        for campaign_id, statuses in metrics.items():
            if any(s != COMPLETED for s in statuses):
                continue
            try:
                if outstanding_units(conn, campaign_id, METRICS_REFRESH):
                    continue
                create_snapshot(conn, campaign_id, now=self.clock())
            except Exception as e:
                logger.error(f"Error processing metric snapshot for campaign {campaign_id}: {e}")

        for campaign_id in discovered:
            try:
                if outstanding_units(conn, campaign_id, ALERT_FORMATION):
                    continue
                enqueue(conn, campaign_id, ALERT_FORMATION, {}, now=self.clock())
            except Exception as e:
                logger.error(f"Error enqueuing alert formation for campaign {campaign_id}: {e}")


def process_jobs(
    db_path: Optional[str] = None,
    max_jobs: Optional[int] = None,
    concurrency: Optional[int] = None,
    services: Optional[Services] = None,
    soft_deadline_seconds: Optional[float] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[str, int]:
    orchestrator = Orchestrator(
        db_path=db_path,
        services=services,
        concurrency=concurrency,
        soft_deadline_seconds=soft_deadline_seconds,
        clock=clock,
    )
    return orchestrator.process_jobs(max_jobs)


def start_workers(
    db_path: Optional[str] = None,
    concurrency: Optional[int] = None,
    max_jobs: Optional[int] = None,
    services: Optional[Services] = None,
    idle_seconds: float = 1.0,
):
    """Run batches back to back until SIGINT/SIGTERM."""
    setup_signal_handlers()
    _stop.clear()
    orchestrator = Orchestrator(db_path=db_path, services=services, concurrency=concurrency)

    while not _stop.is_set():
        try:
            stats = orchestrator.process_jobs(max_jobs)
            if stats["processed"] == 0:
                _stop.wait(idle_seconds)
        except Exception as e:
            logger.error(f"Error in worker orchestrator: {e}")
            _stop.wait(5)

    logger.info("All workers stopped gracefully.")
