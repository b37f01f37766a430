"""
Grading job store (raw sqlite3, no ORM).

One table, grading_jobs, doubles as the queue for worker.py and the record
that GET /api/grading/jobs/<id> reads.  Status moves

    queued -> running -> done | cancelled | failed

and a row in one of FINAL_STATUSES is never touched again.  Progress columns
hold counters only; result_json is written when the run ends.
"""

import contextlib
import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("SITEGRADE_DB_PATH", "sitegrade.db")

FINAL_STATUSES = ("done", "failed", "cancelled")

_MAX_ERROR_CHARS = 2000

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS grading_jobs (
        job_id              TEXT PRIMARY KEY,
        lat                 REAL NOT NULL,
        lng                 REAL NOT NULL,
        layer_ids           TEXT,       -- JSON list, NULL = whole catalog
        scale_ceiling       TEXT,
        request_id          TEXT,
        status              TEXT NOT NULL DEFAULT 'queued',
        layers_completed    INTEGER NOT NULL DEFAULT 0,
        layers_total        INTEGER NOT NULL DEFAULT 0,
        tasks_completed     INTEGER NOT NULL DEFAULT 0,
        tasks_total         INTEGER NOT NULL DEFAULT 0,
        current_layer_title TEXT,
        cancel_requested    INTEGER NOT NULL DEFAULT 0,
        result_json         TEXT,
        error               TEXT,
        created_at          TEXT NOT NULL,
        started_at          TEXT,
        completed_at        TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_grading_jobs_status ON grading_jobs(status);
    CREATE INDEX IF NOT EXISTS idx_grading_jobs_created ON grading_jobs(created_at);
"""


def _get_db():
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextlib.contextmanager
def _db() -> Iterator[sqlite3.Connection]:
    """Connection that commits on success and always closes."""
    conn = _get_db()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db():
    """Create the job table. Idempotent."""
    with _db() as conn:
        conn.executescript(_SCHEMA)


def _decode(row) -> Dict[str, Any]:
    job = dict(row)
    raw_layers = job.get("layer_ids")
    job["layer_ids"] = json.loads(raw_layers) if raw_layers else None
    job["cancel_requested"] = bool(job.get("cancel_requested"))
    raw_result = job.pop("result_json", None)
    job["result"] = json.loads(raw_result) if raw_result else None
    return job


# =========================================================================
# Queue
# =========================================================================

def create_job(lat, lng, layer_ids: Optional[List[str]] = None, scale_ceiling=None, request_id=None):
    """Queue a grading run and return its 12-char job id."""
    job_id = uuid.uuid4().hex[:12]
    encoded_layers = json.dumps(list(layer_ids)) if layer_ids is not None else None
    with _db() as conn:
        conn.execute(
            """INSERT INTO grading_jobs
               (job_id, lat, lng, layer_ids, scale_ceiling, request_id, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 'queued', ?)""",
            (job_id, lat, lng, encoded_layers, scale_ceiling, request_id, _now()),
        )
    return job_id


def get_job(job_id):
    """Job row as a dict (layer_ids and result decoded), or None."""
    with _db() as conn:
        row = conn.execute(
            "SELECT * FROM grading_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
    return _decode(row) if row else None


def claim_next_job():
    """
    Move the oldest queued job to running and return it.

    The UPDATE repeats the status='queued' guard, so when two worker
    processes pick the same row only one sees rowcount 1.
    """
    with _db() as conn:
        candidate = conn.execute(
            "SELECT job_id FROM grading_jobs WHERE status = 'queued' "
            "ORDER BY created_at ASC LIMIT 1"
        ).fetchone()
        if candidate is None:
            return None
        claimed = conn.execute(
            "UPDATE grading_jobs SET status = 'running', started_at = ? "
            "WHERE job_id = ? AND status = 'queued'",
            (_now(), candidate["job_id"]),
        ).rowcount
        if not claimed:
            return None
        row = conn.execute(
            "SELECT * FROM grading_jobs WHERE job_id = ?", (candidate["job_id"],)
        ).fetchone()
    return _decode(row)


# =========================================================================
# Running job updates
# =========================================================================

def update_job_progress(job_id, layers_completed, layers_total, current_layer_title,
                        tasks_completed=0, tasks_total=0):
    """Overwrite the progress counters of a running job."""
    with _db() as conn:
        conn.execute(
            """UPDATE grading_jobs
               SET layers_completed = ?, layers_total = ?, current_layer_title = ?,
                   tasks_completed = ?, tasks_total = ?
               WHERE job_id = ? AND status = 'running'""",
            (layers_completed, layers_total, current_layer_title,
             tasks_completed, tasks_total, job_id),
        )


def complete_job(job_id, result, cancelled=False):
    """
    Store the batch; status becomes 'cancelled' for a cut-short run, else 'done'.
    Only a running row is written; returns False when the row has moved on
    (requeued by another process's stale sweep, or already finished).
    """
    with _db() as conn:
        return conn.execute(
            """UPDATE grading_jobs
               SET status = ?, result_json = ?, completed_at = ?, current_layer_title = NULL
               WHERE job_id = ? AND status = 'running'""",
            ("cancelled" if cancelled else "done",
             json.dumps(result, sort_keys=True), _now(), job_id),
        ).rowcount > 0


def fail_job(job_id, error_message):
    """Mark a running job failed; returns False if it was not running."""
    with _db() as conn:
        updated = conn.execute(
            """UPDATE grading_jobs
               SET status = 'failed', error = ?, completed_at = ?, current_layer_title = NULL
               WHERE job_id = ? AND status = 'running'""",
            (error_message[:_MAX_ERROR_CHARS] if error_message else None, _now(), job_id),
        ).rowcount > 0
    if updated:
        logger.info("[jobs] Job %s marked failed", job_id)
    return updated


# =========================================================================
# Cancellation
# =========================================================================

def request_cancel(job_id):
    """
    Cancel a job.  Queued: cancelled on the spot.  Running: flagged for the
    worker's watcher.  Returns False for unknown or finished jobs.
    """
    with _db() as conn:
        if conn.execute(
            """UPDATE grading_jobs
               SET status = 'cancelled', cancel_requested = 1, completed_at = ?
               WHERE job_id = ? AND status = 'queued'""",
            (_now(), job_id),
        ).rowcount:
            return True
        return conn.execute(
            "UPDATE grading_jobs SET cancel_requested = 1 "
            "WHERE job_id = ? AND status = 'running'",
            (job_id,),
        ).rowcount > 0


def is_cancel_requested(job_id):
    with _db() as conn:
        row = conn.execute(
            "SELECT cancel_requested FROM grading_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
    return bool(row and row["cancel_requested"])


# =========================================================================
# Startup sweep
# =========================================================================

def requeue_stale_running_jobs(max_age_seconds=600):
    """Put jobs running since before now - max_age_seconds back in the queue; returns the count."""
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    with _db() as conn:
        return conn.execute(
            """UPDATE grading_jobs
               SET status = 'queued', started_at = NULL, completed_at = NULL,
                   current_layer_title = NULL, layers_completed = 0,
                   tasks_completed = 0, result_json = NULL, error = NULL
               WHERE status = 'running' AND started_at IS NOT NULL AND started_at <= ?""",
            (cutoff,),
        ).rowcount
