"""
Async grading jobs.

Each gunicorn worker process runs one daemon thread that takes queued rows
from grading_jobs, grades the coordinate, and writes the outcome back:

    queued -> running -> done | cancelled | failed

Progress events land in the job row as they arrive; the batch JSON is
written once, when the run ends.  A cancel request on a running row is
picked up by a small watcher thread that sets the run's cancel event, so
the stored batch keeps every task that finished before the cancel.
"""

import contextlib
import logging
import os
import threading
from typing import Iterator, Optional

from grading_orchestrator import GradingProgress, grade_location
from grading_result import batch_to_dict
from models import (
    claim_next_job,
    complete_job,
    fail_job,
    init_db,
    is_cancel_requested,
    requeue_stale_running_jobs,
    update_job_progress,
)
from sg_trace import TraceContext, clear_trace, set_trace

logger = logging.getLogger(__name__)

# Idle sleep between queue polls (seconds)
POLL_INTERVAL = 2.0

# Cancel flag check period for a running job (seconds)
CANCEL_POLL_INTERVAL = 1.0

# A detailed-scale run takes a few minutes at most; rows left running
# longer than this when a process starts belong to a dead process.
STALE_JOB_SECONDS = 900

_stop_event = threading.Event()
_worker_thread: Optional[threading.Thread] = None


@contextlib.contextmanager
def _job_scope(job: dict) -> Iterator[None]:
    """Tag Sentry events raised while this job runs (no-op without SENTRY_DSN)."""
    if not os.environ.get("SENTRY_DSN"):
        yield
        return
    import sentry_sdk
    with sentry_sdk.push_scope() as scope:
        scope.set_tag("job_id", job["job_id"])
        scope.set_tag("request_id", job.get("request_id") or "")
        scope.set_tag("coordinate", f"{job['lat']:.5f},{job['lng']:.5f}")
        yield


def _watch_cancel(job_id: str, cancel_event: threading.Event, finished: threading.Event) -> None:
    """Poll the job row until it is flagged for cancel or the run finishes."""
    while not finished.wait(timeout=CANCEL_POLL_INTERVAL):
        try:
            flagged = is_cancel_requested(job_id)
        except Exception:
            logger.exception("[worker] Cancel check failed for job %s", job_id)
            continue
        if flagged:
            logger.info("[worker] Cancel requested for job %s", job_id)
            cancel_event.set()
            return


def _progress_writer(job_id: str):
    def write(progress: GradingProgress) -> None:
        update_job_progress(
            job_id,
            progress.layers_completed,
            progress.layers_total,
            progress.current_layer_title,
            tasks_completed=progress.tasks_completed,
            tasks_total=progress.tasks_total,
        )
    return write


def _run_job_impl(job: dict) -> None:
    """Grade one claimed job and record done, cancelled or failed."""
    job_id = job["job_id"]
    trace = TraceContext(trace_id=job.get("request_id") or job_id)
    set_trace(trace)

    cancel_event = threading.Event()
    if job.get("cancel_requested"):
        cancel_event.set()
    finished = threading.Event()
    threading.Thread(
        target=_watch_cancel, args=(job_id, cancel_event, finished), daemon=True,
    ).start()

    try:
        batch = grade_location(
            job["lat"],
            job["lng"],
            scale_ceiling=job.get("scale_ceiling"),
            layer_ids=job.get("layer_ids"),
            on_progress=_progress_writer(job_id),
            cancel_event=cancel_event,
        )
        if not complete_job(job_id, batch_to_dict(batch), cancelled=batch.cancelled):
            logger.warning("[worker] Job %s is no longer running; result discarded", job_id)
            return
        logger.info(
            "[worker] Job %s %s: %d/%d layers graded",
            job_id,
            "cancelled" if batch.cancelled else "done",
            batch.layers_completed,
            batch.layers_requested,
        )
    except Exception as e:
        logger.exception("[worker] Job %s failed", job_id)
        fail_job(job_id, str(e))
    finally:
        finished.set()
        trace.log_summary()
        clear_trace()


def _run_job(job: dict) -> None:
    with _job_scope(job):
        _run_job_impl(job)


def _worker_loop() -> None:
    logger.info("[worker] Grading worker thread started")
    while not _stop_event.is_set():
        job = claim_next_job()
        if job is None:
            _stop_event.wait(timeout=POLL_INTERVAL)
            continue
        logger.info("[worker] Claimed job %s at (%.5f, %.5f)", job["job_id"], job["lat"], job["lng"])
        try:
            _run_job(job)
        except Exception as e:
            # _run_job_impl already fails the job on grading errors; this
            # catches failures in the bookkeeping around it.
            logger.exception("[worker] Unhandled error in job %s", job["job_id"])
            with _job_scope(job):
                if os.environ.get("SENTRY_DSN"):
                    import sentry_sdk
                    sentry_sdk.capture_exception(e)
            fail_job(job["job_id"], str(e))
    logger.info("[worker] Grading worker thread stopped")


def _sweep_stale_jobs() -> None:
    try:
        requeued = requeue_stale_running_jobs(max_age_seconds=STALE_JOB_SECONDS)
    except Exception:
        logger.exception("[worker] Stale job sweep failed")
        return
    if requeued:
        logger.warning("[worker] Requeued %d orphaned running jobs", requeued)


def start_worker() -> None:
    """Start this process's worker thread; a second call while it runs is a no-op."""
    global _worker_thread
    if _worker_thread is not None and _worker_thread.is_alive():
        return
    init_db()
    _sweep_stale_jobs()
    _stop_event.clear()
    _worker_thread = threading.Thread(target=_worker_loop, daemon=True)
    _worker_thread.start()


def stop_worker() -> None:
    _stop_event.set()
