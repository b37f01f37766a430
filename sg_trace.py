"""
Request-scoped tracing for SiteGrade grading runs.

Provides a thread-local TraceContext that records:
  - Per-task timing (layer, method, scale, elapsed_ms, outcome, error)
  - Per-outbound-call timing (service, layer, elapsed_ms, status, provider status)
  - End-of-run summary (total_elapsed, total_api_calls, outcome)

Usage:
    from sg_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler or worker:
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In raster clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Pool threads do not inherit thread-locals; the orchestrator calls
set_trace(parent_trace) at the top of every task.
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound raster request (one grid cell or one point read)."""
    service: str          # "wms"
    endpoint: str         # service layer name
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # "ok" | "no_data" | "timeout" | "http_error" ...
    retried: bool = False
    task: str = ""              # which grading task was running


@dataclass
class TaskRecord:
    """One grading task (layer × method × scale)."""
    task_label: str
    layer_id: str
    method: str
    scale: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    elapsed_ms: int = 0
    outcome: str = "ok"         # "ok" | "error" | "cancelled"
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single grading run.

    Shared by every pool thread of the run; list.append is GIL-atomic, and
    the current task label is kept per thread.
    """
    trace_id: str
    request_start: float = field(default_factory=time.time)
    tasks: List[TaskRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _local: threading.local = field(default_factory=threading.local, repr=False)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    @property
    def current_task(self) -> str:
        return getattr(self._local, "task", "")

    def start_task(self, label: str):
        self._local.task = label

    def end_task(self):
        self._local.task = ""

    def record_task(
        self,
        task_label: str,
        layer_id: str,
        method: str,
        scale: str,
        start_ts: float,
        end_ts: float,
        outcome: str = "ok",
        error_class: str = "",
        error_message: str = "",
    ):
        rec = TaskRecord(
            task_label=task_label,
            layer_id=layer_id,
            method=method,
            scale=scale,
            start_ts=start_ts,
            end_ts=end_ts,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            outcome=outcome,
            error_class=error_class,
            error_message=error_message,
        )
        self.tasks.append(rec)

        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [task] trace=%s %s %s %dms%s",
            self.trace_id,
            task_label,
            outcome.upper(),
            rec.elapsed_ms,
            err_info,
        )

    # ------------------------------------------------------------------
    # API call recording
    # ------------------------------------------------------------------

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            task=self.current_task,
        )
        self.api_calls.append(rec)
        # Area tasks issue hundreds of cell reads; keep these out of INFO.
        logger.debug(
            "  [api] trace=%s task=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            rec.task or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    # Maximum per-call records persisted in summary_dict to prevent bloat.
    MAX_CALL_RECORDS = 500

    def summary_dict(self) -> Dict[str, Any]:
        """Return a summary dict suitable for logging and JSON responses."""
        total_elapsed = int((time.time() - self.request_start) * 1000)
        tasks = list(self.tasks)
        calls = list(self.api_calls)
        ok = [t for t in tasks if t.outcome == "ok"]
        errored = [t for t in tasks if t.outcome == "error"]
        cancelled = [t for t in tasks if t.outcome == "cancelled"]

        if errored and not ok:
            outcome = "error"
        elif not tasks:
            outcome = "empty"
        elif errored or cancelled:
            outcome = "partial"
        else:
            outcome = "success"

        failed_calls = sum(
            1 for c in calls if c.provider_status not in ("", "ok", "no_data")
        )

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(calls),
            "failed_api_calls": failed_calls,
            "tasks_ok": len(ok),
            "tasks_errored": len(errored),
            "tasks_cancelled": len(cancelled),
            "final_outcome": outcome,
            "calls": [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "task": c.task,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                }
                for c in calls[:self.MAX_CALL_RECORDS]
            ],
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d failed_calls=%d "
            "ok=%d errored=%d cancelled=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["failed_api_calls"],
            s["tasks_ok"],
            s["tasks_errored"],
            s["tasks_cancelled"],
            s["final_outcome"],
        )

    def tasks_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "task": t.task_label,
                "layer_id": t.layer_id,
                "elapsed_ms": t.elapsed_ms,
                "outcome": t.outcome,
                "error": (
                    f"{t.error_class}: {t.error_message}"
                    if t.error_class else None
                ),
            }
            for t in self.tasks
        ]


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current run's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
