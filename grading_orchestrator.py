#!/usr/bin/env python3
"""
Grading orchestrator: grade every layer of a policy table at one coordinate.

Pipeline:
  1. build_tasks() expands the policy table into one GradingTask per
     (layer, method, scale), in priority order (critical first, then
     ascending priority, ties by declaration order).
  2. Tasks are submitted in that order to a bounded ThreadPoolExecutor, so
     priority decides who starts first; completion order is whatever the
     network makes it.
  3. The calling thread is the only writer of the GradingBatch: it consumes
     finished futures with as_completed(), merges the sample or records the
     error, and then emits one GradingProgress event.

A failing task never aborts its siblings.  Cancellation is cooperative via
a threading.Event checked before each task and between grid cells; tasks
that had not started resolve with a "cancelled" error and every merge
already made is kept.

Usage:
    python grading_orchestrator.py 52.0907 5.1214
    python grading_orchestrator.py 52.0907 5.1214 --scale-ceiling quick --json
"""

import argparse
import heapq
import json
import logging
import os
import sys
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from grading_errors import (
    GradingCancelledError,
    GradingError,
    InsufficientDataError,
    RasterNotFoundError,
    RasterTimeoutError,
    RasterUpstreamError,
)
from grading_result import (
    GradingBatch,
    Sample,
    batch_to_dict,
    format_display_value,
    grading_statistics,
)
from layer_config import (
    CATEGORY_LABELS,
    GRADING_POLICY_TABLE,
    POINT_NOMINAL_SECONDS,
    SCALE_ORDER,
    PolicyTable,
    SamplingMethod,
    ScaleProfile,
)
from raster_sampler import RasterSampler
from scale_resolver import resolve_scales
from sg_trace import TraceContext, clear_trace, get_trace, set_trace

logger = logging.getLogger(__name__)

GRADING_MAX_WORKERS = int(os.environ.get("GRADING_MAX_WORKERS", "6"))

# Recommended per-task ceiling as a multiple of the nominal cost.  Only
# logged when exceeded; nothing is aborted.
TASK_TIMEOUT_MULTIPLIER = 3.0

NO_DATA_MESSAGE = "no data at this location"
CANCELLED_MESSAGE = "cancelled"


# =============================================================================
# Task model
# =============================================================================

@dataclass(frozen=True)
class GradingTask:
    """One unit of sampling work: a layer read with one method at one scale."""
    seq: int
    layer_id: str
    layer_title: str
    method: SamplingMethod
    scale: ScaleProfile

    @property
    def label(self) -> str:
        if self.method == SamplingMethod.POINT:
            return f"{self.layer_id}:point"
        return f"{self.layer_id}:{self.method.value}@{self.scale.name}"


@dataclass(frozen=True)
class GradingProgress:
    layers_completed: int
    layers_total: int
    current_layer_title: str
    tasks_completed: int
    tasks_total: int


@dataclass(frozen=True)
class GradingEstimate:
    serial_seconds: float   # sum of nominal task costs
    eta_seconds: float      # simulated wall-clock on max_workers threads
    task_count: int


ProgressCallback = Callable[[GradingProgress], None]


def build_tasks(
    policy_table: PolicyTable,
    scale_ceiling: Optional[str] = None,
) -> List[GradingTask]:
    """Expand the policy table into tasks, in scheduling order.

    Point reads ignore scale, so a point method always yields a single task
    (at its canonical scale, recorded for tracing only).
    """
    tasks: List[GradingTask] = []
    for policy in policy_table.list_by_priority():
        layer = policy_table.get_layer(policy.layer_id)
        for method in policy.ordered_methods():
            profiles = resolve_scales(policy_table, policy.layer_id, method, scale_ceiling)
            if method == SamplingMethod.POINT:
                profiles = profiles[-1:]
            for profile in profiles:
                tasks.append(GradingTask(
                    seq=len(tasks),
                    layer_id=layer.layer_id,
                    layer_title=layer.display_name,
                    method=method,
                    scale=profile,
                ))
    return tasks


# =============================================================================
# Time budgeting
# =============================================================================

def task_nominal_seconds(task: GradingTask) -> float:
    if task.method == SamplingMethod.POINT:
        return POINT_NOMINAL_SECONDS
    return task.scale.nominal_seconds


def task_timeout_ceiling(task: GradingTask) -> float:
    """Recommended upper bound for one task (advisory, never enforced)."""
    return TASK_TIMEOUT_MULTIPLIER * task_nominal_seconds(task)


def estimate_grading_time(
    tasks: Sequence[GradingTask],
    max_workers: int = GRADING_MAX_WORKERS,
) -> GradingEstimate:
    """Nominal ETA for running *tasks* in order on a pool of *max_workers*.

    Simulates the pool: each task starts on whichever worker frees up first.
    """
    workers = max(1, int(max_workers))
    costs = [task_nominal_seconds(t) for t in tasks]
    finish_times = [0.0] * min(workers, len(costs))
    heapq.heapify(finish_times)
    for cost in costs:
        start = heapq.heappop(finish_times)
        heapq.heappush(finish_times, start + cost)
    return GradingEstimate(
        serial_seconds=sum(costs),
        eta_seconds=max(finish_times) if finish_times else 0.0,
        task_count=len(costs),
    )


# =============================================================================
# Task execution (pool threads)
# =============================================================================

def _run_task(
    task: GradingTask,
    policy_table: PolicyTable,
    sampler: RasterSampler,
    lat: float,
    lng: float,
    cancel_event: threading.Event,
    parent_trace: Optional[TraceContext],
) -> Sample:
    """Run one task in a pool thread with trace propagation.  Raises on failure."""
    set_trace(parent_trace)
    if cancel_event.is_set():
        if parent_trace:
            now = time.time()
            parent_trace.record_task(
                task.label, task.layer_id, task.method.value, task.scale.name,
                now, now, outcome="cancelled",
            )
        raise GradingCancelledError(f"{task.label} cancelled before start")

    layer = policy_table.get_layer(task.layer_id)
    if parent_trace:
        parent_trace.start_task(task.label)
    t0 = time.time()
    outcome, error_class, error_message = "ok", "", ""
    try:
        if task.method == SamplingMethod.POINT:
            return sampler.sample_point(layer, lat, lng)
        return sampler.sample_area(
            layer, lat, lng, task.scale, task.method, cancel_event=cancel_event,
        )
    except GradingCancelledError as exc:
        outcome, error_class, error_message = "cancelled", type(exc).__name__, str(exc)[:200]
        raise
    except GradingError as exc:
        outcome, error_class, error_message = "error", type(exc).__name__, str(exc)[:200]
        raise
    except Exception as exc:
        outcome, error_class, error_message = "error", type(exc).__name__, str(exc)[:200]
        logger.exception("[grading] Unexpected error in task %s", task.label)
        raise
    finally:
        t1 = time.time()
        if parent_trace:
            parent_trace.end_task()
            parent_trace.record_task(
                task.label, task.layer_id, task.method.value, task.scale.name,
                t0, t1, outcome=outcome,
                error_class=error_class, error_message=error_message,
            )
        ceiling = task_timeout_ceiling(task)
        if t1 - t0 > ceiling:
            logger.warning(
                "[grading] %s took %.1fs, over its %.0fs ceiling",
                task.label, t1 - t0, ceiling,
            )


def _error_message(task: GradingTask, exc: BaseException) -> str:
    if isinstance(exc, GradingCancelledError):
        detail = CANCELLED_MESSAGE
    elif isinstance(exc, RasterNotFoundError):
        detail = NO_DATA_MESSAGE
    elif isinstance(exc, RasterTimeoutError):
        detail = f"timeout: {exc}"
    elif isinstance(exc, (RasterUpstreamError, InsufficientDataError)):
        detail = str(exc)
    else:
        detail = f"{type(exc).__name__}: {exc}"
    if task.method == SamplingMethod.POINT:
        return f"point: {detail}"
    return f"{task.method.value} ({task.scale.name}): {detail}"


def _new_batch(
    policy_table: PolicyTable,
    tasks: Sequence[GradingTask],
    keep_previews: bool,
    lat: float,
    lng: float,
    scale_ceiling: Optional[str],
) -> GradingBatch:
    policies = policy_table.list_by_priority()
    tasks_per_layer: Dict[str, int] = {}
    for task in tasks:
        tasks_per_layer[task.layer_id] = tasks_per_layer.get(task.layer_id, 0) + 1
    return GradingBatch(
        layers=[
            (p.layer_id, policy_table.get_layer(p.layer_id).display_name)
            for p in policies
        ],
        tasks_per_layer=tasks_per_layer,
        declared_methods={p.layer_id: p.methods for p in policies},
        critical_layer_ids=[p.layer_id for p in policies if p.critical],
        keep_previews=keep_previews,
        location=(lat, lng),
        scale_ceiling=scale_ceiling,
    )


# =============================================================================
# Public entry point
# =============================================================================

def grade_location(
    lat: float,
    lng: float,
    policy_table: PolicyTable = GRADING_POLICY_TABLE,
    sampler: Optional[RasterSampler] = None,
    max_workers: int = GRADING_MAX_WORKERS,
    scale_ceiling: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    layer_ids: Optional[Sequence[str]] = None,
    keep_previews: bool = True,
) -> GradingBatch:
    """Grade every layer of *policy_table* at (lat, lng).

    Args:
        lat, lng: WGS84 coordinate.
        policy_table: validated layer/policy registry.
        sampler: RasterSampler to read through; a WMS-backed one by default.
        max_workers: task pool size.
        scale_ceiling: optional scale name; wider scales are clamped to it.
        on_progress: called once per resolved task, from this thread.
        cancel_event: set it to stop starting new tasks and grid cells.
        layer_ids: optional subset of layers to grade.
        keep_previews: keep narrower-scale samples under preview_samples.

    Returns the frozen GradingBatch.  Per-task failures are recorded on the
    owning layer, never raised.  Raises ValueError for an out-of-range
    coordinate, LayerNotFoundError for unknown layer_ids and
    InvalidConfigurationError for an unknown scale ceiling, all before any
    task starts.
    """
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ValueError(f"Coordinate out of range: ({lat}, {lng})")
    if scale_ceiling is not None:
        policy_table.get_scale(scale_ceiling)
    if layer_ids is not None:
        policy_table = policy_table.subset(layer_ids)

    tasks = build_tasks(policy_table, scale_ceiling)
    batch = _new_batch(policy_table, tasks, keep_previews, lat, lng, scale_ceiling)
    if sampler is None:
        sampler = RasterSampler()
    if cancel_event is None:
        cancel_event = threading.Event()

    estimate = estimate_grading_time(tasks, max_workers)
    logger.info(
        "[grading] (%.5f, %.5f): %d layers, %d tasks, eta %.0fs (serial %.0fs, %d workers)",
        lat, lng, batch.layers_requested, estimate.task_count,
        estimate.eta_seconds, estimate.serial_seconds, max_workers,
    )

    def _emit(task: GradingTask) -> None:
        if on_progress is None:
            return
        progress = GradingProgress(
            layers_completed=batch.layers_completed,
            layers_total=batch.layers_requested,
            current_layer_title=task.layer_title,
            tasks_completed=batch.tasks_resolved,
            tasks_total=batch.tasks_total,
        )
        try:
            on_progress(progress)
        except Exception:
            logger.exception("[grading] Progress callback failed (ignored)")

    parent_trace = get_trace()
    t0 = time.time()

    if tasks:
        with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool:
            futures = {
                pool.submit(
                    _run_task, task, policy_table, sampler, lat, lng,
                    cancel_event, parent_trace,
                ): task
                for task in tasks
            }
            # Single writer: only this loop mutates the batch.
            for future in as_completed(futures):
                task = futures[future]
                try:
                    sample = future.result()
                except Exception as exc:
                    batch.record_error(task.layer_id, task.seq, _error_message(task, exc))
                else:
                    batch.record_sample(task.layer_id, task.method, sample)
                _emit(task)

    if cancel_event.is_set():
        batch.mark_cancelled()
    batch.freeze()

    stats = grading_statistics(batch)
    logger.info(
        "[grading] done in %.1fs: %d/%d layers graded, %d failed, %d samples%s",
        time.time() - t0,
        stats["successful_layers"], stats["total_layers"],
        stats["failed_layers"], stats["total_samples"],
        " (cancelled)" if batch.cancelled else "",
    )
    gaps = batch.critical_gaps()
    if gaps:
        logger.warning("[grading] critical layers without data: %s", ", ".join(gaps))
    return batch


# =============================================================================
# CLI
# =============================================================================

def format_batch(batch: GradingBatch, policy_table: PolicyTable = GRADING_POLICY_TABLE) -> str:
    """Plain-text report grouped by layer category."""
    lines: List[str] = []
    by_category: Dict[str, List[str]] = {}
    for layer_id, result in batch.layers.items():
        layer = policy_table.get_layer(layer_id)
        label = CATEGORY_LABELS[layer.category]
        line = f"  {result.layer_name:<32} {format_display_value(result, layer.unit)}"
        if layer_id in batch.critical_layer_ids:
            line += "  [critical]"
        by_category.setdefault(label, []).append(line)
        for error in result.errors:
            by_category[label].append(f"      ! {error}")

    for label, entries in by_category.items():
        lines.append(label)
        lines.extend(entries)
        lines.append("")

    stats = grading_statistics(batch)
    lines.append(
        f"{stats['successful_layers']}/{stats['total_layers']} layers graded, "
        f"{stats['failed_layers']} failed, {stats['total_samples']} samples"
    )
    gaps = batch.critical_gaps()
    if gaps:
        lines.append("Critical layers without data: " + ", ".join(gaps))
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(
        description="Grade environmental raster layers around a coordinate"
    )
    parser.add_argument("lat", type=float, help="Latitude (WGS84)")
    parser.add_argument("lng", type=float, help="Longitude (WGS84)")
    parser.add_argument(
        "--scale-ceiling",
        choices=SCALE_ORDER,
        help="Clamp every area sample to at most this scale"
    )
    parser.add_argument(
        "--layers",
        nargs="+",
        metavar="LAYER_ID",
        help="Grade only these layer ids"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=GRADING_MAX_WORKERS,
        help="Task pool size (default: GRADING_MAX_WORKERS or 6)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the batch as JSON instead of formatted text"
    )
    parser.add_argument(
        "--estimate-only",
        action="store_true",
        help="Print the task count and ETA without grading"
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    policy_table = GRADING_POLICY_TABLE
    if args.layers:
        policy_table = policy_table.subset(args.layers)

    if args.estimate_only:
        tasks = build_tasks(policy_table, args.scale_ceiling)
        estimate = estimate_grading_time(tasks, args.workers)
        print(
            f"{estimate.task_count} tasks, ETA {estimate.eta_seconds:.0f}s "
            f"on {args.workers} workers (serial {estimate.serial_seconds:.0f}s)"
        )
        return

    def _print_progress(p: GradingProgress):
        print(
            f"  [{p.tasks_completed}/{p.tasks_total}] {p.current_layer_title} "
            f"({p.layers_completed}/{p.layers_total} layers)",
            file=sys.stderr,
        )

    trace = TraceContext(trace_id=uuid.uuid4().hex[:10])
    set_trace(trace)
    try:
        batch = grade_location(
            args.lat,
            args.lng,
            policy_table=policy_table,
            max_workers=args.workers,
            scale_ceiling=args.scale_ceiling,
            on_progress=_print_progress,
        )
    finally:
        trace.log_summary()
        clear_trace()

    if args.json:
        print(json.dumps(batch_to_dict(batch), indent=2, sort_keys=True, ensure_ascii=False))
    else:
        print(format_batch(batch, policy_table))


if __name__ == "__main__":
    main()
