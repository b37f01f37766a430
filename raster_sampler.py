"""
Raster sampling: one point read, or an aggregated grid of point reads.

The sampler knows nothing about the remote protocol; it drives a
RasterSource (WMSRasterSource in production, fakes in tests) whose read()
returns a value, None for "no data here", or raises RasterUpstreamError.

Area sampling lays a regular grid over the circle of the scale's radius.
Spacing is widened when needed so the grid never exceeds max_samples:

    effective_spacing = max(grid_resolution, 2 * radius / sqrt(max_samples))

Cells are read on a bounded pool.  A cell whose read takes longer than
cell_timeout counts as timed out, whatever it returned.  Reads that never
return are cut off by a grid backstop of
cell_timeout * (ceil(cells / cell_workers) + 1) seconds.  NotFound,
timed-out, failed and non-numeric cells are excluded; the survivors are
aggregated in grid order so repeated runs produce identical floats.
"""

import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from grading_errors import (
    GradingCancelledError,
    InsufficientDataError,
    RasterNotFoundError,
    RasterTimeoutError,
    RasterUpstreamError,
)
from grading_result import Sample
from layer_config import LayerDescriptor, SamplingMethod, ScaleProfile
from sg_trace import get_trace, set_trace

logger = logging.getLogger(__name__)

RasterValue = Union[float, str]
Coordinate = Tuple[float, float]

# Cell pool size per area task and per-cell time allowance.
GRADING_CELL_WORKERS = int(os.environ.get("GRADING_CELL_WORKERS", "5"))
GRADING_CELL_TIMEOUT = float(os.environ.get("GRADING_CELL_TIMEOUT", "10"))

# Local planar approximation; accurate to well under a grid cell at 1 km.
METERS_PER_DEGREE_LAT = 111_320.0


class RasterSource(Protocol):
    def read(self, layer: LayerDescriptor, lat: float, lng: float) -> Optional[RasterValue]:
        ...


# =============================================================================
# Grid geometry
# =============================================================================

def effective_spacing(scale: ScaleProfile) -> float:
    """Grid spacing in metres that keeps the cell count under max_samples."""
    return max(
        float(scale.grid_resolution_meters),
        2.0 * scale.radius_meters / math.sqrt(scale.max_samples),
    )


def _meters_per_degree_lng(lat: float) -> float:
    return METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 1e-6)


def generate_grid(lat: float, lng: float, scale: ScaleProfile) -> List[Coordinate]:
    """Cell centres of the sampling grid, row-major from south-west.

    The centre coordinate is always a cell.  If rounding still leaves more
    than max_samples cells inside the circle, the cells closest to the
    centre are kept.
    """
    spacing = effective_spacing(scale)
    radius = float(scale.radius_meters)
    steps = int(radius // spacing)
    m_lng = _meters_per_degree_lng(lat)

    offsets: List[Tuple[float, float]] = []
    for row in range(-steps, steps + 1):
        dy = row * spacing
        for col in range(-steps, steps + 1):
            dx = col * spacing
            if dx * dx + dy * dy <= radius * radius + 1e-9:
                offsets.append((dy, dx))

    if len(offsets) > scale.max_samples:
        ranked = sorted(
            range(len(offsets)),
            key=lambda i: (offsets[i][0] ** 2 + offsets[i][1] ** 2, i),
        )
        keep = sorted(ranked[:scale.max_samples])
        offsets = [offsets[i] for i in keep]

    return [
        (lat + dy / METERS_PER_DEGREE_LAT, lng + dx / m_lng)
        for dy, dx in offsets
    ]


# =============================================================================
# Aggregation
# =============================================================================

def _mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values)


AGGREGATORS: Dict[SamplingMethod, Callable[[Sequence[float]], float]] = {
    SamplingMethod.AVERAGE: _mean,
    SamplingMethod.MAX: max,
}


def _as_number(value: RasterValue) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if value != value else float(value)
    return None


# =============================================================================
# Sampler
# =============================================================================

# Per-cell outcome tags.
_OK = "ok"
_NOT_FOUND = "not_found"
_FAILED = "failed"
_TIMED_OUT = "timeout"
_CANCELLED = "cancelled"


class RasterSampler:
    """Point and area reads against a RasterSource."""

    def __init__(
        self,
        source: Optional[RasterSource] = None,
        cell_workers: int = GRADING_CELL_WORKERS,
        cell_timeout: float = GRADING_CELL_TIMEOUT,
    ):
        if source is None:
            from wms_http import WMSRasterSource
            source = WMSRasterSource(timeout=cell_timeout)
        self.source = source
        self.cell_workers = max(1, int(cell_workers))
        self.cell_timeout = cell_timeout

    def sample_point(self, layer: LayerDescriptor, lat: float, lng: float) -> Sample:
        """Read the value at exactly (lat, lng).

        Raises RasterNotFoundError when the layer has no data there and
        RasterUpstreamError (or RasterTimeoutError) when the source fails.
        """
        value = self.source.read(layer, lat, lng)
        if value is None:
            raise RasterNotFoundError(
                f"No data for {layer.layer_id} at ({lat:.6f}, {lng:.6f})"
            )
        return Sample(value=value)

    def sample_area(
        self,
        layer: LayerDescriptor,
        lat: float,
        lng: float,
        scale: ScaleProfile,
        aggregator: SamplingMethod,
        cancel_event: Optional[threading.Event] = None,
    ) -> Sample:
        """Aggregate a grid of point reads within scale.radius_meters.

        Returns a Sample whose sample_count is the number of surviving
        cells.  Raises InsufficientDataError when no cell survives and
        GradingCancelledError when cancel_event is set mid-grid.
        """
        reduce_fn = AGGREGATORS.get(aggregator)
        if reduce_fn is None:
            raise ValueError(f"{aggregator!r} is not an area aggregator")

        grid = generate_grid(lat, lng, scale)
        outcomes = self._read_grid(layer, grid, cancel_event)

        if cancel_event is not None and cancel_event.is_set():
            raise GradingCancelledError(
                f"Area sample for {layer.layer_id} cancelled"
            )

        values: List[float] = []
        not_found = timed_out = failed = 0
        for tag, value in outcomes:
            if tag == _OK:
                number = _as_number(value)
                if number is None:
                    failed += 1
                else:
                    values.append(number)
            elif tag == _NOT_FOUND:
                not_found += 1
            elif tag == _FAILED:
                failed += 1
            else:
                timed_out += 1

        if not values:
            raise InsufficientDataError(
                f"No usable cells for {layer.layer_id} at {scale.name} scale "
                f"({len(grid)} cells: {not_found} no data, {timed_out} timed out, "
                f"{failed} failed)",
                cells_total=len(grid),
                cells_not_found=not_found,
                cells_timed_out=timed_out,
                cells_failed=failed,
            )

        if timed_out or failed:
            logger.info(
                "[sampler] %s %s/%s: %d/%d cells usable (%d timed out, %d failed)",
                layer.layer_id, aggregator.value, scale.name,
                len(values), len(grid), timed_out, failed,
            )

        return Sample(
            value=reduce_fn(values),
            sample_count=len(values),
            radius_meters=scale.radius_meters,
        )

    # ------------------------------------------------------------------
    # Cell fan-out
    # ------------------------------------------------------------------

    def _read_cell(
        self,
        layer: LayerDescriptor,
        coord: Coordinate,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[str, Optional[RasterValue]]:
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED, None
        try:
            value = self.source.read(layer, coord[0], coord[1])
        except RasterNotFoundError:
            return _NOT_FOUND, None
        except RasterTimeoutError:
            return _TIMED_OUT, None
        except RasterUpstreamError as e:
            logger.debug("[sampler] cell failed for %s: %s", layer.layer_id, e)
            return _FAILED, None
        if value is None:
            return _NOT_FOUND, None
        return _OK, value

    def _read_grid(
        self,
        layer: LayerDescriptor,
        grid: List[Coordinate],
        cancel_event: Optional[threading.Event],
    ) -> List[Tuple[str, Optional[RasterValue]]]:
        """Read every cell; returns (tag, value) per cell in grid order."""
        parent_trace = get_trace()
        task_label = parent_trace.current_task if parent_trace else ""

        def _cell_in_thread(coord: Coordinate):
            set_trace(parent_trace)
            if parent_trace:
                parent_trace.start_task(task_label)
            started = time.monotonic()
            try:
                outcome = self._read_cell(layer, coord, cancel_event)
                if outcome[0] != _CANCELLED and time.monotonic() - started > self.cell_timeout:
                    return _TIMED_OUT, None
                return outcome
            finally:
                if parent_trace:
                    parent_trace.end_task()

        workers = min(self.cell_workers, len(grid))
        deadline = self.cell_timeout * (math.ceil(len(grid) / workers) + 1)

        pool = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [pool.submit(_cell_in_thread, coord) for coord in grid]
            done, not_done = wait(futures, timeout=deadline)
        finally:
            # Reads still running past the backstop keep their thread (and, for
            # WMS, an in-flight slot) until the source's own timeout fires;
            # WMSRasterSource uses cell_timeout as its HTTP timeout.
            pool.shutdown(wait=False, cancel_futures=True)

        if not_done:
            logger.warning(
                "[sampler] %s: %d/%d cells still pending after %.1fs, dropped",
                layer.layer_id, len(not_done), len(grid), deadline,
            )

        outcomes: List[Tuple[str, Optional[RasterValue]]] = []
        for future in futures:
            if future in done:
                outcomes.append(future.result())
            else:
                future.cancel()
                outcomes.append((_TIMED_OUT, None))
        return outcomes
