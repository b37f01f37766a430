"""
Grading result aggregate: samples, per-layer results, and the batch.

The batch is written only by the orchestrator thread.  Its lock exists so
that readers on other threads (the job worker serializing partial results,
an API handler) always see a consistent snapshot.

Display precedence lives here and nowhere else: max-area sample, else
average-area sample, else point sample.
"""

import bisect
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from grading_errors import InvalidConfigurationError, LayerNotFoundError
from layer_config import SamplingMethod

SampleValue = Union[float, str]

NOT_ANALYZED = "not analyzed"

# Result slot per sampling method.
SLOT_FOR_METHOD: Dict[SamplingMethod, str] = {
    SamplingMethod.POINT: "point_sample",
    SamplingMethod.AVERAGE: "average_area_sample",
    SamplingMethod.MAX: "max_area_sample",
}

# Display precedence, most authoritative first.
DISPLAY_PRECEDENCE: Tuple[str, ...] = (
    "max_area_sample",
    "average_area_sample",
    "point_sample",
)


# =============================================================================
# Samples and per-layer results
# =============================================================================

@dataclass(frozen=True)
class Sample:
    """One sampled value.  sample_count and radius_meters are area-only."""
    value: SampleValue
    sample_count: Optional[int] = None
    radius_meters: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"value": self.value}
        if self.sample_count is not None:
            d["sample_count"] = self.sample_count
        if self.radius_meters is not None:
            d["radius_meters"] = self.radius_meters
        return d


def _reach(sample: Sample) -> int:
    return sample.radius_meters or 0


@dataclass
class LayerGradingResult:
    layer_id: str
    layer_name: str
    point_sample: Optional[Sample] = None
    average_area_sample: Optional[Sample] = None
    max_area_sample: Optional[Sample] = None
    errors: List[str] = field(default_factory=list)
    # Narrower-scale samples superseded by a wider canonical one, keyed by method.
    preview_samples: Dict[str, Sample] = field(default_factory=dict)
    _error_seqs: List[int] = field(default_factory=list, repr=False)

    def has_samples(self) -> bool:
        return any(getattr(self, slot) is not None for slot in DISPLAY_PRECEDENCE)

    def merge_sample(self, method: SamplingMethod, sample: Sample, keep_previews: bool = True) -> None:
        """Place *sample* in the method's slot.

        When the slot is already filled, the wider radius wins the slot
        whatever the arrival order; the narrower sample becomes the
        method's preview (or is dropped when keep_previews is false).
        """
        slot = SLOT_FOR_METHOD[method]
        current = getattr(self, slot)
        if current is None:
            setattr(self, slot, sample)
            return
        if _reach(sample) > _reach(current):
            canonical, narrower = sample, current
        else:
            canonical, narrower = current, sample
        setattr(self, slot, canonical)
        if keep_previews:
            self.preview_samples[method.value] = narrower

    def add_error(self, seq: int, message: str) -> None:
        """Insert an error keeping task order, independent of arrival order."""
        index = bisect.bisect_right(self._error_seqs, seq)
        self._error_seqs.insert(index, seq)
        self.errors.insert(index, message)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "layer_id": self.layer_id,
            "layer_name": self.layer_name,
            "point_sample": self.point_sample.to_dict() if self.point_sample else None,
            "average_area_sample": (
                self.average_area_sample.to_dict() if self.average_area_sample else None
            ),
            "max_area_sample": self.max_area_sample.to_dict() if self.max_area_sample else None,
            "errors": list(self.errors),
        }
        if self.preview_samples:
            d["preview_samples"] = {
                method: sample.to_dict()
                for method, sample in sorted(self.preview_samples.items())
            }
        return d


# =============================================================================
# Display helpers
# =============================================================================

def display_sample(result: LayerGradingResult) -> Optional[Sample]:
    """The sample consumers should show for a layer, or None."""
    for slot in DISPLAY_PRECEDENCE:
        sample = getattr(result, slot)
        if sample is not None:
            return sample
    return None


def display_value(result: LayerGradingResult) -> Optional[SampleValue]:
    sample = display_sample(result)
    return sample.value if sample is not None else None


def format_display_value(result: LayerGradingResult, unit: Optional[str] = None) -> str:
    """Human-readable display value: "62.0 dB", "category-B", or "not analyzed"."""
    value = display_value(result)
    if value is None:
        return NOT_ANALYZED
    if isinstance(value, str):
        return value
    text = f"{value:.1f}"
    return f"{text} {unit}" if unit else text


# =============================================================================
# Batch
# =============================================================================

class GradingBatch:
    """All layer results of one grading run.

    Task accounting: every scheduled task resolves exactly once, either
    through record_sample() or record_error().  A layer is complete when
    all of its tasks have resolved; the batch is done when all tasks have.
    """

    def __init__(
        self,
        layers: Iterable[Tuple[str, str]],
        tasks_per_layer: Dict[str, int],
        declared_methods: Dict[str, Iterable[SamplingMethod]],
        critical_layer_ids: Iterable[str] = (),
        keep_previews: bool = True,
        location: Optional[Tuple[float, float]] = None,
        scale_ceiling: Optional[str] = None,
    ):
        self._lock = threading.RLock()
        self.layers: Dict[str, LayerGradingResult] = {
            layer_id: LayerGradingResult(layer_id=layer_id, layer_name=name)
            for layer_id, name in layers
        }
        self._pending: Dict[str, int] = {
            layer_id: tasks_per_layer.get(layer_id, 0) for layer_id in self.layers
        }
        self._resolved_any: Set[str] = set()
        self._declared: Dict[str, Set[SamplingMethod]] = {
            layer_id: set(methods) for layer_id, methods in declared_methods.items()
        }
        self.critical_layer_ids: List[str] = [
            lid for lid in critical_layer_ids if lid in self.layers
        ]
        self.keep_previews = keep_previews
        self.location = location
        self.scale_ceiling = scale_ceiling
        self.graded_at: Optional[str] = None

        self.layers_requested = len(self.layers)
        self.layers_completed = sum(1 for n in self._pending.values() if n == 0)
        self.tasks_total = sum(self._pending.values())
        self.tasks_resolved = 0
        self.cancelled = False
        self.frozen = False

    # ------------------------------------------------------------------
    # Writes (orchestrator thread only)
    # ------------------------------------------------------------------

    def _result(self, layer_id: str) -> LayerGradingResult:
        try:
            return self.layers[layer_id]
        except KeyError:
            raise LayerNotFoundError(f"Layer {layer_id!r} is not part of this batch") from None

    def _check_writable(self) -> None:
        if self.frozen:
            raise RuntimeError("GradingBatch is frozen")

    def _resolve_task(self, layer_id: str) -> bool:
        if self._pending[layer_id] <= 0:
            raise RuntimeError(f"Layer {layer_id!r} has no unresolved tasks")
        self._pending[layer_id] -= 1
        self._resolved_any.add(layer_id)
        self.tasks_resolved += 1
        if self._pending[layer_id] == 0:
            self.layers_completed += 1
            return True
        return False

    def record_sample(self, layer_id: str, method: SamplingMethod, sample: Sample) -> bool:
        """Merge a task's sample.  Returns True when this completed the layer."""
        with self._lock:
            self._check_writable()
            result = self._result(layer_id)
            if method not in self._declared.get(layer_id, ()):
                raise InvalidConfigurationError(
                    f"Layer {layer_id!r} does not declare method {method.value!r}"
                )
            result.merge_sample(method, sample, self.keep_previews)
            return self._resolve_task(layer_id)

    def record_error(self, layer_id: str, seq: int, message: str) -> bool:
        """Record a task failure.  Returns True when this completed the layer."""
        with self._lock:
            self._check_writable()
            self._result(layer_id).add_error(seq, message)
            return self._resolve_task(layer_id)

    def mark_cancelled(self) -> None:
        with self._lock:
            self.cancelled = True

    def freeze(self) -> None:
        """Stop accepting writes and stamp graded_at (UTC)."""
        with self._lock:
            self.frozen = True
            if self.graded_at is None:
                self.graded_at = datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_done(self) -> bool:
        with self._lock:
            return self.tasks_resolved >= self.tasks_total

    def is_layer_complete(self, layer_id: str) -> bool:
        with self._lock:
            return self._pending.get(layer_id, 0) == 0

    def is_critical_ready(self) -> bool:
        """True once every critical layer has at least one resolved task."""
        with self._lock:
            return all(
                lid in self._resolved_any or self._pending[lid] == 0
                for lid in self.critical_layer_ids
            )

    def critical_gaps(self) -> List[str]:
        """Critical layers that finished with errors and no sample at all."""
        with self._lock:
            return [
                lid for lid in self.critical_layer_ids
                if self._pending[lid] == 0
                and not self.layers[lid].has_samples()
                and self.layers[lid].errors
            ]

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            location = None
            if self.location is not None:
                location = {"lat": self.location[0], "lng": self.location[1]}
            return {
                "location": location,
                "graded_at": self.graded_at,
                "sampling": {
                    "scale_ceiling": self.scale_ceiling,
                    "keep_previews": self.keep_previews,
                },
                "layers": {lid: r.to_dict() for lid, r in self.layers.items()},
                "layers_requested": self.layers_requested,
                "layers_completed": self.layers_completed,
                "tasks_total": self.tasks_total,
                "tasks_resolved": self.tasks_resolved,
                "done": self.tasks_resolved >= self.tasks_total,
                "cancelled": self.cancelled,
                "critical_ready": self.is_critical_ready(),
                "critical_gaps": self.critical_gaps(),
                "statistics": grading_statistics(self),
            }


# =============================================================================
# Serialization and statistics
# =============================================================================

def batch_to_dict(batch: GradingBatch) -> Dict[str, Any]:
    """JSON-ready dict.  Serialize with sort_keys=True for stable output."""
    return batch.to_dict()


def grading_statistics(batch: GradingBatch) -> Dict[str, int]:
    """Layer success/failure counts and total raster reads that fed samples."""
    with batch._lock:
        results = list(batch.layers.values())
    successful = 0
    failed = 0
    total_samples = 0
    for result in results:
        if result.has_samples():
            successful += 1
        elif result.errors:
            failed += 1
        for slot in DISPLAY_PRECEDENCE:
            sample = getattr(result, slot)
            if sample is not None:
                total_samples += sample.sample_count or 1
    return {
        "total_layers": len(results),
        "successful_layers": successful,
        "failed_layers": failed,
        "total_samples": total_samples,
    }
