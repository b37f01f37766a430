"""Unit tests for grading_orchestrator.py — task planning and the grading run.

Every run goes through a real RasterSampler over an in-memory source, so
the tests exercise the pool, the single-writer merge loop, progress
reporting and cancellation without any network.
"""

import json
import threading

import pytest

from grading_errors import (
    InvalidConfigurationError,
    LayerNotFoundError,
    RasterUpstreamError,
)
from grading_orchestrator import (
    CANCELLED_MESSAGE,
    NO_DATA_MESSAGE,
    build_tasks,
    estimate_grading_time,
    format_batch,
    grade_location,
    task_timeout_ceiling,
)
from grading_result import batch_to_dict
from layer_config import (
    GRADING_POLICY_TABLE,
    GradingPolicy,
    LayerCategory,
    LayerDescriptor,
    PolicyTable,
    SamplingMethod,
    ScaleOverride,
    ValueKind,
)
from raster_sampler import RasterSampler
from sg_trace import TraceContext, clear_trace, set_trace

LAT, LNG = 52.0907, 5.1214

VALUES = {"L1": 62.0, "L2": 8.0, "L3": "category-B"}


class LayerSource:
    """Returns a fixed value per layer; hooks let tests fail or cancel."""

    def __init__(self, values=None, fail_layers=(), on_read=None):
        self.values = dict(VALUES if values is None else values)
        self.fail_layers = set(fail_layers)
        self.on_read = on_read
        self._lock = threading.Lock()
        self.reads = {}

    def read(self, layer, lat, lng):
        with self._lock:
            self.reads[layer.layer_id] = self.reads.get(layer.layer_id, 0) + 1
        if self.on_read:
            self.on_read(layer)
        if layer.layer_id in self.fail_layers:
            raise RasterUpstreamError(f"HTTP 503 for {layer.layer_id}")
        return self.values.get(layer.layer_id)


def _sampler(source):
    return RasterSampler(source=source, cell_workers=2)


# =========================================================================
# Task planning
# =========================================================================

class TestBuildTasks:
    def test_priority_order_and_sequence(self, three_layer_table):
        tasks = build_tasks(three_layer_table)
        assert [t.label for t in tasks] == ["L1:max@quick", "L3:point", "L2:average@default"]
        assert [t.seq for t in tasks] == [0, 1, 2]

    def test_keep_base_override_yields_two_tasks(self):
        table = GRADING_POLICY_TABLE.subset(["rivm_geluid_lden_wegverkeer_2020"])
        tasks = build_tasks(table)
        assert [t.scale.name for t in tasks] == ["quick", "default"]

    def test_scale_ceiling_collapses_duplicate_tasks(self):
        table = GRADING_POLICY_TABLE.subset(["rivm_geluid_lden_wegverkeer_2020"])
        tasks = build_tasks(table, scale_ceiling="quick")
        assert [t.scale.name for t in tasks] == ["quick"]

    def test_production_table_starts_with_critical_layer(self):
        tasks = build_tasks(GRADING_POLICY_TABLE)
        assert tasks[0].layer_id == "mgr_tot_2020"
        point_layers = [t.layer_id for t in tasks if t.method == SamplingMethod.POINT]
        assert len(point_layers) == len(set(point_layers))


class TestEstimate:
    def test_serial_and_pool_eta(self, three_layer_table):
        tasks = build_tasks(three_layer_table)
        # max@quick 2s, point 1s, average@default 10s
        assert estimate_grading_time(tasks, max_workers=1).eta_seconds == 13.0
        two = estimate_grading_time(tasks, max_workers=2)
        assert two.serial_seconds == 13.0
        assert two.eta_seconds == 11.0
        assert two.task_count == 3
        assert estimate_grading_time(tasks, max_workers=6).eta_seconds == 10.0

    def test_empty_plan(self):
        estimate = estimate_grading_time([], max_workers=4)
        assert (estimate.eta_seconds, estimate.task_count) == (0.0, 0)

    def test_timeout_ceiling_is_three_times_nominal(self, three_layer_table):
        first = build_tasks(three_layer_table)[0]
        assert task_timeout_ceiling(first) == 6.0


# =========================================================================
# grade_location
# =========================================================================

class TestGradeLocation:
    def test_end_to_end_three_layers(self, three_layer_table):
        events = []
        batch = grade_location(
            LAT, LNG,
            policy_table=three_layer_table,
            sampler=_sampler(LayerSource()),
            max_workers=3,
            on_progress=events.append,
        )
        data = batch_to_dict(batch)

        l1 = data["layers"]["L1"]["max_area_sample"]
        assert (l1["value"], l1["radius_meters"], l1["sample_count"]) == (62.0, 250, 21)
        l2 = data["layers"]["L2"]["average_area_sample"]
        assert (l2["value"], l2["radius_meters"]) == (8.0, 500)
        assert data["layers"]["L3"]["point_sample"] == {"value": "category-B"}

        assert all(layer["errors"] == [] for layer in data["layers"].values())
        assert data["done"] is True
        assert data["cancelled"] is False
        assert data["critical_ready"] is True
        assert data["statistics"]["successful_layers"] == 3

        assert len(events) == 3
        assert [e.tasks_completed for e in events] == [1, 2, 3]
        assert events[-1].layers_completed == 3
        assert all(e.layers_total == 3 and e.tasks_total == 3 for e in events)

    def test_repeated_runs_serialize_identically(self, three_layer_table):
        runs = []
        for _ in range(2):
            data = batch_to_dict(grade_location(
                LAT, LNG, policy_table=three_layer_table,
                sampler=_sampler(LayerSource()), max_workers=3,
            ))
            data.pop("graded_at")
            runs.append(json.dumps(data, sort_keys=True))
        assert runs[0] == runs[1]

    def test_batch_carries_location_and_sampling_config(self, three_layer_table):
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table,
            sampler=_sampler(LayerSource()), max_workers=3, scale_ceiling="quick",
        )
        data = batch_to_dict(batch)
        assert data["location"] == {"lat": LAT, "lng": LNG}
        assert data["sampling"] == {"scale_ceiling": "quick", "keep_previews": True}
        assert data["graded_at"].endswith("+00:00")

    def test_failing_layer_does_not_affect_others(self, three_layer_table):
        batch = grade_location(
            LAT, LNG,
            policy_table=three_layer_table,
            sampler=_sampler(LayerSource(fail_layers={"L2"})),
            max_workers=3,
        )
        l2 = batch.layers["L2"]
        assert not l2.has_samples()
        assert len(l2.errors) == 1
        assert l2.errors[0].startswith("average (default): ")
        assert batch.layers["L1"].max_area_sample.value == 62.0
        assert batch.layers["L3"].point_sample.value == "category-B"
        assert batch.is_done()
        assert batch.critical_gaps() == []

    def test_point_without_data_records_no_data_error(self, three_layer_table):
        source = LayerSource(values={"L1": 62.0, "L2": 8.0, "L3": None})
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table, sampler=_sampler(source), max_workers=3,
        )
        assert batch.layers["L3"].errors == [f"point: {NO_DATA_MESSAGE}"]
        assert batch.critical_gaps() == ["L3"]

    def test_base_and_override_samples_distinguishable(self):
        layer = LayerDescriptor("N", "Noise", LayerCategory.NOISE, ValueKind.NUMERIC, unit="dB")
        policy = GradingPolicy(
            "N", frozenset({SamplingMethod.MAX}), "quick", priority=1, critical=True,
            overrides=(ScaleOverride(SamplingMethod.MAX, "default", keep_base=True),),
        )
        table = PolicyTable([layer], [policy])

        batch = grade_location(
            LAT, LNG, policy_table=table,
            sampler=_sampler(LayerSource(values={"N": 55.0})), max_workers=2,
        )
        result = batch.layers["N"]
        assert result.max_area_sample.radius_meters == 500
        assert result.preview_samples["max"].radius_meters == 250

        no_previews = grade_location(
            LAT, LNG, policy_table=table,
            sampler=_sampler(LayerSource(values={"N": 55.0})), max_workers=2,
            keep_previews=False,
        )
        assert no_previews.layers["N"].max_area_sample.radius_meters == 500
        assert no_previews.layers["N"].preview_samples == {}

    def test_layer_subset(self, three_layer_table):
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table,
            sampler=_sampler(LayerSource()), layer_ids=["L3"],
        )
        assert list(batch.layers) == ["L3"]
        assert batch.tasks_total == 1

    def test_cancel_before_start_resolves_every_task(self, three_layer_table):
        cancel = threading.Event()
        cancel.set()
        source = LayerSource()
        events = []
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table, sampler=_sampler(source),
            cancel_event=cancel, on_progress=events.append,
        )
        assert source.reads == {}
        assert batch.cancelled is True
        assert batch.is_done()
        assert len(events) == 3
        assert batch.layers["L3"].errors == [f"point: {CANCELLED_MESSAGE}"]
        assert batch.layers["L1"].errors == [f"max (quick): {CANCELLED_MESSAGE}"]

    def test_cancel_mid_run_keeps_finished_samples(self, three_layer_table):
        cancel = threading.Event()

        def _cancel_on_l2(layer):
            if layer.layer_id == "L2":
                cancel.set()

        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table,
            sampler=_sampler(LayerSource(on_read=_cancel_on_l2)),
            max_workers=1, cancel_event=cancel,
        )
        assert batch.cancelled is True
        assert batch.layers["L1"].max_area_sample.value == 62.0
        assert batch.layers["L3"].point_sample.value == "category-B"
        assert batch.layers["L2"].errors == [f"average (default): {CANCELLED_MESSAGE}"]

    def test_batch_is_frozen_after_run(self, three_layer_table):
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table, sampler=_sampler(LayerSource()),
        )
        assert batch.frozen
        with pytest.raises(RuntimeError):
            batch.record_error("L1", 0, "late")

    def test_progress_callback_errors_are_ignored(self, three_layer_table):
        def _boom(progress):
            raise RuntimeError("display went away")

        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table,
            sampler=_sampler(LayerSource()), on_progress=_boom,
        )
        assert batch.is_done()

    def test_trace_records_every_task(self, three_layer_table):
        trace = TraceContext(trace_id="t-1")
        set_trace(trace)
        try:
            grade_location(
                LAT, LNG, policy_table=three_layer_table,
                sampler=_sampler(LayerSource(fail_layers={"L3"})),
            )
        finally:
            clear_trace()
        outcomes = {t.task_label: t.outcome for t in trace.tasks}
        assert outcomes == {
            "L1:max@quick": "ok",
            "L3:point": "error",
            "L2:average@default": "ok",
        }


class TestValidation:
    def test_out_of_range_coordinate(self, three_layer_table):
        with pytest.raises(ValueError):
            grade_location(91.0, LNG, policy_table=three_layer_table, sampler=_sampler(LayerSource()))
        with pytest.raises(ValueError):
            grade_location(LAT, -181.0, policy_table=three_layer_table, sampler=_sampler(LayerSource()))

    def test_unknown_layer_ids(self, three_layer_table):
        with pytest.raises(LayerNotFoundError):
            grade_location(
                LAT, LNG, policy_table=three_layer_table,
                sampler=_sampler(LayerSource()), layer_ids=["nope"],
            )

    def test_unknown_scale_ceiling(self, three_layer_table):
        with pytest.raises(InvalidConfigurationError):
            grade_location(
                LAT, LNG, policy_table=three_layer_table,
                sampler=_sampler(LayerSource()), scale_ceiling="huge",
            )


class TestFormatBatch:
    def test_report_groups_by_category(self, three_layer_table):
        batch = grade_location(
            LAT, LNG, policy_table=three_layer_table,
            sampler=_sampler(LayerSource(fail_layers={"L2"})),
        )
        report = format_batch(batch, three_layer_table)
        assert "62.0 dB" in report
        assert "category-B" in report
        assert "not analyzed" in report
        assert "2/3 layers graded, 1 failed" in report
