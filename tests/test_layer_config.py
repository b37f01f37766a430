"""Unit tests for layer_config.py — layer catalog and grading policy table.

Tests cover: load-time validation, priority ordering, lookups, subsets,
and the production table's invariants.
"""

import pytest

from grading_errors import InvalidConfigurationError, LayerNotFoundError
from layer_config import (
    AREA_METHODS,
    GRADING_POLICY_TABLE,
    SCALE_PROFILES,
    GradingPolicy,
    LayerCategory,
    LayerDescriptor,
    PolicyTable,
    SamplingMethod,
    ScaleOverride,
    ValueKind,
    scale_rank,
)

P = SamplingMethod.POINT
AVG = SamplingMethod.AVERAGE
MAX = SamplingMethod.MAX


def _layer(layer_id, kind=ValueKind.NUMERIC):
    return LayerDescriptor(layer_id, layer_id.title(), LayerCategory.NOISE, kind)


def _policy(layer_id, methods=(MAX,), scale="quick", priority=10, critical=False, overrides=()):
    return GradingPolicy(layer_id, frozenset(methods), scale, priority, critical, tuple(overrides))


# =========================================================================
# Validation at construction
# =========================================================================

class TestValidation:
    def test_categorical_area_method_rejected(self):
        for method in AREA_METHODS:
            with pytest.raises(InvalidConfigurationError, match="categorical"):
                PolicyTable(
                    [_layer("cat", ValueKind.CATEGORICAL)],
                    [_policy("cat", methods=(P, method))],
                )

    def test_categorical_point_allowed(self):
        table = PolicyTable(
            [_layer("cat", ValueKind.CATEGORICAL)],
            [_policy("cat", methods=(P,))],
        )
        assert "cat" in table

    def test_duplicate_layer_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="Duplicate layer"):
            PolicyTable([_layer("a"), _layer("a")], [_policy("a")])

    def test_duplicate_policy_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="Duplicate grading policy"):
            PolicyTable([_layer("a")], [_policy("a"), _policy("a")])

    def test_layer_without_policy_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="without a grading policy"):
            PolicyTable([_layer("a"), _layer("b")], [_policy("a")])

    def test_policy_without_layer_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="unknown layer"):
            PolicyTable([_layer("a")], [_policy("a"), _policy("ghost")])

    def test_empty_methods_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="no sampling methods"):
            PolicyTable([_layer("a")], [_policy("a", methods=())])

    def test_unknown_base_scale_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="unknown scale"):
            PolicyTable([_layer("a")], [_policy("a", scale="huge")])

    def test_override_for_undeclared_method_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="undeclared method"):
            PolicyTable(
                [_layer("a")],
                [_policy("a", methods=(MAX,), overrides=[ScaleOverride(AVG, "default")])],
            )

    def test_override_unknown_scale_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="override uses unknown scale"):
            PolicyTable(
                [_layer("a")],
                [_policy("a", overrides=[ScaleOverride(MAX, "huge")])],
            )

    def test_two_overrides_for_same_method_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="more than one override"):
            PolicyTable(
                [_layer("a")],
                [_policy("a", overrides=[
                    ScaleOverride(MAX, "default"),
                    ScaleOverride(MAX, "detailed"),
                ])],
            )

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            PolicyTable([_layer("a")], [_policy("a", methods=())])


# =========================================================================
# Ordering and lookups
# =========================================================================

class TestOrdering:
    def test_critical_first_then_priority_then_declaration(self):
        layers = [_layer(x) for x in ("a", "b", "c", "d")]
        policies = [
            _policy("a", priority=5),
            _policy("b", priority=50, critical=True),
            _policy("c", priority=5),
            _policy("d", priority=1, critical=True),
        ]
        table = PolicyTable(layers, policies)

        assert [p.layer_id for p in table.list_by_priority()] == ["d", "b", "a", "c"]
        assert [p.layer_id for p in table.list_critical()] == ["d", "b"]

    def test_ordered_methods_follow_canonical_order(self):
        policy = _policy("a", methods=(MAX, P, AVG))
        assert policy.ordered_methods() == [P, AVG, MAX]

    def test_scale_rank(self):
        assert scale_rank("quick") < scale_rank("default") < scale_rank("detailed")
        with pytest.raises(InvalidConfigurationError):
            scale_rank("huge")


class TestLookups:
    def test_get_policy_unknown_raises_key_error(self):
        with pytest.raises(KeyError):
            GRADING_POLICY_TABLE.get_policy("no-such-layer")
        with pytest.raises(LayerNotFoundError, match="no-such-layer"):
            GRADING_POLICY_TABLE.get_layer("no-such-layer")

    def test_subset_keeps_declaration_order(self, three_layer_table):
        sub = three_layer_table.subset(["L3", "L1"])
        assert len(sub) == 2
        assert [d.layer_id for d in sub.layers()] == ["L1", "L3"]

    def test_subset_rejects_unknown_ids(self, three_layer_table):
        with pytest.raises(LayerNotFoundError):
            three_layer_table.subset(["L1", "nope"])

    def test_scales_returns_copy(self, three_layer_table):
        scales = three_layer_table.scales
        scales.pop("quick")
        assert "quick" in three_layer_table.scales


# =========================================================================
# Production table
# =========================================================================

class TestProductionTable:
    def test_scale_profiles(self):
        assert (SCALE_PROFILES["quick"].radius_meters, SCALE_PROFILES["quick"].max_samples) == (250, 25)
        assert (SCALE_PROFILES["default"].radius_meters, SCALE_PROFILES["default"].max_samples) == (500, 400)
        assert (SCALE_PROFILES["detailed"].radius_meters, SCALE_PROFILES["detailed"].max_samples) == (1000, 1600)

    def test_no_categorical_layer_uses_area_methods(self):
        for layer in GRADING_POLICY_TABLE.layers():
            if layer.value_kind == ValueKind.CATEGORICAL:
                policy = GRADING_POLICY_TABLE.get_policy(layer.layer_id)
                assert not (policy.methods & AREA_METHODS), layer.layer_id

    def test_every_layer_has_a_service(self):
        for layer in GRADING_POLICY_TABLE.layers():
            assert layer.service_url.startswith("https://")
            assert layer.service_layer

    def test_road_traffic_noise_keeps_quick_and_default(self):
        policy = GRADING_POLICY_TABLE.get_policy("rivm_geluid_lden_wegverkeer_2020")
        assert policy.base_scale == "quick"
        assert policy.overrides == (ScaleOverride(MAX, "default", keep_base=True),)

    def test_critical_layers_come_first(self):
        ordered = GRADING_POLICY_TABLE.list_by_priority()
        flags = [p.critical for p in ordered]
        assert flags == sorted(flags, reverse=True)
        assert ordered[0].layer_id == "mgr_tot_2020"
