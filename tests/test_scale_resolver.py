"""Unit tests for scale_resolver.py."""

import pytest

from grading_errors import InvalidConfigurationError, LayerNotFoundError
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
from scale_resolver import canonical_scale, resolve_scales

MAX = SamplingMethod.MAX
AVG = SamplingMethod.AVERAGE


def _table(policy):
    layer = LayerDescriptor(policy.layer_id, "X", LayerCategory.NOISE, ValueKind.NUMERIC)
    return PolicyTable([layer], [policy])


class TestResolveScales:
    def test_base_scale_only(self):
        table = _table(GradingPolicy("x", frozenset({MAX}), "default", 1, False))
        assert [p.name for p in resolve_scales(table, "x", MAX)] == ["default"]

    def test_override_replaces_base(self):
        table = _table(GradingPolicy(
            "x", frozenset({MAX, AVG}), "quick", 1, False,
            overrides=(ScaleOverride(MAX, "detailed"),),
        ))
        assert [p.name for p in resolve_scales(table, "x", MAX)] == ["detailed"]
        # The other method still uses the base scale.
        assert [p.name for p in resolve_scales(table, "x", AVG)] == ["quick"]

    def test_keep_base_returns_both_ordered_by_radius(self):
        profiles = resolve_scales(GRADING_POLICY_TABLE, "rivm_geluid_lden_wegverkeer_2020", MAX)
        assert [p.name for p in profiles] == ["quick", "default"]
        assert [p.radius_meters for p in profiles] == [250, 500]

    def test_ceiling_clamps_and_deduplicates(self):
        profiles = resolve_scales(
            GRADING_POLICY_TABLE, "rivm_geluid_lden_wegverkeer_2020", MAX, scale_ceiling="quick",
        )
        assert [p.name for p in profiles] == ["quick"]

    def test_ceiling_above_scale_is_noop(self):
        profiles = resolve_scales(GRADING_POLICY_TABLE, "mgr_tot_2020", MAX, scale_ceiling="detailed")
        assert [p.name for p in profiles] == ["default"]

    def test_undeclared_method_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            resolve_scales(GRADING_POLICY_TABLE, "mgr_tot_2020", SamplingMethod.POINT)

    def test_unknown_layer_rejected(self):
        with pytest.raises(LayerNotFoundError):
            resolve_scales(GRADING_POLICY_TABLE, "nope", MAX)

    def test_unknown_ceiling_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            resolve_scales(GRADING_POLICY_TABLE, "mgr_tot_2020", MAX, scale_ceiling="huge")


class TestCanonicalScale:
    def test_widest_scale_is_canonical(self):
        scale = canonical_scale(GRADING_POLICY_TABLE, "rivm_geluid_lden_wegverkeer_2020", MAX)
        assert scale.name == "default"
