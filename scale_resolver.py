"""
Scale resolution: (layer, method) -> concrete ScaleProfiles.

A policy's base scale applies to every declared method unless an override
names that method.  An override replaces the base scale, or with
keep_base=True is graded alongside it (road-traffic noise: a quick 250 m
preview plus the authoritative 500 m reading).  The orchestrator creates
one task per returned profile.
"""

from typing import List, Optional

from grading_errors import InvalidConfigurationError
from layer_config import (
    PolicyTable,
    SamplingMethod,
    ScaleProfile,
    scale_rank,
)


def resolve_scales(
    policy_table: PolicyTable,
    layer_id: str,
    method: SamplingMethod,
    scale_ceiling: Optional[str] = None,
) -> List[ScaleProfile]:
    """Return the profiles to grade *method* on *layer_id* at.

    Profiles come back ordered by ascending radius with duplicates removed.
    When *scale_ceiling* is given, any profile ranked above it is clamped
    down to the ceiling, which can collapse two scales into one.

    Raises LayerNotFoundError for unknown layers and InvalidConfigurationError
    when *method* is not declared by the layer's policy.
    """
    policy = policy_table.get_policy(layer_id)
    if not policy.declares(method):
        raise InvalidConfigurationError(
            f"Layer {layer_id!r} does not declare method {method.value!r}"
        )

    names: List[str] = [policy.base_scale]
    for override in policy.overrides:
        if override.method != method:
            continue
        names = [policy.base_scale, override.scale] if override.keep_base else [override.scale]
        break

    if scale_ceiling is not None:
        ceiling_rank = scale_rank(scale_ceiling)
        names = [
            scale_ceiling if scale_rank(name) > ceiling_rank else name
            for name in names
        ]

    profiles: List[ScaleProfile] = []
    seen = set()
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        profiles.append(policy_table.get_scale(name))

    profiles.sort(key=lambda p: (p.radius_meters, scale_rank(p.name)))
    return profiles


def canonical_scale(
    policy_table: PolicyTable,
    layer_id: str,
    method: SamplingMethod,
    scale_ceiling: Optional[str] = None,
) -> ScaleProfile:
    """The profile whose sample is persisted in the method's slot (widest radius)."""
    return resolve_scales(policy_table, layer_id, method, scale_ceiling)[-1]
