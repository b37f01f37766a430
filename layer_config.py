"""
Layer catalog and grading policy configuration for SiteGrade.

Owns every static parameter that decides how a raster layer is graded:
which layers exist, which sampling methods apply to each, at which
spatial scale, in which order, and which layers gate reporting.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  The module-level
GRADING_POLICY_TABLE is validated when this module is imported, so an
inconsistent table fails at startup, never in the middle of a batch.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from grading_errors import InvalidConfigurationError, LayerNotFoundError


# =============================================================================
# Enums
# =============================================================================

class LayerCategory(str, Enum):
    AIR_QUALITY = "airQuality"
    NOISE = "noise"
    CLIMATE = "climate"
    NATURE = "nature"
    HISTORICAL = "historical"
    SOIL = "soil"
    TOPOGRAPHY = "topography"


class ValueKind(str, Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    MIXED = "mixed"


class SamplingMethod(str, Enum):
    POINT = "point"
    AVERAGE = "average"
    MAX = "max"


# Canonical method order used when expanding a policy into tasks.
METHOD_ORDER: Tuple[SamplingMethod, ...] = (
    SamplingMethod.POINT,
    SamplingMethod.AVERAGE,
    SamplingMethod.MAX,
)

AREA_METHODS: FrozenSet[SamplingMethod] = frozenset(
    {SamplingMethod.AVERAGE, SamplingMethod.MAX}
)

CATEGORY_LABELS: Dict[LayerCategory, str] = {
    LayerCategory.AIR_QUALITY: "Air Quality",
    LayerCategory.NOISE: "Noise",
    LayerCategory.CLIMATE: "Climate & Heat",
    LayerCategory.NATURE: "Nature & Greenery",
    LayerCategory.HISTORICAL: "Historical",
    LayerCategory.SOIL: "Soil & Archaeology",
    LayerCategory.TOPOGRAPHY: "Topography & Buildings",
}


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class ScaleProfile:
    """Cost/precision bundle for an area sample.

    nominal_seconds is the planning cost of one area task at this scale,
    used for ETAs and per-task timeout ceilings.
    """
    name: str                     # "quick" | "default" | "detailed"
    radius_meters: int
    grid_resolution_meters: int
    max_samples: int
    nominal_seconds: float
    description: str = ""


@dataclass(frozen=True)
class LayerDescriptor:
    """One samplable raster layer."""
    layer_id: str
    display_name: str
    category: LayerCategory
    value_kind: ValueKind
    unit: Optional[str] = None
    service_url: str = ""         # raster service endpoint (opaque to the engine)
    service_layer: str = ""       # layer name on that service


@dataclass(frozen=True)
class ScaleOverride:
    """Per-method scale that replaces (or, with keep_base, joins) the base scale."""
    method: SamplingMethod
    scale: str
    keep_base: bool = False


@dataclass(frozen=True)
class GradingPolicy:
    """How one layer is graded.  Exactly one policy per layer."""
    layer_id: str
    methods: FrozenSet[SamplingMethod]
    base_scale: str
    priority: int                 # lower runs first
    critical: bool
    overrides: Tuple[ScaleOverride, ...] = ()

    def declares(self, method: SamplingMethod) -> bool:
        return method in self.methods

    def ordered_methods(self) -> List[SamplingMethod]:
        return [m for m in METHOD_ORDER if m in self.methods]


# =============================================================================
# Scale profiles
# =============================================================================

SCALE_ORDER: Tuple[str, ...] = ("quick", "default", "detailed")

# Nominal area-task costs track the observed grading times per scale
# (quick ~2 s, default ~10 s at 400 cells, detailed ~130 s at 1600 cells).
SCALE_PROFILES: Dict[str, ScaleProfile] = {
    "quick": ScaleProfile(
        name="quick",
        radius_meters=250,
        grid_resolution_meters=100,
        max_samples=25,
        nominal_seconds=2.0,
        description="Quick scan (250m radius, ~25 samples)",
    ),
    "default": ScaleProfile(
        name="default",
        radius_meters=500,
        grid_resolution_meters=50,
        max_samples=400,
        nominal_seconds=10.0,
        description="Standard scan (500m radius, ~100-400 samples)",
    ),
    "detailed": ScaleProfile(
        name="detailed",
        radius_meters=1000,
        grid_resolution_meters=25,
        max_samples=1600,
        nominal_seconds=130.0,
        description="Detailed scan (1000m radius, ~1300-1600 samples)",
    ),
}

# Point reads are a single request regardless of scale.
POINT_NOMINAL_SECONDS = 1.0


def scale_rank(scale_name: str) -> int:
    """Position of a scale in SCALE_ORDER (quick=0).  Raises on unknown names."""
    try:
        return SCALE_ORDER.index(scale_name)
    except ValueError:
        raise InvalidConfigurationError(f"Unknown scale {scale_name!r}") from None


# =============================================================================
# Policy table
# =============================================================================

class PolicyTable:
    """Immutable, validated registry of layers and their grading policies.

    Construction fails fast with InvalidConfigurationError; once built the
    table is read-only and safe to share across threads.
    """

    def __init__(
        self,
        layers: Sequence[LayerDescriptor],
        policies: Sequence[GradingPolicy],
        scales: Optional[Mapping[str, ScaleProfile]] = None,
    ):
        self._scales: Dict[str, ScaleProfile] = dict(scales if scales is not None else SCALE_PROFILES)
        self._layers: Dict[str, LayerDescriptor] = {}
        self._policies: Dict[str, GradingPolicy] = {}
        self._declaration_index: Dict[str, int] = {}

        for layer in layers:
            if layer.layer_id in self._layers:
                raise InvalidConfigurationError(
                    f"Duplicate layer descriptor {layer.layer_id!r}"
                )
            self._layers[layer.layer_id] = layer

        for index, policy in enumerate(policies):
            if policy.layer_id in self._policies:
                raise InvalidConfigurationError(
                    f"Duplicate grading policy for {policy.layer_id!r}"
                )
            self._policies[policy.layer_id] = policy
            self._declaration_index[policy.layer_id] = index

        self._validate()

        self._by_priority: Tuple[GradingPolicy, ...] = tuple(
            sorted(self._policies.values(), key=self._priority_key)
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        for name, profile in self._scales.items():
            if name != profile.name:
                raise InvalidConfigurationError(
                    f"Scale key {name!r} does not match profile name {profile.name!r}"
                )
            if profile.radius_meters <= 0 or profile.grid_resolution_meters <= 0:
                raise InvalidConfigurationError(f"Scale {name!r} must have positive dimensions")
            if profile.max_samples < 1:
                raise InvalidConfigurationError(f"Scale {name!r} must allow at least one sample")

        missing_policy = set(self._layers) - set(self._policies)
        if missing_policy:
            raise InvalidConfigurationError(
                f"Layers without a grading policy: {sorted(missing_policy)}"
            )

        for layer_id, policy in self._policies.items():
            layer = self._layers.get(layer_id)
            if layer is None:
                raise InvalidConfigurationError(
                    f"Grading policy for unknown layer {layer_id!r}"
                )
            if not policy.methods:
                raise InvalidConfigurationError(
                    f"Layer {layer_id!r} declares no sampling methods"
                )
            for method in policy.methods:
                if not isinstance(method, SamplingMethod):
                    raise InvalidConfigurationError(
                        f"Layer {layer_id!r} declares unknown method {method!r}"
                    )
            if layer.value_kind == ValueKind.CATEGORICAL and policy.methods & AREA_METHODS:
                bad = sorted(m.value for m in policy.methods & AREA_METHODS)
                raise InvalidConfigurationError(
                    f"Layer {layer_id!r} is categorical; area methods {bad} cannot be aggregated"
                )
            if policy.base_scale not in self._scales:
                raise InvalidConfigurationError(
                    f"Layer {layer_id!r} uses unknown scale {policy.base_scale!r}"
                )
            seen_methods = set()
            for override in policy.overrides:
                if override.method not in policy.methods:
                    raise InvalidConfigurationError(
                        f"Layer {layer_id!r} overrides undeclared method {override.method.value!r}"
                    )
                if override.method in seen_methods:
                    raise InvalidConfigurationError(
                        f"Layer {layer_id!r} has more than one override for {override.method.value!r}"
                    )
                seen_methods.add(override.method)
                if override.scale not in self._scales:
                    raise InvalidConfigurationError(
                        f"Layer {layer_id!r} override uses unknown scale {override.scale!r}"
                    )

    def _priority_key(self, policy: GradingPolicy) -> Tuple[int, int, int]:
        # Critical first, then ascending priority, then declaration order.
        return (
            0 if policy.critical else 1,
            policy.priority,
            self._declaration_index[policy.layer_id],
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_policy(self, layer_id: str) -> GradingPolicy:
        try:
            return self._policies[layer_id]
        except KeyError:
            raise LayerNotFoundError(f"No grading policy for layer {layer_id!r}") from None

    def get_layer(self, layer_id: str) -> LayerDescriptor:
        try:
            return self._layers[layer_id]
        except KeyError:
            raise LayerNotFoundError(f"Unknown layer {layer_id!r}") from None

    def get_scale(self, scale_name: str) -> ScaleProfile:
        try:
            return self._scales[scale_name]
        except KeyError:
            raise InvalidConfigurationError(f"Unknown scale {scale_name!r}") from None

    def list_by_priority(self) -> List[GradingPolicy]:
        return list(self._by_priority)

    def list_critical(self) -> List[GradingPolicy]:
        return [p for p in self._by_priority if p.critical]

    def layers(self) -> List[LayerDescriptor]:
        """Layer descriptors in declaration order."""
        return sorted(self._layers.values(), key=lambda d: self._declaration_index[d.layer_id])

    @property
    def scales(self) -> Dict[str, ScaleProfile]:
        return dict(self._scales)

    def subset(self, layer_ids: Iterable[str]) -> "PolicyTable":
        """Return a new table restricted to *layer_ids* (declaration order kept)."""
        wanted = list(dict.fromkeys(layer_ids))
        unknown = [lid for lid in wanted if lid not in self._policies]
        if unknown:
            raise LayerNotFoundError(f"Unknown layer ids: {unknown}")
        keep = set(wanted)
        ordered = sorted(keep, key=lambda lid: self._declaration_index[lid])
        return PolicyTable(
            [self._layers[lid] for lid in ordered],
            [self._policies[lid] for lid in ordered],
            scales=self._scales,
        )

    def __contains__(self, layer_id: object) -> bool:
        return layer_id in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    def __iter__(self) -> Iterator[GradingPolicy]:
        return iter(self._by_priority)


# =============================================================================
# Layer catalog — current production layers
# =============================================================================

_RIVM_ALO = "https://data.rivm.nl/geo/alo/wms"
_RIVM_ANK = "https://data.rivm.nl/geo/ank/wms"
_PDOK_AHN = "https://service.pdok.nl/rws/ahn/wms/v1_0"

LAYER_CATALOG: Tuple[LayerDescriptor, ...] = (
    # --- Historical: only building age is graded ---
    LayerDescriptor(
        layer_id="rivm_pand_bouwjaar",
        display_name="Pand bouwjaar",
        category=LayerCategory.HISTORICAL,
        value_kind=ValueKind.NUMERIC,
        unit="jaar",
        service_url=_RIVM_ALO,
        service_layer="rivm_20181127_v_pand_bouwjaar",
    ),

    # --- Climate: heat islands (max) and cooling effect (average) ---
    LayerDescriptor(
        layer_id="stedelijk_hitte_eiland_effect",
        display_name="Stedelijk hitte eiland effect",
        category=LayerCategory.CLIMATE,
        value_kind=ValueKind.NUMERIC,
        unit="°C",
        service_url=_RIVM_ANK,
        service_layer="Stedelijk_hitte_eiland_effect_01062022_v2",
    ),
    LayerDescriptor(
        layer_id="rivm_dalingUHImaxmediaan",
        display_name="Dalingskaart UHI",
        category=LayerCategory.CLIMATE,
        value_kind=ValueKind.NUMERIC,
        unit="°C",
        service_url=_RIVM_ANK,
        service_layer="rivm_r59_gm_dalingUHImaxmediaan",
    ),
    LayerDescriptor(
        layer_id="verkoelend_effect_groen",
        display_name="Verkoelend effect groen",
        category=LayerCategory.CLIMATE,
        value_kind=ValueKind.NUMERIC,
        unit="°C",
        service_url=_RIVM_ANK,
        service_layer="Verkoelend_effect_van_groen_bevolkingskern_01062022",
    ),

    # --- Air quality: worst-case exposure ---
    LayerDescriptor(
        layer_id="mgr_tot_2020",
        display_name="MGR Milieugezondheidsrisico",
        category=LayerCategory.AIR_QUALITY,
        value_kind=ValueKind.NUMERIC,
        unit="%",
        service_url=_RIVM_ALO,
        service_layer="mgr_tot_2020_07122022",
    ),
    LayerDescriptor(
        layer_id="rivm_nsl_ec2021",
        display_name="Roet (EC)",
        category=LayerCategory.AIR_QUALITY,
        value_kind=ValueKind.NUMERIC,
        unit="µg EC/m³",
        service_url=_RIVM_ALO,
        service_layer="rivm_nsl_20230101_gm_EC2021",
    ),
    LayerDescriptor(
        layer_id="rivm_nsl_pm25_2021",
        display_name="Fijn stof PM2.5",
        category=LayerCategory.AIR_QUALITY,
        value_kind=ValueKind.NUMERIC,
        unit="µg PM2.5/m³",
        service_url=_RIVM_ALO,
        service_layer="rivm_nsl_20230101_gm_PM252021",
    ),
    LayerDescriptor(
        layer_id="rivm_nsl_pm10_2021",
        display_name="Fijn stof PM10",
        category=LayerCategory.AIR_QUALITY,
        value_kind=ValueKind.NUMERIC,
        unit="µg PM10/m³",
        service_url=_RIVM_ALO,
        service_layer="rivm_nsl_20230101_gm_PM102021",
    ),
    LayerDescriptor(
        layer_id="rivm_nsl_no2_2021",
        display_name="Stikstofdioxide (NO2)",
        category=LayerCategory.AIR_QUALITY,
        value_kind=ValueKind.NUMERIC,
        unit="µg/m³",
        service_url=_RIVM_ALO,
        service_layer="rivm_nsl_20230101_gm_NO22021",
    ),

    # --- Nature: neighbourhood greenness (average) ---
    LayerDescriptor(
        layer_id="bomenkaart_v2",
        display_name="Bomenkaart",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="%",
        service_url=_RIVM_ANK,
        service_layer="20200629_gm_Bomenkaart_v2",
    ),
    LayerDescriptor(
        layer_id="graskaart_v2",
        display_name="Groenkaart",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="%",
        service_url=_RIVM_ANK,
        service_layer="20200629_gm_Graskaart_v2",
    ),
    LayerDescriptor(
        layer_id="struikenkaart_v2",
        display_name="Struikenkaart",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="%",
        service_url=_RIVM_ANK,
        service_layer="20200629_gm_Struikenkaart_v2",
    ),
    LayerDescriptor(
        layer_id="koolstof_opslag_biomassa",
        display_name="Koolstof opslag biomassa",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="ton C/dam²/jaar",
        service_url=_RIVM_ANK,
        service_layer="Actuele_koolstof_opslag_biomassa_01062022",
    ),
    LayerDescriptor(
        layer_id="teeb_afvang_pm10",
        display_name="Afvang PM10 door groen",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="ton PM10/dam²/jaar",
        service_url=_RIVM_ANK,
        service_layer="TEEB_Afvang_van_PM10_door_groen_01062022",
    ),
    LayerDescriptor(
        layer_id="rivm_percbomenbuurt",
        display_name="Percentage bomen in buurt",
        category=LayerCategory.NATURE,
        value_kind=ValueKind.NUMERIC,
        unit="%",
        service_url=_RIVM_ANK,
        service_layer="rivm_20190326_percbomenbuurt",
    ),

    # --- Noise: worst-case exposure (max) ---
    LayerDescriptor(
        layer_id="rivm_geluidkaart_lden_alle_bronnen",
        display_name="Geluid alle bronnen",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20210201_g_geluidkaart_lden_alle_bronnen_v3",
    ),
    LayerDescriptor(
        layer_id="rivm_geluid_lden_wegverkeer_2020",
        display_name="Geluid wegverkeer",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20220601_Geluid_lden_wegverkeer_2020",
    ),
    LayerDescriptor(
        layer_id="rivm_geluid_lnight_wegverkeer_2020",
        display_name="Geluid wegverkeer nacht",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20220601_Geluid_lnight_wegverkeer_2020",
    ),
    LayerDescriptor(
        layer_id="rivm_geluid_lden_treinverkeer_2020",
        display_name="Geluid treinverkeer",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20220601_Geluid_lden_treinverkeer_2020",
    ),
    LayerDescriptor(
        layer_id="rivm_geluid_lden_industrie_2008",
        display_name="Geluid industrie",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20220601_Geluid_lden_industrie_2008",
    ),
    LayerDescriptor(
        layer_id="geluid_lden_vliegverkeer_2020",
        display_name="Geluid vliegverkeer",
        category=LayerCategory.NOISE,
        value_kind=ValueKind.NUMERIC,
        unit="dB",
        service_url=_RIVM_ALO,
        service_layer="rivm_20220601_Geluid_lden_vliegverkeer_2020",
    ),

    # --- Soil & archaeology: categorical, point only ---
    LayerDescriptor(
        layer_id="rce_ikaw3_2008",
        display_name="Archeologische vindkans",
        category=LayerCategory.SOIL,
        value_kind=ValueKind.CATEGORICAL,
        service_url=_RIVM_ALO,
        service_layer="rce_ikaw3_2008",
    ),

    # --- Topography & buildings ---
    LayerDescriptor(
        layer_id="dtm_05m",
        display_name="Terrein hoogte (DTM)",
        category=LayerCategory.TOPOGRAPHY,
        value_kind=ValueKind.NUMERIC,
        unit="m",
        service_url=_PDOK_AHN,
        service_layer="dtm_05m",
    ),
    LayerDescriptor(
        layer_id="dsm_05m",
        display_name="Oppervlakte hoogte (DSM)",
        category=LayerCategory.TOPOGRAPHY,
        value_kind=ValueKind.NUMERIC,
        unit="m",
        service_url=_PDOK_AHN,
        service_layer="dsm_05m",
    ),
    LayerDescriptor(
        layer_id="vw_rvo_pand_energielabels",
        display_name="Energielabels panden",
        category=LayerCategory.TOPOGRAPHY,
        value_kind=ValueKind.CATEGORICAL,
        service_url=_RIVM_ALO,
        service_layer="vw_rvo_20200101_v_pand_energielabels",
    ),
)


_P = SamplingMethod.POINT
_AVG = SamplingMethod.AVERAGE
_MAX = SamplingMethod.MAX

GRADING_POLICIES: Tuple[GradingPolicy, ...] = (
    GradingPolicy("rivm_pand_bouwjaar", frozenset({_AVG}), "quick", priority=50, critical=False),

    GradingPolicy("stedelijk_hitte_eiland_effect", frozenset({_MAX}), "quick", priority=20, critical=True),
    GradingPolicy("rivm_dalingUHImaxmediaan", frozenset({_MAX}), "quick", priority=30, critical=False),
    GradingPolicy("verkoelend_effect_groen", frozenset({_AVG}), "quick", priority=30, critical=False),

    GradingPolicy("mgr_tot_2020", frozenset({_MAX}), "default", priority=5, critical=True),
    GradingPolicy("rivm_nsl_ec2021", frozenset({_MAX}), "default", priority=10, critical=True),
    GradingPolicy("rivm_nsl_pm25_2021", frozenset({_MAX}), "default", priority=8, critical=True),
    GradingPolicy("rivm_nsl_pm10_2021", frozenset({_MAX}), "default", priority=9, critical=True),
    GradingPolicy("rivm_nsl_no2_2021", frozenset({_MAX}), "default", priority=10, critical=True),

    GradingPolicy("bomenkaart_v2", frozenset({_AVG}), "default", priority=25, critical=True),
    GradingPolicy("graskaart_v2", frozenset({_AVG}), "default", priority=25, critical=False),
    GradingPolicy("struikenkaart_v2", frozenset({_AVG}), "default", priority=30, critical=False),
    GradingPolicy("koolstof_opslag_biomassa", frozenset({_AVG}), "default", priority=40, critical=False),
    GradingPolicy("teeb_afvang_pm10", frozenset({_AVG}), "default", priority=35, critical=False),
    GradingPolicy("rivm_percbomenbuurt", frozenset({_AVG}), "default", priority=25, critical=False),

    GradingPolicy("rivm_geluidkaart_lden_alle_bronnen", frozenset({_MAX}), "quick", priority=12, critical=True),
    # Road traffic is graded at both scales: quick as a fast preview,
    # default as the canonical reading.
    GradingPolicy(
        "rivm_geluid_lden_wegverkeer_2020",
        frozenset({_MAX}),
        "quick",
        priority=15,
        critical=True,
        overrides=(ScaleOverride(_MAX, "default", keep_base=True),),
    ),
    GradingPolicy("rivm_geluid_lnight_wegverkeer_2020", frozenset({_MAX}), "quick", priority=15, critical=True),
    GradingPolicy("rivm_geluid_lden_treinverkeer_2020", frozenset({_MAX}), "quick", priority=20, critical=False),
    GradingPolicy("rivm_geluid_lden_industrie_2008", frozenset({_MAX}), "default", priority=20, critical=False),
    GradingPolicy("geluid_lden_vliegverkeer_2020", frozenset({_MAX}), "default", priority=25, critical=False),

    GradingPolicy("rce_ikaw3_2008", frozenset({_P}), "default", priority=45, critical=False),

    GradingPolicy("dtm_05m", frozenset({_P, _AVG}), "default", priority=35, critical=False),
    GradingPolicy("dsm_05m", frozenset({_P, _AVG}), "default", priority=35, critical=False),
    # Energy labels are letter classes; only the building at the point is read.
    GradingPolicy("vw_rvo_pand_energielabels", frozenset({_P}), "default", priority=40, critical=False),
)


GRADING_POLICY_TABLE = PolicyTable(LAYER_CATALOG, GRADING_POLICIES)
