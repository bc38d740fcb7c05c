"""
Atypical roof topology detection.

Each registered topology pairs image-feature keywords with geometry
predicates. The match score is advisory: it recommends a downstream pipeline
and may contradict the numeric confidence score.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from app.models.geometry import GeoPoint
from app.models.measurement import EdgeCaseDetection, PatternMatch, Pipeline
from app.services.geo_utils import centroid, shoelace_area, to_local_meters

logger = logging.getLogger(__name__)


@dataclass
class RoofGeometrySummary:
    facet_count: int
    ridge_count: int = 0
    hip_count: int = 0
    valley_count: int = 0
    # rise per 12 run
    pitches: Sequence[float] = ()
    height_levels: int = 1
    footprint: Sequence[GeoPoint] = ()
    ridges: Sequence[Tuple[GeoPoint, GeoPoint]] = ()
    valleys: Sequence[Tuple[GeoPoint, GeoPoint]] = ()
    facet_vertex_counts: Sequence[int] = ()
    # (section center, height in meters) for elevation-aware predicates
    sections: Sequence[Tuple[GeoPoint, float]] = ()


@dataclass
class ImageAnalysis:
    detected_shapes: List[str] = field(default_factory=list)
    shadow_patterns: List[str] = field(default_factory=list)
    color_variations: List[str] = field(default_factory=list)
    texture_patterns: List[str] = field(default_factory=list)


GeometryTest = Callable[[RoofGeometrySummary], bool]


@dataclass(frozen=True)
class EdgeCasePattern:
    name: str
    description: str
    indicators: Tuple[str, ...]
    tests: Tuple[Tuple[str, GeometryTest], ...]
    handling: Tuple[str, ...]


def count_height_levels(heights: Sequence[float], gap_m: float = 1.5) -> int:
    """Number of height clusters, splitting wherever sorted heights jump by more than `gap_m`."""
    values = sorted(h for h in heights if h is not None and math.isfinite(h))
    if not values:
        return 1
    levels = 1
    for prev, cur in zip(values, values[1:]):
        if cur - prev > gap_m:
            levels += 1
    return levels


def _footprint_frame(g: RoofGeometrySummary):
    """Footprint centroid and characteristic size (sqrt of area, meters), or None."""
    if len(g.footprint) < 3:
        return None
    center = centroid(g.footprint)
    xy = to_local_meters(g.footprint, origin=center)
    size = math.sqrt(abs(shoelace_area(xy)))
    if size <= 0:
        return None
    return center, size


def _near_center(point: GeoPoint, g: RoofGeometrySummary, fraction: float = 0.25) -> Optional[bool]:
    frame = _footprint_frame(g)
    if frame is None:
        return None
    center, size = frame
    offset = to_local_meters([point], origin=center)[0]
    return math.hypot(offset[0], offset[1]) <= fraction * size


def has_dual_pitch_pattern(g: RoofGeometrySummary) -> bool:
    unique = set(g.pitches)
    return len(unique) >= 2 and max(unique) - min(unique) >= 4


def has_perimeter_steep_slopes(g: RoofGeometrySummary) -> bool:
    return any(p >= 12 for p in g.pitches) and any(p <= 4 for p in g.pitches)


def has_triangular_facet_pattern(g: RoofGeometrySummary) -> bool:
    if g.facet_vertex_counts:
        triangles = sum(1 for n in g.facet_vertex_counts if n == 3)
        return triangles / len(g.facet_vertex_counts) >= 0.5
    return g.facet_count >= 20


def is_center_valley(g: RoofGeometrySummary) -> bool:
    if g.valley_count != 1:
        return False
    if not g.valleys:
        return True
    a, b = g.valleys[0]
    mid = GeoPoint((a.lat + b.lat) / 2.0, (a.lng + b.lng) / 2.0)
    near = _near_center(mid, g)
    return True if near is None else near


def has_disconnected_sections(g: RoofGeometrySummary) -> bool:
    return g.height_levels >= 2


def has_conical_section(g: RoofGeometrySummary) -> bool:
    return g.facet_count >= 6


def has_circular_footprint(g: RoofGeometrySummary, max_cv: float = 0.2) -> bool:
    """At least 8 vertices at a near-constant distance from the centroid."""
    if len(g.footprint) < 8:
        return False
    xy = to_local_meters(g.footprint)
    radii = np.hypot(xy[:, 0], xy[:, 1])
    mean = float(radii.mean())
    if mean <= 0:
        return False
    return float(radii.std()) / mean < max_cv


def has_repeating_ridge_pattern(g: RoofGeometrySummary) -> bool:
    return g.ridge_count >= 3


def are_ridges_parallel(g: RoofGeometrySummary, tolerance_deg: float = 10.0) -> bool:
    if len(g.ridges) < 2:
        return False
    points = [p for r in g.ridges for p in r]
    xy = to_local_meters(points)
    angles = []
    for i in range(len(g.ridges)):
        dx, dy = xy[2 * i + 1] - xy[2 * i]
        if math.hypot(dx, dy) == 0:
            continue
        angles.append(math.degrees(math.atan2(dy, dx)) % 180.0)
    if len(angles) < 2:
        return False
    ref = angles[0]
    for a in angles[1:]:
        diff = abs(a - ref) % 180.0
        if min(diff, 180.0 - diff) > tolerance_deg:
            return False
    return True


def has_center_elevation(g: RoofGeometrySummary) -> bool:
    if len(g.sections) < 2:
        return g.height_levels >= 2
    top_center, _ = max(g.sections, key=lambda s: s[1])
    near = _near_center(top_center, g)
    return g.height_levels >= 2 if near is None else near


EDGE_CASE_PATTERNS: Dict[str, EdgeCasePattern] = {p.name: p for p in [
    EdgeCasePattern(
        name="gambrel",
        description="Gambrel roof with two different slopes per side",
        indicators=("barn_style", "dual_slope_per_side", "steep_lower_shallow_upper"),
        tests=(
            ("even_facet_count", lambda g: g.facet_count >= 4 and g.facet_count % 2 == 0),
            ("dual_pitch", has_dual_pitch_pattern),
        ),
        handling=("Calculate each slope section separately", "Use dual pitch factor",
                  "Verify knee wall transition point"),
    ),
    EdgeCasePattern(
        name="mansard",
        description="Mansard roof with steep perimeter and flat/low center",
        indicators=("four_sided_double_slope", "steep_sides_flat_top", "french_style"),
        tests=(
            ("many_facets", lambda g: g.facet_count >= 8),
            ("perimeter_steep_slopes", has_perimeter_steep_slopes),
        ),
        handling=("Identify steep wall sections vs flat top", "Calculate each section with appropriate pitch",
                  "Check for dormers on steep sections"),
    ),
    EdgeCasePattern(
        name="geodesic_dome",
        description="Geodesic dome with triangular facet pattern",
        indicators=("triangular_facets", "curved_appearance", "buckminster_style"),
        tests=(
            ("twenty_plus_facets", lambda g: g.facet_count >= 20),
            ("triangular_facets", has_triangular_facet_pattern),
        ),
        handling=("Standard ridge/hip analysis does not apply",
                  "Calculate surface area from sphere approximation",
                  "Require manual verification of facet count"),
    ),
    EdgeCasePattern(
        name="butterfly",
        description="Butterfly roof with center valley drainage",
        indicators=("inward_sloping", "center_valley", "v_shape"),
        tests=(
            ("center_valley", is_center_valley),
            ("two_facets", lambda g: g.facet_count == 2),
        ),
        handling=("Unusual drainage - verify gutter capacity", "Valley at center, not perimeter",
                  "May require special waterproofing"),
    ),
    EdgeCasePattern(
        name="multi_level_complex",
        description="Multi-level complex with separate roof sections",
        indicators=("multiple_heights", "step_flashing", "addition_visible"),
        tests=(
            ("three_plus_levels", lambda g: g.height_levels >= 3),
            ("disconnected_sections", has_disconnected_sections),
        ),
        handling=("Analyze each section independently", "Calculate step flashing at transitions",
                  "Sum areas with appropriate connections"),
    ),
    EdgeCasePattern(
        name="turret_tower",
        description="Turret or tower with conical/polygonal top",
        indicators=("conical_section", "polygonal_tower", "castle_style"),
        tests=(
            ("conical_section", has_conical_section),
            ("circular_footprint", lambda g: g.facet_count > 6 and has_circular_footprint(g)),
        ),
        handling=("Separate from main roof calculation", "Use cone/pyramid area formula",
                  "Special flashing at base junction"),
    ),
    EdgeCasePattern(
        name="sawtooth",
        description="Sawtooth industrial roof with repeating peaks",
        indicators=("repeating_pattern", "industrial_skylights", "factory_roof"),
        tests=(
            ("repeating_ridges", has_repeating_ridge_pattern),
            ("parallel_ridges", lambda g: g.ridge_count >= 3 and are_ridges_parallel(g)),
        ),
        handling=("Identify pattern repeat unit", "Calculate one section and multiply",
                  "Account for glazing areas"),
    ),
    EdgeCasePattern(
        name="clerestory",
        description="Clerestory with raised center section for windows",
        indicators=("raised_center_section", "high_windows", "split_level_ridge"),
        tests=(
            ("raised_center", lambda g: g.height_levels == 2 and has_center_elevation(g)),
        ),
        handling=("Calculate lower and upper sections", "Measure vertical wall transition",
                  "Include window headers in material calc"),
    ),
]}


EDGE_CASE_INSTRUCTIONS: Dict[str, Dict[str, object]] = {
    "gambrel": {
        "calculation_method": "Split each side into upper and lower sections. Apply separate pitch factors to each.",
        "verification_steps": [
            "Identify transition line between upper and lower slopes",
            "Measure width of each section",
            "Apply 4/12 to upper section, 12/12 to lower section (typical)",
            "Sum areas with their respective pitch multipliers",
        ],
        "common_errors": [
            "Using single averaged pitch instead of dual calculation",
            "Missing the knee wall transition line",
            "Incorrect facet count (should be 4 or 6, not 2)",
        ],
    },
    "mansard": {
        "calculation_method": "Calculate steep perimeter walls separately from flat/low-slope top.",
        "verification_steps": [
            "Identify steep wall sections (typically 70 degrees+ or 18/12+)",
            "Measure perimeter length and wall height",
            "Calculate flat top area separately",
            "Check for dormers requiring additional calculation",
        ],
        "common_errors": [
            "Treating as simple hip roof",
            "Missing dormers in wall sections",
            "Incorrect steep section pitch estimation",
        ],
    },
    "geodesic_dome": {
        "calculation_method": "Use spherical cap surface area: A = 2 * pi * r * h",
        "verification_steps": [
            "Estimate dome diameter from footprint",
            "Estimate dome height from imagery",
            "Calculate surface area using sphere segment formula",
            "Verify with approximate triangle count",
        ],
        "common_errors": [
            "Applying standard roof calculations to curved surface",
            "Incorrect height estimation",
            "Using flat footprint area instead of curved surface",
        ],
    },
    "multi_level_complex": {
        "calculation_method": "Identify each separate roof section and calculate independently, then sum.",
        "verification_steps": [
            "Count distinct roof levels/sections",
            "Draw boundary for each section",
            "Calculate each with appropriate pitch",
            "Add step flashing linear footage",
        ],
        "common_errors": [
            "Missing a hidden or lower section",
            "Double-counting overlap areas",
            "Incorrect step flashing measurement",
        ],
    },
}

_GENERIC_INSTRUCTIONS = {
    "calculation_method": "Requires specialized analysis - manual review recommended",
    "verification_steps": ["Review satellite imagery carefully", "Consider requesting ground photos"],
    "common_errors": ["Applying standard calculations to non-standard roof type"],
}


def get_edge_case_instructions(pattern: str) -> Dict[str, object]:
    return dict(EDGE_CASE_INSTRUCTIONS.get(pattern, _GENERIC_INSTRUCTIONS))


def analyze_image_for_edge_cases(analysis: ImageAnalysis) -> List[str]:
    """Translate raw visual observations into indicator keywords."""
    indicators: List[str] = []
    shadows = set(analysis.shadow_patterns)
    shapes = set(analysis.detected_shapes)
    if {"dual_angle_shadow", "knee_wall_shadow"} & shadows:
        indicators.append("dual_slope_per_side")
    if "circular" in shapes and "triangular_grid" in analysis.texture_patterns:
        indicators.extend(["triangular_facets", "curved_appearance"])
    if "repeating_triangular" in shadows or "parallel_ridges" in shapes:
        indicators.extend(["repeating_pattern", "industrial_skylights"])
    if "multiple_shadow_heights" in shadows or "distinct_roof_sections" in analysis.color_variations:
        indicators.extend(["multiple_heights", "step_flashing"])
    return list(dict.fromkeys(indicators))


class EdgeCaseClassifier:
    def __init__(self, patterns: Optional[Dict[str, EdgeCasePattern]] = None):
        self.patterns = patterns or EDGE_CASE_PATTERNS
        self.detection_threshold = 50.0
        self.specialized_threshold = 60.0
        self.strong_threshold = 80.0
        self.indicator_points = 20.0
        self.test_points = 30.0

    def score(self, pattern: EdgeCasePattern, geometry: RoofGeometrySummary,
              image_features: Optional[Sequence[str]] = None) -> PatternMatch:
        match_score = 0.0
        total_tests = 0
        matched: List[str] = []
        if image_features is not None:
            lowered = [f.lower() for f in image_features]
            matched = [ind for ind in pattern.indicators if any(ind in f for f in lowered)]
            match_score += self.indicator_points * len(matched)
            total_tests += len(pattern.indicators)

        passed: List[str] = []
        for name, test in pattern.tests:
            try:
                ok = bool(test(geometry))
            except (ValueError, ZeroDivisionError, IndexError) as exc:
                logger.debug(f"Geometry test {pattern.name}.{name} failed: {exc}")
                ok = False
            if ok:
                passed.append(name)
        match_score += self.test_points * len(passed)
        total_tests += len(pattern.tests)

        # every geometry test passing, with no indicators, scores 60
        confidence = min(100.0, match_score / (total_tests * 0.5)) if total_tests else 0.0
        return PatternMatch(
            pattern=pattern.name,
            confidence=confidence,
            matched_indicators=tuple(matched),
            passed_tests=tuple(passed),
            handling_notes="; ".join(pattern.handling),
        )

    def classify(self, geometry: RoofGeometrySummary,
                 image_features: Optional[Sequence[str]] = None) -> EdgeCaseDetection:
        detected: List[PatternMatch] = []
        instructions: List[str] = []
        for pattern in self.patterns.values():
            match = self.score(pattern, geometry, image_features)
            if match.confidence >= self.detection_threshold:
                detected.append(match)
                instructions.extend(pattern.handling)

        pipeline = Pipeline.STANDARD
        adjustment = 0.0
        if detected:
            best = max(m.confidence for m in detected)
            if best >= self.strong_threshold:
                pipeline, adjustment = Pipeline.SPECIALIZED, -20.0
            elif best >= self.specialized_threshold:
                pipeline, adjustment = Pipeline.SPECIALIZED, -10.0
            else:
                adjustment = -5.0
            if len(detected) >= 2:
                pipeline, adjustment = Pipeline.MANUAL, -30.0
            logger.info(
                f"Edge cases detected: {[m.pattern for m in detected]} -> {pipeline.value} pipeline"
            )

        return EdgeCaseDetection(
            is_edge_case=bool(detected),
            detected_patterns=tuple(detected),
            recommended_pipeline=pipeline,
            confidence_adjustment=adjustment,
            special_instructions=tuple(dict.fromkeys(instructions)),
        )
