import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from app.models.geometry import Footprint, FootprintSource, FootprintValidation, GeoPoint
from app.models.sources import SourceGeometry
from app.services.errors import FootprintUnavailableError, FootprintValidationError
from app.services.geo_utils import (
    convex_hull,
    expand_polygon,
    geo_distance_ft,
    is_self_intersecting,
    polygon_area_sqft,
    polygon_perimeter_ft,
)
from app.services.polygon_simplifier import PolygonSimplifier

logger = logging.getLogger(__name__)


@dataclass
class FootprintResolution:
    footprint: Footprint
    warnings: List[str] = field(default_factory=list)


class FootprintResolver:
    """
    Picks the single authoritative footprint for a run.

    Order: manual override, building insight (acceptable quality), vision
    footprint, hull of vision facets. Automated footprints are simplified and
    expanded for eave overhang; every footprint is checked against the
    residential area envelope.
    """

    def __init__(self, overhang_ft: float = 2.0, min_area_sqft: float = 500.0,
                 max_area_sqft: float = 50000.0, simplify_tolerance_ft: float = 1.0,
                 snap_angles: bool = True, angle_threshold_deg: float = 10.0,
                 simplifier: Optional[PolygonSimplifier] = None):
        self.overhang_ft = overhang_ft
        self.min_area_sqft = min_area_sqft
        self.max_area_sqft = max_area_sqft
        self.simplify_tolerance_ft = simplify_tolerance_ft
        self.snap_angles = snap_angles
        self.angle_threshold_deg = angle_threshold_deg
        self.simplifier = simplifier or PolygonSimplifier()

        self.fused_confidence = 0.6
        self.vision_default_confidence = 0.7
        self.self_intersection_penalty = 0.8
        self.reference_disagreement = 0.25

    def resolve(self, manual: Optional[SourceGeometry] = None,
                insight: Optional[SourceGeometry] = None,
                vision: Optional[SourceGeometry] = None,
                reference_area_sqft: Optional[float] = None) -> FootprintResolution:
        if manual is not None and manual.footprint_candidate:
            logger.info("Using manual override footprint; automated resolution skipped")
            footprint = self._build(manual.footprint_candidate, 1.0, FootprintSource.MANUAL_OVERRIDE, None)
            return self._finalize(footprint)

        polygon, confidence, source = self._select(insight, vision)
        if polygon is None:
            raise FootprintUnavailableError(
                "No usable footprint from any source",
                errors=["manual override absent", "building insight unusable", "vision model returned no geometry"],
            )
        logger.info(f"Resolved footprint from {source.value} ({len(polygon)} vertices)")
        simplified = self.simplifier.simplify(
            polygon,
            tolerance_ft=self.simplify_tolerance_ft,
            snap_angles=self.snap_angles,
            angle_threshold_deg=self.angle_threshold_deg,
        )
        expanded = expand_polygon(simplified, self.overhang_ft)
        compare_to = reference_area_sqft if source != FootprintSource.BUILDING_INSIGHT_API else None
        return self._finalize(self._build(expanded, confidence, source, compare_to))

    def _select(self, insight: Optional[SourceGeometry], vision: Optional[SourceGeometry]
                ) -> Tuple[Optional[Sequence[GeoPoint]], float, FootprintSource]:
        if insight is not None and insight.footprint_candidate:
            return insight.footprint_candidate, insight.confidence or 0.75, FootprintSource.BUILDING_INSIGHT_API
        if vision is not None:
            conf = vision.confidence if vision.confidence is not None else self.vision_default_confidence
            if vision.footprint_candidate:
                return vision.footprint_candidate, conf, FootprintSource.VISION_MODEL
            vertices = [p for facet in vision.facets for p in facet.polygon]
            hull = convex_hull(vertices)
            if len(hull) >= 3:
                return hull, min(conf, self.fused_confidence), FootprintSource.FUSED
        return None, 0.0, FootprintSource.FUSED

    def _build(self, polygon: Sequence[GeoPoint], confidence: float, source: FootprintSource,
               reference_area_sqft: Optional[float]) -> Footprint:
        polygon = tuple(polygon)
        area = polygon_area_sqft(polygon)
        perimeter = polygon_perimeter_ft(polygon)
        validation = self.validate(polygon, area, reference_area_sqft)
        if any("self-intersect" in w for w in validation.warnings):
            confidence *= self.self_intersection_penalty
        return Footprint(
            polygon=polygon,
            area_sqft=area,
            perimeter_ft=perimeter,
            confidence=confidence,
            source=source,
            validation=validation,
        )

    def validate(self, polygon: Sequence[GeoPoint], area_sqft: float,
                 reference_area_sqft: Optional[float] = None) -> FootprintValidation:
        errors: List[str] = []
        warnings: List[str] = []
        n = len(polygon)
        if n < 3:
            errors.append(f"Footprint has {n} vertices; at least 3 required")
        elif n < 4:
            warnings.append("Footprint has fewer than 4 vertices")
        if area_sqft < self.min_area_sqft:
            errors.append(f"Footprint area {area_sqft:.0f} sq ft below minimum {self.min_area_sqft:.0f}")
        elif area_sqft > self.max_area_sqft:
            errors.append(f"Footprint area {area_sqft:.0f} sq ft above maximum {self.max_area_sqft:.0f}")
        if is_self_intersecting(polygon):
            warnings.append("Footprint polygon self-intersects")
        if reference_area_sqft and reference_area_sqft > 0:
            diff = abs(area_sqft - reference_area_sqft) / reference_area_sqft
            if diff > self.reference_disagreement:
                warnings.append(
                    f"Footprint area differs from building insight by {diff * 100:.0f}%"
                )
        longest = max((geo_distance_ft(polygon[i], polygon[(i + 1) % n]) for i in range(n)), default=0.0)
        return FootprintValidation(
            valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            longest_segment_ft=longest,
        )

    def _finalize(self, footprint: Footprint) -> FootprintResolution:
        if not footprint.validation.valid:
            logger.error(f"Footprint rejected: {'; '.join(footprint.validation.errors)}")
            raise FootprintValidationError(
                "Resolved footprint failed validation",
                errors=list(footprint.validation.errors),
                footprint=footprint,
            )
        return FootprintResolution(footprint=footprint, warnings=list(footprint.validation.warnings))
