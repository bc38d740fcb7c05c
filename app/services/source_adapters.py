from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

from app.models.geometry import (
    Facet,
    GeoPoint,
    ImageFrame,
    ImageryQuality,
    degrees_to_pitch,
)
from app.models.sources import (
    BuildingInsightResult,
    RoofSegment,
    SourceGeometry,
    VisionModelResult,
)
from app.services.errors import InvalidInputError
from app.services.geo_utils import convex_hull, pixel_to_geo, polygon_area_sqft
from app.services.linear_features import LinearFeatureExtractor

logger = logging.getLogger(__name__)

DEFAULT_PITCH = "6/12"
DEFAULT_FACET_CONFIDENCE = 0.7

_COMPASS = ["north", "northeast", "east", "southeast", "south", "southwest", "west", "northwest"]


def orientation_from_azimuth(azimuth: Optional[float]) -> str:
    if azimuth is None or not math.isfinite(azimuth):
        return "unknown"
    return f"{_COMPASS[int(((azimuth % 360.0) + 22.5) // 45.0) % 8]}_facing"


def _dedupe_adjacent(points: Sequence) -> List:
    out: List = []
    for p in points:
        if out and out[-1] == p:
            continue
        out.append(p)
    while len(out) > 1 and out[0] == out[-1]:
        out.pop()
    return out


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class VisionModelAdapter:
    """Normalizes pixel-space detector output. Never raises on bad detections."""

    def __init__(self, extractor: Optional[LinearFeatureExtractor] = None):
        self.extractor = extractor or LinearFeatureExtractor()

    def adapt(self, result: VisionModelResult, frame: ImageFrame) -> SourceGeometry:
        out = SourceGeometry(source="vision_model")
        if result.overall_confidence is not None and math.isfinite(result.overall_confidence):
            out.confidence = _clamp01(result.overall_confidence)
        default_conf = out.confidence if out.confidence is not None else DEFAULT_FACET_CONFIDENCE

        for idx, raw in enumerate(result.facets):
            facet_id = raw.id or f"facet-{idx + 1}"
            if any(not p.is_finite() for p in raw.polygon):
                out.warnings.append(f"Dropped facet {facet_id}: non-finite coordinates")
                continue
            pixels = _dedupe_adjacent(raw.polygon)
            if len(pixels) < 3:
                out.warnings.append(f"Dropped facet {facet_id}: fewer than 3 distinct vertices")
                continue
            polygon = tuple(pixel_to_geo(p, frame) for p in pixels)
            area = raw.area_sqft
            if area is None or not math.isfinite(area) or area <= 0:
                area = polygon_area_sqft(polygon)
            confidence = raw.confidence if raw.confidence is not None and math.isfinite(raw.confidence) else default_conf
            orientation = raw.orientation or orientation_from_azimuth(raw.azimuth_degrees)
            out.facets.append(Facet(
                id=facet_id,
                polygon=polygon,
                plan_area_sqft=float(area),
                pitch=raw.pitch or DEFAULT_PITCH,
                orientation=orientation,
                confidence=_clamp01(confidence),
                azimuth_degrees=raw.azimuth_degrees,
                pixel_polygon=tuple(raw.polygon),
            ))

        features, warnings = self.extractor.from_vision(result.linear_features, frame, default_conf)
        out.linear_features = features
        out.warnings.extend(warnings)

        if result.footprint:
            if any(not p.is_finite() for p in result.footprint):
                out.warnings.append("Vision footprint dropped: non-finite coordinates")
            else:
                pixels = _dedupe_adjacent(result.footprint)
                if len(pixels) >= 3:
                    out.footprint_candidate = tuple(pixel_to_geo(p, frame) for p in pixels)
                else:
                    out.warnings.append("Vision footprint dropped: fewer than 3 distinct vertices")

        for w in out.warnings:
            logger.warning(w)
        return out


class BuildingInsightAdapter:
    """Structured building data; footprint only trusted at acceptable imagery quality."""

    def __init__(self, extractor: Optional[LinearFeatureExtractor] = None):
        self.extractor = extractor or LinearFeatureExtractor()
        self.quality_confidence = {ImageryQuality.HIGH: 0.9, ImageryQuality.MEDIUM: 0.75}

    def adapt(self, result: BuildingInsightResult) -> SourceGeometry:
        out = SourceGeometry(source="building_insight_api", quality=result.imagery_quality)
        segments = self._usable_segments(result.segments, out.warnings)

        for seg in segments:
            if seg.pitch_degrees is not None:
                out.pitch_hints.append(degrees_to_pitch(seg.pitch_degrees))
            if seg.azimuth_degrees is not None:
                out.azimuth_hints.append(float(seg.azimuth_degrees))

        if result.imagery_quality not in self.quality_confidence:
            out.warnings.append(
                f"Building insight imagery quality '{result.imagery_quality.value}' too low; footprint not used"
            )
            logger.warning(out.warnings[-1])
            return out

        box = result.bounding_box
        if not (box.sw.is_finite() and box.ne.is_finite()):
            out.warnings.append("Building insight bounding box has non-finite coordinates")
            logger.warning(out.warnings[-1])
            return out

        out.confidence = self.quality_confidence[result.imagery_quality]
        if len(segments) > 1:
            corners: List[GeoPoint] = [c for seg in segments for c in seg.bounding_box.corners()]
            hull = convex_hull(corners)
            out.footprint_candidate = tuple(hull) if len(hull) >= 3 else box.corners()
        else:
            out.footprint_candidate = box.corners()

        for idx, seg in enumerate(segments):
            polygon = seg.bounding_box.corners()
            area = seg.plan_area_sqft
            if area is None or not math.isfinite(area) or area <= 0:
                area = polygon_area_sqft(polygon)
            pitch = degrees_to_pitch(seg.pitch_degrees) if seg.pitch_degrees is not None else DEFAULT_PITCH
            out.facets.append(Facet(
                id=f"segment-{idx + 1}",
                polygon=polygon,
                plan_area_sqft=float(area),
                pitch=pitch,
                orientation=orientation_from_azimuth(seg.azimuth_degrees),
                confidence=out.confidence,
                azimuth_degrees=seg.azimuth_degrees,
            ))
        if segments:
            out.linear_features = self.extractor.from_segments(segments, box, confidence=out.confidence * 0.8)
        return out

    @staticmethod
    def _usable_segments(segments: Sequence[RoofSegment], warnings: List[str]) -> List[RoofSegment]:
        usable = []
        for idx, seg in enumerate(segments):
            box = seg.bounding_box
            if not (box.sw.is_finite() and box.ne.is_finite()):
                warnings.append(f"Dropped roof segment {idx + 1}: non-finite bounding box")
                continue
            if box.min_lat == box.max_lat or box.min_lng == box.max_lng:
                warnings.append(f"Dropped roof segment {idx + 1}: degenerate bounding box")
                continue
            usable.append(seg)
        return usable


class ManualOverrideAdapter:
    """Operator-drawn footprint. Malformed input is a hard error, not a warning."""

    def adapt(self, polygon: Sequence[GeoPoint]) -> SourceGeometry:
        errors: List[str] = []
        for idx, p in enumerate(polygon):
            if not p.is_finite():
                errors.append(f"vertex {idx} has non-finite coordinates")
            elif abs(p.lat) > 90 or abs(p.lng) > 180:
                errors.append(f"vertex {idx} is outside valid lat/lng range")
        if errors:
            raise InvalidInputError("Invalid manual override polygon", errors=errors)
        points = _dedupe_adjacent(polygon)
        if len(points) < 3:
            raise InvalidInputError(
                "Manual override polygon needs at least 3 distinct vertices",
                errors=[f"got {len(points)}"],
            )
        return SourceGeometry(source="manual_override", footprint_candidate=tuple(points), confidence=1.0)

