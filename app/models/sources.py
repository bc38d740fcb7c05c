"""
Typed input structs for the three geometry providers.

Untrusted payloads are validated at the HTTP boundary (pydantic) and converted
into these dataclasses; the adapters then normalize them into SourceGeometry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from app.models.geometry import (
    Facet,
    GeoPoint,
    ImageFrame,
    ImageryQuality,
    LinearFeature,
    LinearFeatureType,
    PixelPoint,
)


@dataclass(frozen=True)
class BoundingBox:
    sw: GeoPoint
    ne: GeoPoint

    @property
    def min_lat(self) -> float:
        return min(self.sw.lat, self.ne.lat)

    @property
    def max_lat(self) -> float:
        return max(self.sw.lat, self.ne.lat)

    @property
    def min_lng(self) -> float:
        return min(self.sw.lng, self.ne.lng)

    @property
    def max_lng(self) -> float:
        return max(self.sw.lng, self.ne.lng)

    def corners(self) -> Tuple[GeoPoint, GeoPoint, GeoPoint, GeoPoint]:
        """Counter-clockwise from south-west."""
        return (
            GeoPoint(self.min_lat, self.min_lng),
            GeoPoint(self.min_lat, self.max_lng),
            GeoPoint(self.max_lat, self.max_lng),
            GeoPoint(self.max_lat, self.min_lng),
        )

    def center(self) -> GeoPoint:
        return GeoPoint((self.min_lat + self.max_lat) / 2.0, (self.min_lng + self.max_lng) / 2.0)


@dataclass(frozen=True)
class VisionFacet:
    polygon: Tuple[PixelPoint, ...]
    id: Optional[str] = None
    pitch: Optional[str] = None
    orientation: Optional[str] = None
    confidence: Optional[float] = None
    azimuth_degrees: Optional[float] = None
    area_sqft: Optional[float] = None


@dataclass(frozen=True)
class VisionLinearFeature:
    type: LinearFeatureType
    start: PixelPoint
    end: PixelPoint
    confidence: Optional[float] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class VisionModelResult:
    facets: Tuple[VisionFacet, ...] = ()
    linear_features: Tuple[VisionLinearFeature, ...] = ()
    footprint: Optional[Tuple[PixelPoint, ...]] = None
    overall_confidence: Optional[float] = None
    # Total the detector itself reports; used for the internal consistency check
    total_area_sqft: Optional[float] = None


@dataclass(frozen=True)
class RoofSegment:
    bounding_box: BoundingBox
    pitch_degrees: Optional[float] = None
    azimuth_degrees: Optional[float] = None
    height_m: Optional[float] = None
    plan_area_sqft: Optional[float] = None


@dataclass(frozen=True)
class BuildingInsightResult:
    bounding_box: BoundingBox
    segments: Tuple[RoofSegment, ...] = ()
    imagery_quality: ImageryQuality = ImageryQuality.MEDIUM
    # Ground footprint area as reported by the provider, independent of our geometry
    footprint_area_sqft: Optional[float] = None


@dataclass(frozen=True)
class MeasurementRequest:
    image_frame: ImageFrame
    vision_model_result: Optional[VisionModelResult] = None
    building_insight_result: Optional[BuildingInsightResult] = None
    manual_override_polygon: Optional[Tuple[GeoPoint, ...]] = None
    image_features: Tuple[str, ...] = ()


@dataclass
class SourceGeometry:
    """Normalized output of one source adapter."""
    source: str
    footprint_candidate: Optional[Tuple[GeoPoint, ...]] = None
    facets: List[Facet] = field(default_factory=list)
    linear_features: List[LinearFeature] = field(default_factory=list)
    quality: Optional[ImageryQuality] = None
    confidence: Optional[float] = None
    pitch_hints: List[str] = field(default_factory=list)
    azimuth_hints: List[float] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
