from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class FootprintSource(str, Enum):
    VISION_MODEL = "vision_model"
    BUILDING_INSIGHT_API = "building_insight_api"
    MANUAL_OVERRIDE = "manual_override"
    FUSED = "fused"


class LinearFeatureType(str, Enum):
    RIDGE = "ridge"
    HIP = "hip"
    VALLEY = "valley"
    EAVE = "eave"
    RAKE = "rake"


class ImageryQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def is_finite(self) -> bool:
        return math.isfinite(self.lat) and math.isfinite(self.lng)

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class PixelPoint:
    """Image-space coordinate, origin top-left, y increasing downward."""
    x: float
    y: float

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)


@dataclass(frozen=True)
class ImageFrame:
    """Calibration context for one aerial image fetch."""
    center_lat: float
    center_lng: float
    zoom_level: float
    width_px: int
    height_px: int

    def __post_init__(self):
        # avoid models <-> services import cycle
        from app.services.errors import InvalidInputError

        errors: List[str] = []
        for name in ("center_lat", "center_lng", "zoom_level"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                errors.append(f"{name} must be a finite number")
        if not errors:
            if abs(self.center_lat) >= 85.05:
                errors.append("center_lat outside Web-Mercator range (|lat| < 85.05)")
            if abs(self.center_lng) > 180.0:
                errors.append("center_lng must be within [-180, 180]")
            if not 0 <= self.zoom_level <= 23:
                errors.append("zoom_level must be within [0, 23]")
        if self.width_px <= 0 or self.height_px <= 0:
            errors.append("pixel dimensions must be positive")
        if errors:
            raise InvalidInputError("Unprojectable image frame", errors=errors)


@dataclass(frozen=True)
class Facet:
    """One planar roof surface. Corrections produce a new Facet."""
    id: str
    polygon: Tuple[GeoPoint, ...]
    plan_area_sqft: float
    pitch: str
    orientation: str = "unknown"
    confidence: float = 0.7
    azimuth_degrees: Optional[float] = None
    pixel_polygon: Optional[Tuple[PixelPoint, ...]] = None

    @property
    def vertex_count(self) -> int:
        return len(self.polygon)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "polygon": [p.to_dict() for p in self.polygon],
            "plan_area_sqft": round(self.plan_area_sqft, 2),
            "pitch": self.pitch,
            "orientation": self.orientation,
            "confidence": self.confidence,
            "azimuth_degrees": self.azimuth_degrees,
        }


@dataclass(frozen=True)
class LinearFeature:
    id: str
    type: LinearFeatureType
    start: GeoPoint
    end: GeoPoint
    length_ft: float
    confidence: float = 0.7
    source: str = "vision_model"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "start": self.start.to_dict(),
            "end": self.end.to_dict(),
            "length_ft": round(self.length_ft, 2),
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass(frozen=True)
class FootprintValidation:
    valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    longest_segment_ft: float = 0.0


@dataclass(frozen=True)
class Footprint:
    """The single authoritative building outline of a measurement run."""
    polygon: Tuple[GeoPoint, ...]
    area_sqft: float
    perimeter_ft: float
    confidence: float
    source: FootprintSource
    validation: FootprintValidation = field(default_factory=lambda: FootprintValidation(valid=True))

    @property
    def vertex_count(self) -> int:
        return len(self.polygon)

    def to_dict(self) -> dict:
        return {
            "polygon": [p.to_dict() for p in self.polygon],
            "area_sqft": round(self.area_sqft, 2),
            "perimeter_ft": round(self.perimeter_ft, 2),
            "vertex_count": self.vertex_count,
            "confidence": round(self.confidence, 3),
            "source": self.source.value,
            "validation": {
                "valid": self.validation.valid,
                "errors": list(self.validation.errors),
                "warnings": list(self.validation.warnings),
                "longest_segment_ft": round(self.validation.longest_segment_ft, 2),
            },
        }


def parse_pitch(pitch: Optional[str]) -> Tuple[float, float]:
    """Parse a rise/run string such as "6/12" into (rise, run).

    Anything unparseable is treated as a flat roof (0/12).
    """
    if not pitch:
        return 0.0, 12.0
    match = re.search(r"(\d+(?:\.\d+)?)\s*/\s*(\d+(?:\.\d+)?)", str(pitch))
    if not match:
        return 0.0, 12.0
    rise = float(match.group(1))
    run = float(match.group(2))
    if run <= 0:
        return 0.0, 12.0
    return rise, run


def pitch_multiplier(pitch: Optional[str]) -> float:
    rise, run = parse_pitch(pitch)
    return math.sqrt(1.0 + (rise / run) ** 2)


def pitch_degrees(pitch: Optional[str]) -> float:
    rise, run = parse_pitch(pitch)
    return math.degrees(math.atan(rise / run))


def degrees_to_pitch(degrees: float) -> str:
    """Nearest whole-inch rise per 12 for a slope angle in degrees."""
    rise = round(math.tan(math.radians(max(0.0, min(degrees, 89.0)))) * 12.0)
    return f"{int(rise)}/12"
