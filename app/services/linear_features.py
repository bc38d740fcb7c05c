"""
Linear feature extraction (ridge / hip / valley / eave / rake).

Vision-model features arrive typed and only need projecting and filtering.
Building-insight segments carry no edges, so edges are derived pairwise from
overlapping segment bounding boxes and typed by a pluggable classifier.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from app.models.geometry import GeoPoint, ImageFrame, LinearFeature, LinearFeatureType
from app.models.sources import BoundingBox, RoofSegment, VisionLinearFeature
from app.services.geo_utils import (
    M_PER_DEG_LAT,
    geo_distance_ft,
    meters_per_degree_lng,
    pixel_to_geo,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SharedEdge:
    """Candidate edge between two adjacent roof segments."""
    start: GeoPoint
    end: GeoPoint
    segment_a: RoofSegment
    segment_b: RoofSegment


class EdgeClassifier:
    """Strategy interface: decide the type of an edge shared by two segments."""

    name = "base"

    def classify(self, edge: SharedEdge) -> LinearFeatureType:
        raise NotImplementedError


def azimuth_difference(a: float, b: float) -> float:
    """Raw azimuth difference folded into [0, 360)."""
    return abs(a - b) % 360.0


class AzimuthEdgeClassifier(EdgeClassifier):
    """Opposing slopes meet at a ridge; anything else is taken as a hip.

    Without elevation data this strategy cannot tell a valley from a hip.
    """

    name = "azimuth"

    def __init__(self, ridge_min_deg: float = 150.0, ridge_max_deg: float = 210.0):
        self.ridge_min_deg = ridge_min_deg
        self.ridge_max_deg = ridge_max_deg

    def _is_ridge(self, edge: SharedEdge) -> bool:
        az_a = edge.segment_a.azimuth_degrees
        az_b = edge.segment_b.azimuth_degrees
        if az_a is None or az_b is None:
            return False
        return self.ridge_min_deg <= azimuth_difference(az_a, az_b) <= self.ridge_max_deg

    def classify(self, edge: SharedEdge) -> LinearFeatureType:
        if self._is_ridge(edge):
            return LinearFeatureType.RIDGE
        return LinearFeatureType.HIP


class SlopeAwareEdgeClassifier(AzimuthEdgeClassifier):
    """Uses each segment's downslope direction to detect valleys.

    A segment's azimuth points downhill. If the shared edge lies downhill of
    both segment centers, both planes descend towards it, so the edge is the
    lowest line of the two planes: a valley. If it lies uphill of both centers
    it is a high line (ridge or hip).
    """

    name = "slope_aware"

    def classify(self, edge: SharedEdge) -> LinearFeatureType:
        mid = GeoPoint((edge.start.lat + edge.end.lat) / 2.0, (edge.start.lng + edge.end.lng) / 2.0)
        downhill = [self._downhill_offset(seg, mid) for seg in (edge.segment_a, edge.segment_b)]
        # opposing slopes that both descend into the edge form a butterfly valley, not a ridge
        if all(d is not None and d > 0 for d in downhill):
            return LinearFeatureType.VALLEY
        if self._is_ridge(edge):
            return LinearFeatureType.RIDGE
        return LinearFeatureType.HIP

    @staticmethod
    def _downhill_offset(segment: RoofSegment, point: GeoPoint) -> Optional[float]:
        """Signed distance (m) of `point` from the segment center along its downslope direction."""
        if segment.azimuth_degrees is None:
            return None
        center = segment.bounding_box.center()
        east = (point.lng - center.lng) * meters_per_degree_lng(center.lat)
        north = (point.lat - center.lat) * M_PER_DEG_LAT
        az = math.radians(segment.azimuth_degrees)
        return east * math.sin(az) + north * math.cos(az)


EDGE_CLASSIFIERS: Dict[str, type] = {
    AzimuthEdgeClassifier.name: AzimuthEdgeClassifier,
    SlopeAwareEdgeClassifier.name: SlopeAwareEdgeClassifier,
}


def get_edge_classifier(name: str) -> EdgeClassifier:
    try:
        return EDGE_CLASSIFIERS[name]()
    except KeyError:
        raise ValueError(f"Unknown edge classifier '{name}'. Options: {sorted(EDGE_CLASSIFIERS)}")


class LinearFeatureExtractor:
    def __init__(self, classifier: Optional[EdgeClassifier] = None, min_length_ft: float = 3.0,
                 adjacency_tolerance_m: float = 5.5):
        self.classifier = classifier or AzimuthEdgeClassifier()
        self.min_length_ft = min_length_ft
        self.adjacency_tolerance_m = adjacency_tolerance_m

    def from_vision(self, features: Sequence[VisionLinearFeature], frame: ImageFrame,
                    default_confidence: float = 0.7) -> Tuple[List[LinearFeature], List[str]]:
        """Project detector features to geo space and drop noise shorter than the minimum length."""
        out: List[LinearFeature] = []
        warnings: List[str] = []
        dropped = 0
        for idx, feat in enumerate(features):
            if not (feat.start.is_finite() and feat.end.is_finite()):
                warnings.append(f"Dropped linear feature {feat.id or idx}: non-finite coordinates")
                continue
            start = pixel_to_geo(feat.start, frame)
            end = pixel_to_geo(feat.end, frame)
            length = geo_distance_ft(start, end)
            if length < self.min_length_ft:
                dropped += 1
                continue
            confidence = feat.confidence if feat.confidence is not None else default_confidence
            out.append(LinearFeature(
                id=feat.id or f"{feat.type.value}-{idx + 1}",
                type=feat.type,
                start=start,
                end=end,
                length_ft=length,
                confidence=float(min(1.0, max(0.0, confidence))),
                source="vision_model",
            ))
        if dropped:
            logger.debug(f"Discarded {dropped} linear features shorter than {self.min_length_ft} ft")
        return out, warnings

    def from_segments(self, segments: Sequence[RoofSegment], outer_box: BoundingBox,
                      confidence: float = 0.6) -> List[LinearFeature]:
        """Derive edges from overlapping segment boxes plus the four outer eaves."""
        features: List[LinearFeature] = []
        for i in range(len(segments)):
            for j in range(i + 1, len(segments)):
                edge = self.shared_edge(segments[i], segments[j])
                if edge is None:
                    continue
                length = geo_distance_ft(edge.start, edge.end)
                if length < self.min_length_ft:
                    continue
                kind = self.classifier.classify(edge)
                features.append(LinearFeature(
                    id=f"{kind.value}-{i + 1}-{j + 1}",
                    type=kind,
                    start=edge.start,
                    end=edge.end,
                    length_ft=length,
                    confidence=confidence,
                    source="building_insight_api",
                ))

        corners = outer_box.corners()
        for k in range(4):
            a, b = corners[k], corners[(k + 1) % 4]
            length = geo_distance_ft(a, b)
            if length <= 0:
                continue
            features.append(LinearFeature(
                id=f"eave-{k + 1}",
                type=LinearFeatureType.EAVE,
                start=a,
                end=b,
                length_ft=length,
                confidence=confidence,
                source="building_insight_api",
            ))
        return features

    def shared_edge(self, a: RoofSegment, b: RoofSegment) -> Optional[SharedEdge]:
        """Midline of the box overlap along the axis with the larger overlap extent.

        Boxes count as adjacent when they overlap, or miss each other by no more
        than the adjacency tolerance, on both axes.
        """
        box_a, box_b = a.bounding_box, b.bounding_box
        ref_lat = (box_a.center().lat + box_b.center().lat) / 2.0
        m_lng = meters_per_degree_lng(ref_lat)

        lat_lo = max(box_a.min_lat, box_b.min_lat)
        lat_hi = min(box_a.max_lat, box_b.max_lat)
        lng_lo = max(box_a.min_lng, box_b.min_lng)
        lng_hi = min(box_a.max_lng, box_b.max_lng)
        overlap_lat_m = (lat_hi - lat_lo) * M_PER_DEG_LAT
        overlap_lng_m = (lng_hi - lng_lo) * m_lng
        tol = self.adjacency_tolerance_m
        if overlap_lat_m < -tol or overlap_lng_m < -tol:
            return None

        if overlap_lng_m >= overlap_lat_m:
            # runs east-west through the middle of the latitude overlap band
            lat = (lat_lo + lat_hi) / 2.0
            start, end = GeoPoint(lat, min(lng_lo, lng_hi)), GeoPoint(lat, max(lng_lo, lng_hi))
        else:
            lng = (lng_lo + lng_hi) / 2.0
            start, end = GeoPoint(min(lat_lo, lat_hi), lng), GeoPoint(max(lat_lo, lat_hi), lng)
        return SharedEdge(start=start, end=end, segment_a=a, segment_b=b)


def linear_totals(features: Sequence[LinearFeature]) -> Dict[str, float]:
    totals = {t.value: 0.0 for t in LinearFeatureType}
    for f in features:
        totals[f.type.value] += f.length_ft
    return totals
