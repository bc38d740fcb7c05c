from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.models.geometry import GeoPoint
from app.models.measurement import MeasurementResult

logger = logging.getLogger(__name__)


def _ensure_ring_closed(ring: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
    if not ring:
        return ring
    if ring[0] != ring[-1]:
        return [*ring, ring[0]]
    return ring


def _clip_lon_lat(lon: float, lat: float) -> Tuple[float, float]:
    lon_c = float(min(180.0, max(-180.0, lon)))
    lat_c = float(min(90.0, max(-90.0, lat)))
    return lon_c, lat_c


def _to_ring(polygon: Sequence[GeoPoint]) -> List[Tuple[float, float]]:
    return [(p.lng, p.lat) for p in polygon]


def _polygon_feature(ring_ll: List[Tuple[float, float]], props: Dict[str, Any]) -> Dict[str, Any]:
    ring_ll = [_clip_lon_lat(lon, lat) for lon, lat in ring_ll]
    ring_ll = _ensure_ring_closed(ring_ll)
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [[list(coord) for coord in ring_ll]]},
        "properties": props,
    }


def _line_feature(a: GeoPoint, b: GeoPoint, props: Dict[str, Any]) -> Dict[str, Any]:
    a_c = _clip_lon_lat(a.lng, a.lat)
    b_c = _clip_lon_lat(b.lng, b.lat)
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": [[a_c[0], a_c[1]], [b_c[0], b_c[1]]]},
        "properties": props,
    }


def measurement_to_feature_collection(result: MeasurementResult) -> Dict[str, Any]:
    feats: List[Dict[str, Any]] = []

    fp = result.footprint
    feats.append(_polygon_feature(_to_ring(fp.polygon), {
        "kind": "footprint",
        "source": fp.source.value,
        "area_sqft": round(fp.area_sqft, 2),
        "perimeter_ft": round(fp.perimeter_ft, 2),
        "confidence": round(fp.confidence, 3),
    }))

    adjusted = result.area.facet_adjusted_areas_sqft
    for facet in result.facets:
        feats.append(_polygon_feature(_to_ring(facet.polygon), {
            "kind": "facet",
            "id": facet.id,
            "pitch": facet.pitch,
            "orientation": facet.orientation,
            "plan_area_sqft": round(facet.plan_area_sqft, 2),
            "adjusted_area_sqft": round(adjusted.get(facet.id, facet.plan_area_sqft), 2),
            "confidence": float(facet.confidence),
        }))

    for feat in result.linear_features:
        feats.append(_line_feature(feat.start, feat.end, {
            "kind": "linear_feature",
            "id": feat.id,
            "type": feat.type.value,
            "length_ft": round(feat.length_ft, 2),
            "confidence": float(feat.confidence),
        }))

    return {
        "type": "FeatureCollection",
        "features": feats,
        "properties": {
            "total_adjusted_area_sqft": round(result.total_adjusted_area_sqft, 2),
            "predominant_pitch": result.area.predominant_pitch,
            "overall_confidence": round(result.overall_confidence, 1),
            "manual_review_required": result.manual_review_required,
        },
    }


def write_geojson(collection: Dict[str, Any],
                  out_dir: Optional[str] = None,
                  job_id: Optional[str] = None) -> Path:
    """Persist an already-built FeatureCollection under ARTIFACT_DIR (or `out_dir`)."""
    if collection.get("type") != "FeatureCollection":
        raise ValueError("write_geojson expects a GeoJSON FeatureCollection")
    target = Path(out_dir or os.getenv("ARTIFACT_DIR", "./artifacts"))
    target.mkdir(parents=True, exist_ok=True)
    name = job_id or f"measurement_{time.strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"
    path = target / f"{name}.geojson"
    path.write_text(json.dumps(collection, ensure_ascii=False), encoding="utf-8")
    logger.info(f"Wrote {len(collection.get('features', []))} features to {path}")
    return path


__all__ = ["write_geojson", "measurement_to_feature_collection"]
