"""Coordinate projection and planar geometry primitives.

Everything here works on a local equirectangular approximation of the earth
around the building, which is only valid for sub-kilometer extents.
"""
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from app.models.geometry import GeoPoint, ImageFrame, PixelPoint

M_PER_DEG_LAT = 111_320.0
SQM_TO_SQFT = 10.7639
M_TO_FT = 3.28084
EARTH_GROUND_RES_M = 156543.03392  # Web-Mercator m/px at zoom 0, equator


def meters_per_degree_lng(lat: float) -> float:
    m = M_PER_DEG_LAT * math.cos(math.radians(lat))
    # Guard against extreme latitudes causing near-zero cos(lat)
    return m if abs(m) > 1e-6 else 1e-6


def meters_per_pixel(lat: float, zoom: float) -> float:
    """Web-Mercator ground resolution."""
    return EARTH_GROUND_RES_M * math.cos(math.radians(lat)) / (2.0 ** zoom)


def pixel_to_geo(pixel: PixelPoint, frame: ImageFrame) -> GeoPoint:
    mpp = meters_per_pixel(frame.center_lat, frame.zoom_level)
    offset_x = pixel.x - frame.width_px / 2.0
    offset_y = frame.height_px / 2.0 - pixel.y
    lat = frame.center_lat + offset_y * mpp / M_PER_DEG_LAT
    lng = frame.center_lng + offset_x * mpp / meters_per_degree_lng(frame.center_lat)
    return GeoPoint(lat=lat, lng=lng)


def geo_to_pixel(geo: GeoPoint, frame: ImageFrame) -> PixelPoint:
    """Exact inverse of pixel_to_geo for the same frame."""
    mpp = meters_per_pixel(frame.center_lat, frame.zoom_level)
    offset_x = (geo.lng - frame.center_lng) * meters_per_degree_lng(frame.center_lat) / mpp
    offset_y = (geo.lat - frame.center_lat) * M_PER_DEG_LAT / mpp
    return PixelPoint(x=offset_x + frame.width_px / 2.0, y=frame.height_px / 2.0 - offset_y)


def pixel_distance_ft(a: PixelPoint, b: PixelPoint, frame: ImageFrame) -> float:
    mpp = meters_per_pixel(frame.center_lat, frame.zoom_level)
    return math.hypot(b.x - a.x, b.y - a.y) * mpp * M_TO_FT


def geo_distance_ft(a: GeoPoint, b: GeoPoint) -> float:
    mid_lat = (a.lat + b.lat) / 2.0
    dx = (b.lng - a.lng) * meters_per_degree_lng(mid_lat)
    dy = (b.lat - a.lat) * M_PER_DEG_LAT
    return math.hypot(dx, dy) * M_TO_FT


def to_local_meters(points: Sequence[GeoPoint], origin: Optional[GeoPoint] = None) -> np.ndarray:
    """Project points to an (N, 2) array of east/north meters.

    The origin defaults to the vertex mean; longitude is scaled at the
    origin latitude.
    """
    if not points:
        return np.zeros((0, 2), dtype=float)
    lats = np.array([p.lat for p in points], dtype=float)
    lngs = np.array([p.lng for p in points], dtype=float)
    if origin is None:
        origin = GeoPoint(float(lats.mean()), float(lngs.mean()))
    x = (lngs - origin.lng) * meters_per_degree_lng(origin.lat)
    y = (lats - origin.lat) * M_PER_DEG_LAT
    return np.column_stack([x, y])


def from_local_meters(xy: np.ndarray, origin: GeoPoint) -> List[GeoPoint]:
    out: List[GeoPoint] = []
    m_lng = meters_per_degree_lng(origin.lat)
    for x, y in np.asarray(xy, dtype=float).reshape(-1, 2):
        out.append(GeoPoint(lat=origin.lat + y / M_PER_DEG_LAT, lng=origin.lng + x / m_lng))
    return out


def shoelace_area(xy: np.ndarray) -> float:
    """Signed area of a closed ring given as (N, 2); positive when counter-clockwise."""
    if len(xy) < 3:
        return 0.0
    x = xy[:, 0]
    y = xy[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def polygon_area_sqft(polygon: Sequence[GeoPoint]) -> float:
    if len(polygon) < 3:
        return 0.0
    return abs(shoelace_area(to_local_meters(polygon))) * SQM_TO_SQFT


def polygon_perimeter_ft(polygon: Sequence[GeoPoint]) -> float:
    n = len(polygon)
    if n < 2:
        return 0.0
    return sum(geo_distance_ft(polygon[i], polygon[(i + 1) % n]) for i in range(n))


def pixel_polygon_area_sqft(polygon: Sequence[PixelPoint], frame: ImageFrame) -> float:
    if len(polygon) < 3:
        return 0.0
    mpp = meters_per_pixel(frame.center_lat, frame.zoom_level)
    xy = np.array([[p.x, -p.y] for p in polygon], dtype=float) * mpp
    return abs(shoelace_area(xy)) * SQM_TO_SQFT


def centroid(points: Sequence[GeoPoint]) -> GeoPoint:
    """Vertex mean, adequate for the radial operations done here."""
    n = len(points)
    return GeoPoint(sum(p.lat for p in points) / n, sum(p.lng for p in points) / n)


def ft_to_degrees(ft: float, lat: float) -> Tuple[float, float]:
    """Degrees of (latitude, longitude) spanned by `ft` feet at `lat`."""
    meters = ft / M_TO_FT
    return meters / M_PER_DEG_LAT, meters / meters_per_degree_lng(lat)


def expand_polygon(polygon: Sequence[GeoPoint], distance_ft: float) -> List[GeoPoint]:
    """Push every vertex radially away from the centroid by `distance_ft`."""
    if distance_ft == 0 or len(polygon) < 3:
        return list(polygon)
    center = centroid(polygon)
    xy = to_local_meters(polygon, origin=center)
    distance_m = distance_ft / M_TO_FT
    radii = np.hypot(xy[:, 0], xy[:, 1])
    scale = np.where(radii > 1e-9, (radii + distance_m) / np.maximum(radii, 1e-9), 1.0)
    return from_local_meters(xy * scale[:, None], center)


def _cross(o: Tuple[float, float], a: Tuple[float, float], b: Tuple[float, float]) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Sequence[GeoPoint]) -> List[GeoPoint]:
    """Graham scan, counter-clockwise.

    Works directly in (lng, lat): turn direction is invariant to the positive
    longitude scale factor of the local projection.
    """
    unique = list(dict.fromkeys(points))
    if len(unique) < 3:
        return unique
    pivot = min(unique, key=lambda p: (p.lat, p.lng))
    others = [p for p in unique if p != pivot]

    def polar_key(p: GeoPoint):
        dx = p.lng - pivot.lng
        dy = p.lat - pivot.lat
        return (math.atan2(dy, dx), dx * dx + dy * dy)

    others.sort(key=polar_key)
    stack: List[GeoPoint] = [pivot]
    for p in others:
        while len(stack) >= 2 and _cross(
            (stack[-2].lng, stack[-2].lat), (stack[-1].lng, stack[-1].lat), (p.lng, p.lat)
        ) <= 0:
            stack.pop()
        stack.append(p)
    return stack


def point_in_polygon(point: GeoPoint, polygon: Sequence[GeoPoint], include_boundary: bool = True) -> bool:
    """Ray casting; points on an edge count as inside when include_boundary is set."""
    n = len(polygon)
    if n < 3:
        return False
    px, py = point.lng, point.lat
    scale = max(1e-12, max(abs(p.lng) + abs(p.lat) for p in polygon) * 1e-12)
    inside = False
    for i in range(n):
        a = polygon[i]
        b = polygon[(i + 1) % n]
        if include_boundary and _on_segment((a.lng, a.lat), (b.lng, b.lat), (px, py), scale):
            return True
        if (a.lat > py) != (b.lat > py):
            x_cross = a.lng + (py - a.lat) * (b.lng - a.lng) / (b.lat - a.lat)
            if px < x_cross:
                inside = not inside
    return inside


def _on_segment(a, b, p, eps: float) -> bool:
    if abs(_cross(a, b, p)) > eps * max(1.0, math.hypot(b[0] - a[0], b[1] - a[1])):
        return False
    return (min(a[0], b[0]) - eps <= p[0] <= max(a[0], b[0]) + eps
            and min(a[1], b[1]) - eps <= p[1] <= max(a[1], b[1]) + eps)


def segments_cross(p1: Tuple[float, float], p2: Tuple[float, float],
                   p3: Tuple[float, float], p4: Tuple[float, float]) -> bool:
    """Proper intersection of segments p1p2 and p3p4.

    Touching at an endpoint or overlapping collinearly does not count.
    """
    d1 = _cross(p3, p4, p1)
    d2 = _cross(p3, p4, p2)
    d3 = _cross(p1, p2, p3)
    d4 = _cross(p1, p2, p4)
    return ((d1 > 0 > d2) or (d1 < 0 < d2)) and ((d3 > 0 > d4) or (d3 < 0 < d4))


def is_self_intersecting(polygon: Sequence[GeoPoint]) -> bool:
    n = len(polygon)
    if n < 4:
        return False
    xy = to_local_meters(polygon)
    pts = [tuple(v) for v in xy]
    for i in range(n):
        a1, a2 = pts[i], pts[(i + 1) % n]
        for j in range(i + 1, n):
            # skip adjacent edges
            if j == i or (j + 1) % n == i or (i + 1) % n == j:
                continue
            if segments_cross(a1, a2, pts[j], pts[(j + 1) % n]):
                return True
    return False
