from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from app.models.geometry import GeoPoint
from app.services.errors import InvalidInputError
from app.services.geo_utils import (
    M_TO_FT,
    centroid,
    from_local_meters,
    segments_cross,
    shoelace_area,
    to_local_meters,
)

logger = logging.getLogger(__name__)

_DUPLICATE_M = 0.0003  # ~1 mm
_UNCHANGED_M = 1e-6
_ALIGNED_DEG = 1e-7


@dataclass
class _Vertex:
    xy: Tuple[float, float]
    geo: Optional[GeoPoint] = None  # original instance while the vertex has not moved


class PolygonSimplifier:
    """
    Collinear-vertex removal and near-right-angle snapping for footprints.

    Snapping aligns edges to the dominant orientation of the building (taken
    from its longest edge): an edge within `angle_threshold_deg` of a multiple
    of 90 degrees from that orientation is rotated about its midpoint, and
    vertices are recomputed as intersections of consecutive edge lines.
    """

    def __init__(self, max_iterations: int = 5, max_area_growth: float = 0.01,
                 max_area_shrink: float = 0.05):
        self.max_iterations = max_iterations
        self.max_area_growth = max_area_growth
        self.max_area_shrink = max_area_shrink

    def simplify(self, polygon: Sequence[GeoPoint], tolerance_ft: float = 1.0,
                 snap_angles: bool = False, angle_threshold_deg: float = 10.0) -> List[GeoPoint]:
        if len(polygon) < 3:
            raise InvalidInputError("Polygon needs at least 3 vertices", errors=[f"got {len(polygon)}"])

        origin = centroid(polygon)
        xy = to_local_meters(polygon, origin=origin)
        vertices = [_Vertex((float(x), float(y)), geo) for (x, y), geo in zip(xy, polygon)]
        vertices = self._dedupe(vertices)
        if len(vertices) < 3:
            raise InvalidInputError("Polygon collapses to fewer than 3 distinct vertices")

        tolerance_m = max(0.0, tolerance_ft) / M_TO_FT
        # growth is bounded against the input polygon, not the previous pass
        reference_area = abs(shoelace_area(np.array([v.xy for v in vertices])))
        for _ in range(self.max_iterations):
            before = len(vertices)
            vertices = self._remove_collinear(vertices, tolerance_m, reference_area)
            moved = False
            if snap_angles and len(vertices) > 3:
                snapped = self._snap(vertices, angle_threshold_deg, reference_area)
                if snapped is not None:
                    vertices = self._dedupe(snapped)
                    moved = True
            if not moved and len(vertices) == before:
                break

        new_points = from_local_meters(np.array([v.xy for v in vertices]), origin)
        out = [v.geo if v.geo is not None else p for v, p in zip(vertices, new_points)]
        if len(out) != len(polygon):
            logger.debug(f"Simplified polygon from {len(polygon)} to {len(out)} vertices")
        return out

    @staticmethod
    def _dedupe(vertices: List[_Vertex]) -> List[_Vertex]:
        out: List[_Vertex] = []
        for v in vertices:
            if out and math.dist(out[-1].xy, v.xy) < _DUPLICATE_M:
                continue
            out.append(v)
        while len(out) > 1 and math.dist(out[0].xy, out[-1].xy) < _DUPLICATE_M:
            out.pop()
        return out

    def _remove_collinear(self, vertices: List[_Vertex], tolerance_m: float,
                          reference_area: float) -> List[_Vertex]:
        out = list(vertices)
        area = shoelace_area(np.array([v.xy for v in out]))
        orientation = 1.0 if area >= 0 else -1.0
        max_area = reference_area * (1.0 + self.max_area_growth)
        i = 0
        while len(out) > 3 and i < len(out):
            prev_v = out[i - 1].xy
            cur = out[i].xy
            next_v = out[(i + 1) % len(out)].xy
            base = math.dist(prev_v, next_v)
            cross = (next_v[0] - prev_v[0]) * (cur[1] - prev_v[1]) - (next_v[1] - prev_v[1]) * (cur[0] - prev_v[0])
            if base < _DUPLICATE_M:
                deviation = math.dist(prev_v, cur)
            else:
                deviation = abs(cross) / base
            if deviation < tolerance_m:
                # dropping a reflex vertex fills its notch
                new_area = area + cross / 2.0
                if orientation * new_area > max_area:
                    i += 1
                    continue
                area = new_area
                del out[i]
                i = max(0, i - 1)
            else:
                i += 1
        return out

    def _snap(self, vertices: List[_Vertex], threshold_deg: float,
              reference_area: Optional[float] = None) -> Optional[List[_Vertex]]:
        """Return re-intersected vertices, or None when nothing changed or the snap is rejected."""
        n = len(vertices)
        pts = [v.xy for v in vertices]
        edges = [(pts[i], pts[(i + 1) % n]) for i in range(n)]
        angles = [math.degrees(math.atan2(b[1] - a[1], b[0] - a[0])) for a, b in edges]
        lengths = [math.dist(a, b) for a, b in edges]
        reference = angles[int(np.argmax(lengths))] % 90.0

        lines = []
        any_rotated = False
        for (a, b), theta in zip(edges, angles):
            deviation = ((theta - reference + 45.0) % 90.0) - 45.0
            mid = ((a[0] + b[0]) / 2.0, (a[1] + b[1]) / 2.0)
            if _ALIGNED_DEG < abs(deviation) <= threshold_deg:
                theta = theta - deviation
                any_rotated = True
            rad = math.radians(theta)
            lines.append((mid, (math.cos(rad), math.sin(rad))))
        if not any_rotated:
            return None

        out: List[_Vertex] = []
        for i in range(n):
            hit = _intersect_lines(lines[i - 1], lines[i])
            if hit is None:
                # consecutive edges became parallel: the vertex is redundant
                if n - (i - len(out)) > 3:
                    continue
                hit = pts[i]
            if math.dist(hit, pts[i]) < _UNCHANGED_M:
                out.append(vertices[i])
            else:
                out.append(_Vertex(hit))
        if len(out) < 3:
            return None

        original_area = abs(shoelace_area(np.array(pts)))
        new_area = abs(shoelace_area(np.array([v.xy for v in out])))
        growth_base = original_area if reference_area is None else min(original_area, reference_area)
        if new_area > growth_base * (1.0 + self.max_area_growth) or new_area < original_area * (1.0 - self.max_area_shrink):
            logger.debug(f"Rejected angle snap: area {original_area:.2f} -> {new_area:.2f} m2")
            return None
        if _has_crossing([v.xy for v in out]):
            logger.debug("Rejected angle snap: result self-intersects")
            return None
        return out


def _intersect_lines(l1, l2) -> Optional[Tuple[float, float]]:
    (p, r), (q, s) = l1, l2
    denom = r[0] * s[1] - r[1] * s[0]
    if abs(denom) < 1e-9:
        return None
    t = ((q[0] - p[0]) * s[1] - (q[1] - p[1]) * s[0]) / denom
    return (p[0] + t * r[0], p[1] + t * r[1])


def _has_crossing(pts: List[Tuple[float, float]]) -> bool:
    n = len(pts)
    for i in range(n):
        for j in range(i + 2, n):
            if i == 0 and j == n - 1:
                continue
            if segments_cross(pts[i], pts[(i + 1) % n], pts[j], pts[(j + 1) % n]):
                return True
    return False


_default = PolygonSimplifier()


def simplify(polygon: Sequence[GeoPoint], tolerance_ft: float = 1.0,
             snap_angles: bool = False, angle_threshold_deg: float = 10.0) -> List[GeoPoint]:
    return _default.simplify(polygon, tolerance_ft, snap_angles, angle_threshold_deg)
