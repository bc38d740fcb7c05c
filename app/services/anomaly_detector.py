"""
Statistical and geometric plausibility checks for a finished measurement.

Baselines live in a BaselineRegistry: readers take an immutable, versioned
snapshot and `update_baseline` swaps in a new snapshot under a writer lock,
so detection never observes a half-updated map.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from app.models.geometry import GeoPoint, LinearFeature, pitch_degrees
from app.models.measurement import (
    Anomaly,
    AnomalyReport,
    AnomalyType,
    ExpectedRange,
    RiskLevel,
    Severity,
)
from app.services.geo_utils import segments_cross, to_local_meters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaselineStats:
    mean: float
    std_dev: float
    min: float
    max: float
    percentiles: Mapping[str, float]

    def to_dict(self) -> dict:
        return {
            "mean": self.mean,
            "std_dev": self.std_dev,
            "min": self.min,
            "max": self.max,
            "percentiles": dict(self.percentiles),
        }


DEFAULT_BASELINES: Dict[str, BaselineStats] = {
    "total_area": BaselineStats(
        mean=2500.0, std_dev=1200.0, min=500.0, max=15000.0,
        percentiles={"p5": 1000.0, "p25": 1800.0, "p50": 2300.0, "p75": 3000.0, "p95": 5000.0},
    ),
    "ridge_length": BaselineStats(
        mean=40.0, std_dev=20.0, min=10.0, max=150.0,
        percentiles={"p5": 15.0, "p25": 25.0, "p50": 38.0, "p75": 50.0, "p95": 80.0},
    ),
    "facet_count": BaselineStats(
        mean=6.0, std_dev=3.0, min=2.0, max=20.0,
        percentiles={"p5": 2.0, "p25": 4.0, "p50": 5.0, "p75": 8.0, "p95": 12.0},
    ),
}

_PERCENTILES = {"p5": 0.05, "p25": 0.25, "p50": 0.50, "p75": 0.75, "p95": 0.95}


@dataclass(frozen=True)
class BaselineSnapshot:
    version: int
    stats: Mapping[str, BaselineStats]


def compute_baseline(values: Sequence[float]) -> BaselineStats:
    """Population statistics; percentiles use the value at floor(n * p) of the sorted sample."""
    arr = np.asarray(values, dtype=float)
    ordered = np.sort(arr)
    n = len(ordered)
    return BaselineStats(
        mean=float(arr.mean()),
        std_dev=float(arr.std()),
        min=float(ordered[0]),
        max=float(ordered[-1]),
        percentiles={k: float(ordered[min(n - 1, int(math.floor(n * p)))]) for k, p in _PERCENTILES.items()},
    )


class BaselineRegistry:
    def __init__(self, initial: Optional[Mapping[str, BaselineStats]] = None, min_samples: int = 10):
        self.min_samples = min_samples
        self._lock = threading.Lock()
        self._snapshot = BaselineSnapshot(version=0, stats=MappingProxyType(dict(initial or DEFAULT_BASELINES)))

    def snapshot(self) -> BaselineSnapshot:
        return self._snapshot

    def get(self, metric: str) -> BaselineStats:
        return self._snapshot.stats[metric]

    def update_baseline(self, metric: str, values: Sequence[float]) -> BaselineSnapshot:
        if metric not in DEFAULT_BASELINES:
            raise ValueError(f"Unknown baseline metric '{metric}'. Options: {sorted(DEFAULT_BASELINES)}")
        clean = [float(v) for v in values if v is not None and math.isfinite(float(v))]
        if len(clean) < self.min_samples:
            raise ValueError(f"Baseline update needs at least {self.min_samples} finite values, got {len(clean)}")
        stats = compute_baseline(clean)
        with self._lock:
            current = self._snapshot
            updated = dict(current.stats)
            updated[metric] = stats
            self._snapshot = BaselineSnapshot(version=current.version + 1, stats=MappingProxyType(updated))
        logger.info(f"Baseline '{metric}' replaced from {len(clean)} samples (version {self._snapshot.version})")
        return self._snapshot

    def reset(self) -> None:
        with self._lock:
            self._snapshot = BaselineSnapshot(
                version=self._snapshot.version + 1, stats=MappingProxyType(dict(DEFAULT_BASELINES))
            )


@dataclass
class MeasurementSummary:
    """The numbers the detector needs, independent of how they were measured."""
    total_area_sqft: float
    ridge_ft: float = 0.0
    hip_ft: float = 0.0
    valley_ft: float = 0.0
    eave_ft: float = 0.0
    rake_ft: float = 0.0
    facet_count: int = 0
    facet_pitches: Sequence[str] = ()
    edges: Sequence[LinearFeature] = field(default_factory=list)


class AnomalyDetector:
    def __init__(self, registry: Optional[BaselineRegistry] = None):
        self.registry = registry or BaselineRegistry()

        self.outlier_sigma = 3.0
        self.error_sigma = 4.0
        self.min_area_sqft = 10.0
        self.min_area_to_perimeter = 0.5
        self.max_area_to_perimeter = 50.0
        self.min_ridge_to_perimeter = 0.0
        self.max_ridge_to_perimeter = 0.4
        self.sizable_area_sqft = 100.0
        self.max_pitch_variance_deg = 15.0

    def detect(self, m: MeasurementSummary) -> AnomalyReport:
        snapshot = self.registry.snapshot()
        anomalies: List[Anomaly] = []
        self._check_statistical_outliers(m, snapshot.stats, anomalies)
        self._check_geometric_constraints(m, anomalies)
        self._check_ratios(m, anomalies)
        self._check_missing_components(m, anomalies)
        self._check_pitch_consistency(m.facet_pitches, anomalies)
        self._check_edge_crossings(m.edges, anomalies)

        risk = self.overall_risk(anomalies)
        if anomalies:
            logger.warning(f"{len(anomalies)} anomalies detected, risk={risk.value}")
        return AnomalyReport(
            anomalies=tuple(anomalies),
            overall_risk=risk,
            recommendations=tuple(self.recommendations(anomalies)),
            baseline_version=snapshot.version,
        )

    def _check_statistical_outliers(self, m: MeasurementSummary, stats: Mapping[str, BaselineStats],
                                    anomalies: List[Anomaly]) -> None:
        checks = [
            ("total_area", "totalArea", m.total_area_sqft,
             ("Large commercial property", "Multi-building detection", "Measurement error", "Unusual property type"),
             "Review satellite imagery and verify property boundaries"),
            ("ridge_length", "ridgeLength", m.ridge_ft,
             ("Long rectangular building", "Multiple ridges not connected", "Detection error"),
             "Verify ridge line detection accuracy"),
        ]
        for key, metric, value, causes, action in checks:
            base = stats[key]
            if base.std_dev <= 0:
                continue
            z = (value - base.mean) / base.std_dev
            if abs(z) <= self.outlier_sigma:
                continue
            if key == "total_area":
                description = f"Total area is {abs(z):.1f} standard deviations from typical"
            else:
                description = f"Ridge length is unusually {'long' if z > 0 else 'short'}"
            anomalies.append(Anomaly(
                id=f"outlier-{metric}",
                type=AnomalyType.STATISTICAL_OUTLIER,
                severity=Severity.ERROR if abs(z) > self.error_sigma else Severity.WARNING,
                metric=metric,
                observed_value=value,
                expected_range=ExpectedRange(base.percentiles["p5"], base.percentiles["p95"]),
                deviation_percent=(z * base.std_dev / base.mean) * 100 if base.mean else 0.0,
                description=description,
                possible_causes=causes,
                suggested_action=action,
            ))

    def _check_geometric_constraints(self, m: MeasurementSummary, anomalies: List[Anomaly]) -> None:
        if m.total_area_sqft < self.min_area_sqft:
            anomalies.append(Anomaly(
                id="impossible-area",
                type=AnomalyType.IMPOSSIBLE_GEOMETRY,
                severity=Severity.CRITICAL,
                metric="totalArea",
                observed_value=m.total_area_sqft,
                expected_range=ExpectedRange(self.min_area_sqft, None),
                deviation_percent=-100.0,
                description="Total area is impossibly small for a roof",
                possible_causes=("Wrong scale detection", "Partial roof detected", "Non-roof structure detected"),
                suggested_action="Re-run measurement with manual scale verification",
            ))
        fields = {
            "totalArea": m.total_area_sqft,
            "ridgeLength": m.ridge_ft,
            "hipLength": m.hip_ft,
            "valleyLength": m.valley_ft,
            "eaveLength": m.eave_ft,
            "rakeLength": m.rake_ft,
        }
        for name, value in fields.items():
            if value < 0:
                anomalies.append(Anomaly(
                    id=f"negative-{name}",
                    type=AnomalyType.IMPOSSIBLE_GEOMETRY,
                    severity=Severity.CRITICAL,
                    metric=name,
                    observed_value=value,
                    expected_range=ExpectedRange(0.0, None),
                    deviation_percent=-100.0,
                    description=f"{name} has impossible negative value",
                    possible_causes=("Calculation error", "Data corruption"),
                    suggested_action="Re-run measurement or report bug",
                ))

    def _check_ratios(self, m: MeasurementSummary, anomalies: List[Anomaly]) -> None:
        perimeter = m.eave_ft + m.rake_ft
        if perimeter <= 0:
            return
        ratio = m.total_area_sqft / perimeter
        expected = ExpectedRange(self.min_area_to_perimeter, self.max_area_to_perimeter)
        if ratio < self.min_area_to_perimeter:
            anomalies.append(Anomaly(
                id="ratio-area-perimeter-low",
                type=AnomalyType.RATIO_VIOLATION,
                severity=Severity.WARNING,
                metric="areaToPerimeterRatio",
                observed_value=ratio,
                expected_range=expected,
                deviation_percent=(self.min_area_to_perimeter - ratio) / self.min_area_to_perimeter * 100,
                description="Roof shape is unusually narrow or irregular",
                possible_causes=("Very narrow building", "Incomplete perimeter detection", "Multiple small sections"),
                suggested_action="Review roof shape and verify perimeter",
            ))
        elif ratio > self.max_area_to_perimeter:
            anomalies.append(Anomaly(
                id="ratio-area-perimeter-high",
                type=AnomalyType.RATIO_VIOLATION,
                severity=Severity.WARNING,
                metric="areaToPerimeterRatio",
                observed_value=ratio,
                expected_range=expected,
                deviation_percent=(ratio - self.max_area_to_perimeter) / self.max_area_to_perimeter * 100,
                description="Perimeter is too short for the measured area",
                possible_causes=("Eaves or rakes not detected", "Area scale error"),
                suggested_action="Verify perimeter edge detection",
            ))

        ridge_ratio = m.ridge_ft / perimeter
        if ridge_ratio > self.max_ridge_to_perimeter:
            anomalies.append(Anomaly(
                id="ratio-ridge-perimeter-high",
                type=AnomalyType.RATIO_VIOLATION,
                severity=Severity.INFO,
                metric="ridgeToPerimeterRatio",
                observed_value=ridge_ratio,
                expected_range=ExpectedRange(self.min_ridge_to_perimeter, self.max_ridge_to_perimeter),
                deviation_percent=(ridge_ratio - self.max_ridge_to_perimeter) / self.max_ridge_to_perimeter * 100,
                description="Ridge is unusually long relative to building size",
                possible_causes=("Multiple ridge lines", "Very long narrow building", "Complex roof with many ridges"),
                suggested_action="Verify ridge line detection",
            ))

    def _check_missing_components(self, m: MeasurementSummary, anomalies: List[Anomaly]) -> None:
        if m.facet_count > 2 and m.hip_ft == 0 and m.rake_ft == 0:
            anomalies.append(Anomaly(
                id="missing-hip-rake",
                type=AnomalyType.MISSING_COMPONENT,
                severity=Severity.WARNING,
                metric="hipLength",
                observed_value=0.0,
                expected_range=ExpectedRange(1.0, None),
                deviation_percent=-100.0,
                description="Multiple facets detected but no hip or rake lines",
                possible_causes=("Hip lines not detected", "Gable ends not detected", "Detection algorithm issue"),
                suggested_action="Review facet boundaries for missing edge classifications",
            ))
        if m.total_area_sqft > self.sizable_area_sqft and m.eave_ft == 0:
            anomalies.append(Anomaly(
                id="missing-eave",
                type=AnomalyType.MISSING_COMPONENT,
                severity=Severity.ERROR,
                metric="eaveLength",
                observed_value=0.0,
                expected_range=ExpectedRange(1.0, None),
                deviation_percent=-100.0,
                description="No eave length detected on a sized roof",
                possible_causes=("Flat roof (may be correct)", "Perimeter not classified", "Edge detection failure"),
                suggested_action="Verify roof type and perimeter detection",
            ))

    def _check_pitch_consistency(self, pitches: Sequence[str], anomalies: List[Anomaly]) -> None:
        if len(pitches) < 2:
            return
        degrees = np.array([pitch_degrees(p) for p in pitches], dtype=float)
        spread = float(np.max(np.abs(degrees - degrees.mean())))
        if spread > self.max_pitch_variance_deg:
            anomalies.append(Anomaly(
                id="inconsistent-pitch",
                type=AnomalyType.INCONSISTENT_PITCH,
                severity=Severity.INFO,
                metric="pitchVariance",
                observed_value=spread,
                expected_range=ExpectedRange(0.0, self.max_pitch_variance_deg),
                deviation_percent=(spread - self.max_pitch_variance_deg) / self.max_pitch_variance_deg * 100,
                description=f"Facet pitches vary by {spread:.1f} degrees",
                possible_causes=("Multi-level roof (correct behavior)", "Addition with different pitch", "Pitch detection error"),
                suggested_action="Verify if pitch variation is expected for this property",
            ))

    def _check_edge_crossings(self, edges: Sequence[LinearFeature], anomalies: List[Anomaly]) -> None:
        if len(edges) < 2:
            return
        points: List[GeoPoint] = [p for e in edges for p in (e.start, e.end)]
        xy = to_local_meters(points)
        segs = [(tuple(xy[2 * i]), tuple(xy[2 * i + 1])) for i in range(len(edges))]
        for i in range(len(edges)):
            for j in range(i + 1, len(edges)):
                if segments_cross(segs[i][0], segs[i][1], segs[j][0], segs[j][1]):
                    anomalies.append(Anomaly(
                        id=f"edge-crossing-{edges[i].id}-{edges[j].id}",
                        type=AnomalyType.EDGE_CROSSING,
                        severity=Severity.ERROR,
                        metric="edgeIntersection",
                        observed_value=1.0,
                        expected_range=ExpectedRange(0.0, 0.0),
                        deviation_percent=100.0,
                        description=f"Edges {edges[i].type.value} and {edges[j].type.value} cross unexpectedly",
                        possible_causes=("Incorrect vertex placement", "Edge misclassification", "Complex geometry error"),
                        suggested_action="Review edge geometry and vertex positions",
                    ))

    @staticmethod
    def overall_risk(anomalies: Sequence[Anomaly]) -> RiskLevel:
        counts = {s: 0 for s in Severity}
        for a in anomalies:
            counts[a.severity] += 1
        if counts[Severity.CRITICAL] > 0:
            return RiskLevel.CRITICAL
        if counts[Severity.ERROR] > 1:
            return RiskLevel.HIGH
        if counts[Severity.ERROR] > 0 or counts[Severity.WARNING] > 2:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def recommendations(anomalies: Sequence[Anomaly]) -> List[str]:
        recs: List[str] = []
        types = {a.type for a in anomalies}
        if AnomalyType.IMPOSSIBLE_GEOMETRY in types:
            recs.append("Re-run measurement with manual verification")
        if AnomalyType.STATISTICAL_OUTLIER in types:
            recs.append("Compare with similar properties in the area")
        if AnomalyType.MISSING_COMPONENT in types:
            recs.append("Review edge classification for completeness")
        if AnomalyType.EDGE_CROSSING in types:
            recs.append("Inspect crossing edges and re-trace roof lines")
        if any(a.severity == Severity.CRITICAL for a in anomalies):
            recs.append("Route to expert review before use")
        if not recs:
            recs.append("Measurement appears valid")
        return recs
