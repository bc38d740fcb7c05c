from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from app.models.geometry import Facet, Footprint, LinearFeature


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class ConfidenceRating(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    STATISTICAL_OUTLIER = "statistical_outlier"
    IMPOSSIBLE_GEOMETRY = "impossible_geometry"
    RATIO_VIOLATION = "ratio_violation"
    MISSING_COMPONENT = "missing_component"
    INCONSISTENT_PITCH = "inconsistent_pitch"
    EDGE_CROSSING = "edge_crossing"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Pipeline(str, Enum):
    STANDARD = "standard"
    SPECIALIZED = "specialized"
    MANUAL = "manual"


@dataclass(frozen=True)
class MaterialQuantities:
    """Discrete purchase units, always rounded up."""
    shingle_bundles: int
    underlayment_rolls: int
    ice_water_shield_ft: int
    ice_water_shield_rolls: int
    drip_edge_ft: int
    drip_edge_sheets: int
    starter_strip_ft: int
    starter_strip_bundles: int
    hip_ridge_cap_ft: int
    hip_ridge_cap_bundles: int
    valley_metal_ft: int
    valley_metal_sheets: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass(frozen=True)
class AreaCalculation:
    total_plan_area_sqft: float
    total_adjusted_area_sqft: float
    total_squares: float
    predominant_pitch: str
    predominant_pitch_multiplier: float
    facet_adjusted_areas_sqft: Dict[str, float]
    linear_totals_ft: Dict[str, float]
    complexity: Complexity
    waste_factor_percent: float
    squares_with_waste: float
    materials: MaterialQuantities


@dataclass(frozen=True)
class ConfidencePenalty:
    factor: str
    points: float
    detail: str

    def to_dict(self) -> dict:
        return {"factor": self.factor, "points": self.points, "detail": self.detail}


@dataclass(frozen=True)
class QualityMetrics:
    facet_closure_score: float
    edge_continuity_score: float
    cross_source_variance: Optional[float] = None
    internal_consistency_error: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "facet_closure_score": round(self.facet_closure_score, 3),
            "edge_continuity_score": round(self.edge_continuity_score, 3),
            "cross_source_variance": None if self.cross_source_variance is None else round(self.cross_source_variance, 4),
            "internal_consistency_error": None if self.internal_consistency_error is None else round(self.internal_consistency_error, 4),
        }


@dataclass(frozen=True)
class ConfidenceReport:
    score: float
    rating: ConfidenceRating
    manual_review_required: bool
    penalties: Tuple[ConfidencePenalty, ...]
    quality_metrics: QualityMetrics


@dataclass(frozen=True)
class ExpectedRange:
    min: float
    max: Optional[float] = None  # open-ended


@dataclass(frozen=True)
class Anomaly:
    id: str
    type: AnomalyType
    severity: Severity
    metric: str
    observed_value: float
    expected_range: ExpectedRange
    deviation_percent: float
    description: str
    possible_causes: Tuple[str, ...] = ()
    suggested_action: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "metric": self.metric,
            "observed_value": round(self.observed_value, 4),
            "expected_range": {"min": self.expected_range.min, "max": self.expected_range.max},
            "deviation_percent": round(self.deviation_percent, 1),
            "description": self.description,
            "possible_causes": list(self.possible_causes),
            "suggested_action": self.suggested_action,
        }


@dataclass(frozen=True)
class AnomalyReport:
    anomalies: Tuple[Anomaly, ...]
    overall_risk: RiskLevel
    recommendations: Tuple[str, ...]
    baseline_version: int = 0

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def to_dict(self) -> dict:
        return {
            "anomalies": [a.to_dict() for a in self.anomalies],
            "overall_risk": self.overall_risk.value,
            "has_anomalies": self.has_anomalies,
            "recommendations": list(self.recommendations),
            "baseline_version": self.baseline_version,
        }


@dataclass(frozen=True)
class PatternMatch:
    pattern: str
    confidence: float
    matched_indicators: Tuple[str, ...]
    passed_tests: Tuple[str, ...]
    handling_notes: str

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "confidence": round(self.confidence, 1),
            "matched_indicators": list(self.matched_indicators),
            "passed_tests": list(self.passed_tests),
            "handling_notes": self.handling_notes,
        }


@dataclass(frozen=True)
class EdgeCaseDetection:
    is_edge_case: bool
    detected_patterns: Tuple[PatternMatch, ...]
    recommended_pipeline: Pipeline
    confidence_adjustment: float
    special_instructions: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "is_edge_case": self.is_edge_case,
            "detected_patterns": [p.to_dict() for p in self.detected_patterns],
            "recommended_pipeline": self.recommended_pipeline.value,
            "confidence_adjustment": self.confidence_adjustment,
            "special_instructions": list(self.special_instructions),
        }


@dataclass(frozen=True)
class MeasurementResult:
    """Sole output of a measurement run."""
    footprint: Footprint
    facets: Tuple[Facet, ...]
    linear_features: Tuple[LinearFeature, ...]
    area: AreaCalculation
    confidence: ConfidenceReport
    anomalies: AnomalyReport
    edge_cases: EdgeCaseDetection
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def total_adjusted_area_sqft(self) -> float:
        return self.area.total_adjusted_area_sqft

    @property
    def overall_confidence(self) -> float:
        return self.confidence.score

    @property
    def manual_review_required(self) -> bool:
        return self.confidence.manual_review_required

    def to_dict(self) -> dict:
        area = self.area
        return {
            "footprint": self.footprint.to_dict(),
            "facets": [f.to_dict() for f in self.facets],
            "linear_features": [f.to_dict() for f in self.linear_features],
            "total_plan_area_sqft": round(area.total_plan_area_sqft, 2),
            "total_adjusted_area_sqft": round(area.total_adjusted_area_sqft, 2),
            "total_squares": round(area.total_squares, 2),
            "predominant_pitch": area.predominant_pitch,
            "predominant_pitch_multiplier": round(area.predominant_pitch_multiplier, 4),
            "complexity": area.complexity.value,
            "waste_factor_percent": area.waste_factor_percent,
            "squares_with_waste": round(area.squares_with_waste, 2),
            "linear_totals_ft": {k: round(v, 2) for k, v in area.linear_totals_ft.items()},
            "materials": area.materials.to_dict(),
            "quality_metrics": self.confidence.quality_metrics.to_dict(),
            "overall_confidence": round(self.confidence.score, 1),
            "confidence_rating": self.confidence.rating.value,
            "confidence_penalties": [p.to_dict() for p in self.confidence.penalties],
            "manual_review_required": self.confidence.manual_review_required,
            "anomalies": self.anomalies.to_dict(),
            "edge_cases": self.edge_cases.to_dict(),
            "warnings": list(self.warnings),
        }
