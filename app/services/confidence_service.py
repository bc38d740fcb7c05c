import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.models.geometry import Facet, ImageryQuality, LinearFeature
from app.models.measurement import (
    Complexity,
    ConfidencePenalty,
    ConfidenceRating,
    ConfidenceReport,
    QualityMetrics,
)

logger = logging.getLogger(__name__)


@dataclass
class ConfidenceInputs:
    complexity: Complexity
    facets: Sequence[Facet] = ()
    linear_features: Sequence[LinearFeature] = ()
    # None when the vision model did not contribute
    detector_confidence: Optional[float] = None
    imagery_quality: Optional[ImageryQuality] = None
    measured_plan_area_sqft: float = 0.0
    # Building-insight ground area; None when no independent source exists
    reference_area_sqft: Optional[float] = None
    reference_is_independent: bool = True
    facet_adjusted_sum_sqft: Optional[float] = None
    reported_total_sqft: Optional[float] = None


class ConfidenceEngine:
    """
    Starts from 100 and subtracts independent, capped penalties.

    Facet closure and edge continuity are reported alongside the score but
    do not move it.
    """

    def __init__(self, min_imagery_quality: str = "medium", review_threshold: float = 75.0):
        self.min_imagery_quality = ImageryQuality(min_imagery_quality)
        self.review_threshold = review_threshold

        self.detector_penalty = {"high": 0.0, "medium": 12.0, "low": 25.0}
        self.imagery_penalty = 15.0
        # (variance above, points)
        self.variance_penalties = [(0.25, 30.0), (0.15, 20.0), (0.10, 10.0)]
        self.unverifiable_penalty = 15.0
        self.complexity_penalty = {
            Complexity.VERY_COMPLEX: 15.0,
            Complexity.COMPLEX: 10.0,
            Complexity.MODERATE: 5.0,
            Complexity.SIMPLE: 0.0,
        }
        self.consistency_tolerance = 0.05
        self.consistency_penalty = 10.0

        self.closure_tolerance_px = 5.0
        self.min_feature_ft = 3.0
        self.max_feature_ft = 100.0

    @staticmethod
    def detector_level(confidence: float) -> str:
        if confidence >= 0.8:
            return "high"
        if confidence >= 0.6:
            return "medium"
        return "low"

    @staticmethod
    def rating_for(score: float) -> ConfidenceRating:
        if score >= 90:
            return ConfidenceRating.EXCELLENT
        if score >= 75:
            return ConfidenceRating.GOOD
        if score >= 60:
            return ConfidenceRating.FAIR
        return ConfidenceRating.POOR

    def evaluate(self, inputs: ConfidenceInputs) -> ConfidenceReport:
        penalties: List[ConfidencePenalty] = []

        if inputs.detector_confidence is not None:
            level = self.detector_level(inputs.detector_confidence)
            points = self.detector_penalty[level]
            if points:
                penalties.append(ConfidencePenalty(
                    "detector_confidence", points, f"Detector confidence {level} ({inputs.detector_confidence:.2f})"
                ))

        if inputs.imagery_quality is not None and inputs.imagery_quality.rank < self.min_imagery_quality.rank:
            penalties.append(ConfidencePenalty(
                "imagery_quality", self.imagery_penalty,
                f"Imagery quality '{inputs.imagery_quality.value}' below '{self.min_imagery_quality.value}'",
            ))

        variance = self.cross_source_variance(inputs)
        if variance is None:
            penalties.append(ConfidencePenalty(
                "cross_source_variance", self.unverifiable_penalty, "No independent area source; unverifiable",
            ))
        else:
            for limit, points in self.variance_penalties:
                if variance > limit:
                    penalties.append(ConfidencePenalty(
                        "cross_source_variance", points, f"Area differs from building insight by {variance * 100:.1f}%",
                    ))
                    break

        complexity_points = self.complexity_penalty[inputs.complexity]
        if complexity_points:
            penalties.append(ConfidencePenalty(
                "complexity", complexity_points, f"Roof complexity {inputs.complexity.value}",
            ))

        consistency = self.consistency_error(inputs)
        if consistency is not None and consistency > self.consistency_tolerance:
            penalties.append(ConfidencePenalty(
                "internal_consistency", self.consistency_penalty,
                f"Facet areas differ from reported total by {consistency * 100:.1f}%",
            ))

        score = 100.0 - sum(p.points for p in penalties)
        score = float(min(100.0, max(0.0, score)))
        rating = self.rating_for(score)
        metrics = QualityMetrics(
            facet_closure_score=self.facet_closure_score(inputs.facets),
            edge_continuity_score=self.edge_continuity_score(inputs.linear_features),
            cross_source_variance=variance,
            internal_consistency_error=consistency,
        )
        logger.info(f"Confidence {score:.0f} ({rating.value}), {len(penalties)} penalties")
        return ConfidenceReport(
            score=score,
            rating=rating,
            manual_review_required=score < self.review_threshold,
            penalties=tuple(penalties),
            quality_metrics=metrics,
        )

    @staticmethod
    def cross_source_variance(inputs: ConfidenceInputs) -> Optional[float]:
        ref = inputs.reference_area_sqft
        if ref is None or ref <= 0 or not inputs.reference_is_independent:
            return None
        return abs(inputs.measured_plan_area_sqft - ref) / ref

    @staticmethod
    def consistency_error(inputs: ConfidenceInputs) -> Optional[float]:
        total = inputs.reported_total_sqft
        facet_sum = inputs.facet_adjusted_sum_sqft
        if facet_sum is None or total is None or total <= 0:
            return None
        return abs(facet_sum - total) / total

    def facet_closure_score(self, facets: Sequence[Facet]) -> float:
        """Share of facets whose outline closes on itself (first/last pixel within tolerance).

        Facets without a pixel outline are closed by construction.
        """
        if not facets:
            return 0.0
        closed = 0
        for facet in facets:
            ring = facet.pixel_polygon
            if not ring:
                closed += 1
                continue
            first, last = ring[0], ring[-1]
            if len(ring) >= 3 and math.hypot(first.x - last.x, first.y - last.y) <= self.closure_tolerance_px:
                closed += 1
        return closed / len(facets)

    def edge_continuity_score(self, features: Sequence[LinearFeature]) -> float:
        if not features:
            return 0.5
        plausible = sum(1 for f in features if self.min_feature_ft <= f.length_ft <= self.max_feature_ft)
        return plausible / len(features)
