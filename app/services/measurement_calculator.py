import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence

from app.models.geometry import Facet, Footprint, LinearFeature, LinearFeatureType, pitch_multiplier
from app.models.measurement import AreaCalculation, Complexity, MaterialQuantities
from app.services.linear_features import linear_totals

logger = logging.getLogger(__name__)

DEFAULT_PITCH = "6/12"


class MeasurementCalculator:
    """
    Converts resolved geometry into pitch-adjusted area, waste and materials.
    """

    def __init__(self):
        # (min facets, min hip+valley ft) thresholds, evaluated most complex first
        self.complexity_thresholds = [
            (Complexity.VERY_COMPLEX, 15, 200.0),
            (Complexity.COMPLEX, 10, 120.0),
            (Complexity.MODERATE, 6, 60.0),
        ]
        self.waste_percent = {
            Complexity.VERY_COMPLEX: 20.0,
            Complexity.COMPLEX: 15.0,
            Complexity.MODERATE: 12.0,
            Complexity.SIMPLE: 10.0,
        }

        # Coverage per purchase unit
        self.bundles_per_square = 3
        self.underlayment_sqft_per_roll = 400.0
        self.ice_water_ft_per_roll = 65.0
        self.drip_edge_ft_per_sheet = 10.0
        self.starter_ft_per_bundle = 105.0
        self.ridge_cap_ft_per_bundle = 20.0
        self.valley_metal_ft_per_sheet = 8.0

    @staticmethod
    def predominant_pitch(facets: Sequence[Facet], hints: Optional[Sequence[str]] = None) -> str:
        """Modal pitch across facets; ties go to the pitch seen first."""
        pitches: List[str] = [f.pitch for f in facets if f.pitch] or list(hints or [])
        if not pitches:
            return DEFAULT_PITCH
        counts = Counter(pitches)
        best = max(counts.values())
        for p in pitches:
            if counts[p] == best:
                return p
        return DEFAULT_PITCH

    def classify_complexity(self, facet_count: int, hip_valley_ft: float) -> Complexity:
        for level, min_facets, min_length in self.complexity_thresholds:
            if facet_count >= min_facets or hip_valley_ft > min_length:
                return level
        return Complexity.SIMPLE

    def calculate(self, footprint: Footprint, facets: Sequence[Facet],
                  features: Sequence[LinearFeature],
                  pitch_hints: Optional[Sequence[str]] = None) -> AreaCalculation:
        predominant = self.predominant_pitch(facets, pitch_hints)
        predominant_mult = pitch_multiplier(predominant)

        adjusted: Dict[str, float] = {}
        for facet in facets:
            adjusted[facet.id] = facet.plan_area_sqft * pitch_multiplier(facet.pitch)

        if facets:
            plan_total = sum(f.plan_area_sqft for f in facets)
            adjusted_total = sum(adjusted.values())
        else:
            plan_total = footprint.area_sqft
            adjusted_total = footprint.area_sqft * predominant_mult
            logger.info(f"No facets; using footprint area x {predominant} multiplier")

        totals = linear_totals(features)
        hip_valley = totals[LinearFeatureType.HIP.value] + totals[LinearFeatureType.VALLEY.value]
        complexity = self.classify_complexity(len(facets), hip_valley)
        waste = self.waste_percent[complexity]

        squares = adjusted_total / 100.0
        squares_with_waste = squares * (1.0 + waste / 100.0)
        materials = self.materials(squares, squares_with_waste, totals)

        logger.debug(
            f"Area: plan={plan_total:.1f} adjusted={adjusted_total:.1f} pitch={predominant} "
            f"complexity={complexity.value} waste={waste}%"
        )
        return AreaCalculation(
            total_plan_area_sqft=plan_total,
            total_adjusted_area_sqft=adjusted_total,
            total_squares=squares,
            predominant_pitch=predominant,
            predominant_pitch_multiplier=predominant_mult,
            facet_adjusted_areas_sqft=adjusted,
            linear_totals_ft=totals,
            complexity=complexity,
            waste_factor_percent=waste,
            squares_with_waste=squares_with_waste,
            materials=materials,
        )

    def materials(self, squares: float, squares_with_waste: float,
                  totals: Dict[str, float]) -> MaterialQuantities:
        eave = totals.get("eave", 0.0)
        rake = totals.get("rake", 0.0)
        valley = totals.get("valley", 0.0)
        hip_ridge = totals.get("hip", 0.0) + totals.get("ridge", 0.0)

        ice_water = eave * 2.0 + valley
        perimeter_edge = eave + rake
        return MaterialQuantities(
            shingle_bundles=_ceil(squares_with_waste * self.bundles_per_square),
            underlayment_rolls=_ceil(squares * 100.0 / self.underlayment_sqft_per_roll),
            ice_water_shield_ft=_ceil(ice_water),
            ice_water_shield_rolls=_ceil(ice_water / self.ice_water_ft_per_roll),
            drip_edge_ft=_ceil(perimeter_edge),
            drip_edge_sheets=_ceil(perimeter_edge / self.drip_edge_ft_per_sheet),
            starter_strip_ft=_ceil(perimeter_edge),
            starter_strip_bundles=_ceil(perimeter_edge / self.starter_ft_per_bundle),
            hip_ridge_cap_ft=_ceil(hip_ridge),
            hip_ridge_cap_bundles=_ceil(hip_ridge / self.ridge_cap_ft_per_bundle),
            valley_metal_ft=_ceil(valley),
            valley_metal_sheets=_ceil(valley / self.valley_metal_ft_per_sheet),
        )


def _ceil(value: float) -> int:
    # round away float noise such as 12.000000000001 before taking the ceiling
    return int(math.ceil(round(value, 6))) if value > 0 else 0
