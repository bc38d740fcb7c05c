import logging
import time
from typing import List, Optional

from app.models.geometry import FootprintSource, LinearFeatureType, parse_pitch
from app.models.measurement import MeasurementResult
from app.models.sources import MeasurementRequest, SourceGeometry
from app.services.anomaly_detector import AnomalyDetector, BaselineRegistry, MeasurementSummary
from app.services.confidence_service import ConfidenceEngine, ConfidenceInputs
from app.services.edge_case_classifier import EdgeCaseClassifier, RoofGeometrySummary, count_height_levels
from app.services.footprint_service import FootprintResolver
from app.services.linear_features import LinearFeatureExtractor, get_edge_classifier
from app.services.measurement_calculator import MeasurementCalculator
from app.services.source_adapters import BuildingInsightAdapter, ManualOverrideAdapter, VisionModelAdapter
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class MeasurementEngine:
    """
    Entry point for one measurement run.

    Inputs are already-resolved source payloads; any subset may be absent.
    The engine keeps no per-request state, so one instance can serve
    concurrent requests. The only shared mutable piece is the baseline
    registry, which swaps snapshots atomically.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 baseline_registry: Optional[BaselineRegistry] = None):
        self.settings = settings or get_settings()
        s = self.settings
        extractor = LinearFeatureExtractor(
            classifier=get_edge_classifier(s.edge_classifier),
            min_length_ft=s.min_linear_feature_ft,
            adjacency_tolerance_m=s.segment_adjacency_tolerance_m,
        )
        self.vision_adapter = VisionModelAdapter(extractor)
        self.insight_adapter = BuildingInsightAdapter(extractor)
        self.manual_adapter = ManualOverrideAdapter()
        self.resolver = FootprintResolver(
            overhang_ft=s.overhang_ft,
            min_area_sqft=s.footprint_min_sqft,
            max_area_sqft=s.footprint_max_sqft,
            simplify_tolerance_ft=s.simplify_tolerance_ft,
            snap_angles=s.simplify_snap_angles,
            angle_threshold_deg=s.simplify_angle_threshold_deg,
        )
        self.calculator = MeasurementCalculator()
        self.confidence_engine = ConfidenceEngine(min_imagery_quality=s.min_imagery_quality)
        self.anomaly_detector = AnomalyDetector(baseline_registry)
        self.edge_case_classifier = EdgeCaseClassifier()

    def measure(self, request: MeasurementRequest) -> MeasurementResult:
        started = time.time()
        frame = request.image_frame
        warnings: List[str] = []

        manual: Optional[SourceGeometry] = None
        if request.manual_override_polygon is not None:
            manual = self.manual_adapter.adapt(request.manual_override_polygon)
        vision: Optional[SourceGeometry] = None
        if request.vision_model_result is not None:
            vision = self.vision_adapter.adapt(request.vision_model_result, frame)
            warnings.extend(vision.warnings)
        insight: Optional[SourceGeometry] = None
        if request.building_insight_result is not None:
            insight = self.insight_adapter.adapt(request.building_insight_result)
            warnings.extend(insight.warnings)

        # the provider's ground area only counts when the provider itself was accepted
        reference_area = None
        if insight is not None and insight.footprint_candidate:
            reference_area = request.building_insight_result.footprint_area_sqft

        resolution = self.resolver.resolve(manual, insight, vision, reference_area)
        footprint = resolution.footprint
        warnings.extend(resolution.warnings)

        facets = list(vision.facets) if vision is not None else []
        facets_from_insight = False
        if not facets and insight is not None and insight.facets:
            facets = list(insight.facets)
            facets_from_insight = True
            logger.info(f"No vision facets; using {len(facets)} building insight segments")
        features = list(vision.linear_features) if vision is not None else []
        if not features and insight is not None:
            features = list(insight.linear_features)

        pitch_hints = insight.pitch_hints if insight is not None else None
        area = self.calculator.calculate(footprint, facets, features, pitch_hints)

        reference_independent = not facets_from_insight and not (
            not facets and footprint.source == FootprintSource.BUILDING_INSIGHT_API
        )
        detector_confidence = None
        if vision is not None:
            detector_confidence = vision.confidence
            if detector_confidence is None and vision.facets:
                detector_confidence = sum(f.confidence for f in vision.facets) / len(vision.facets)
        reported_total = None
        if facets:
            reported_total = area.total_adjusted_area_sqft
            if request.vision_model_result is not None and request.vision_model_result.total_area_sqft:
                reported_total = request.vision_model_result.total_area_sqft

        confidence = self.confidence_engine.evaluate(ConfidenceInputs(
            complexity=area.complexity,
            facets=facets,
            linear_features=features,
            detector_confidence=detector_confidence,
            imagery_quality=request.building_insight_result.imagery_quality if request.building_insight_result else None,
            measured_plan_area_sqft=area.total_plan_area_sqft,
            reference_area_sqft=reference_area,
            reference_is_independent=reference_independent,
            facet_adjusted_sum_sqft=sum(area.facet_adjusted_areas_sqft.values()) if facets else None,
            reported_total_sqft=reported_total,
        ))

        totals = area.linear_totals_ft
        anomalies = self.anomaly_detector.detect(MeasurementSummary(
            total_area_sqft=area.total_adjusted_area_sqft,
            ridge_ft=totals["ridge"],
            hip_ft=totals["hip"],
            valley_ft=totals["valley"],
            eave_ft=totals["eave"],
            rake_ft=totals["rake"],
            facet_count=len(facets),
            facet_pitches=[f.pitch for f in facets],
            edges=features,
        ))

        edge_cases = self.edge_case_classifier.classify(
            self.geometry_summary(request, footprint.polygon, facets, features),
            list(request.image_features) if request.image_features else None,
        )

        elapsed_ms = (time.time() - started) * 1000.0
        logger.info(
            f"Measured {area.total_adjusted_area_sqft:.0f} sq ft from {footprint.source.value} footprint, "
            f"confidence {confidence.score:.0f}, risk {anomalies.overall_risk.value}, {elapsed_ms:.1f} ms"
        )
        return MeasurementResult(
            footprint=footprint,
            facets=tuple(facets),
            linear_features=tuple(features),
            area=area,
            confidence=confidence,
            anomalies=anomalies,
            edge_cases=edge_cases,
            warnings=tuple(warnings),
        )

    @staticmethod
    def geometry_summary(request: MeasurementRequest, footprint, facets, features) -> RoofGeometrySummary:
        ridges = [(f.start, f.end) for f in features if f.type == LinearFeatureType.RIDGE]
        valleys = [(f.start, f.end) for f in features if f.type == LinearFeatureType.VALLEY]
        pitches = []
        for facet in facets:
            rise, run = parse_pitch(facet.pitch)
            pitches.append(round(rise * 12.0 / run, 2))
        sections = []
        heights = []
        insight = request.building_insight_result
        if insight is not None:
            for seg in insight.segments:
                if seg.height_m is not None:
                    heights.append(seg.height_m)
                    sections.append((seg.bounding_box.center(), seg.height_m))
        return RoofGeometrySummary(
            facet_count=len(facets),
            ridge_count=len(ridges),
            hip_count=sum(1 for f in features if f.type == LinearFeatureType.HIP),
            valley_count=len(valleys),
            pitches=pitches,
            height_levels=count_height_levels(heights),
            footprint=list(footprint),
            ridges=ridges,
            valleys=valleys,
            facet_vertex_counts=[f.vertex_count for f in facets],
            sections=sections,
        )
