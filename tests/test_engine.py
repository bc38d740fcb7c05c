import pytest

from app.models.geometry import FootprintSource, ImageryQuality
from app.models.measurement import Complexity, ConfidenceRating, Pipeline, RiskLevel
from app.models.sources import BuildingInsightResult, MeasurementRequest, RoofSegment
from app.services import MeasurementEngine
from app.services.anomaly_detector import BaselineRegistry
from app.services.errors import FootprintUnavailableError
from app.settings import Settings

from roof_fixtures import CENTER, FRAME, geo_box, geo_rect, offset, simple_gable_request


@pytest.fixture
def engine():
    return MeasurementEngine(Settings(), BaselineRegistry())


def _factors(result):
    return {p.factor: p.points for p in result.confidence.penalties}


def test_simple_gable_end_to_end(engine):
    result = engine.measure(simple_gable_request())

    assert result.total_adjusted_area_sqft == pytest.approx(1118.03, rel=1e-3)
    assert result.area.predominant_pitch == "6/12"
    assert result.area.complexity == Complexity.SIMPLE
    assert result.overall_confidence == 100.0
    assert result.confidence.rating == ConfidenceRating.EXCELLENT
    assert not result.manual_review_required

    fp = result.footprint
    assert fp.source == FootprintSource.BUILDING_INSIGHT_API
    # 40 x 25 box pushed out 2 ft along its half-diagonal
    assert fp.area_sqft == pytest.approx(1176.8, rel=2e-3)

    eaves = [f for f in result.linear_features if f.type.value == "eave"]
    assert len(eaves) == 4
    assert result.area.linear_totals_ft["eave"] == pytest.approx(130.0, rel=1e-3)

    assert result.edge_cases.recommended_pipeline == Pipeline.STANDARD
    assert result.anomalies.overall_risk == RiskLevel.LOW
    assert result.warnings == ()


def test_vision_only_run_is_unverifiable(engine):
    result = engine.measure(simple_gable_request(building_insight_result=None))
    assert result.footprint.source == FootprintSource.FUSED
    assert _factors(result) == {"cross_source_variance": 15.0}
    assert result.overall_confidence == 85.0
    assert result.confidence.rating == ConfidenceRating.GOOD
    assert result.total_adjusted_area_sqft == pytest.approx(1118.03, rel=1e-3)


def test_low_quality_insight_falls_back_to_vision(engine):
    request = simple_gable_request()
    low = BuildingInsightResult(
        bounding_box=request.building_insight_result.bounding_box,
        segments=request.building_insight_result.segments,
        imagery_quality=ImageryQuality.LOW,
        footprint_area_sqft=1030.0,
    )
    result = engine.measure(simple_gable_request(building_insight_result=low))
    assert result.footprint.source == FootprintSource.FUSED
    assert _factors(result) == {"imagery_quality": 15.0, "cross_source_variance": 15.0}
    assert result.overall_confidence == 70.0
    assert result.confidence.rating == ConfidenceRating.FAIR
    assert result.manual_review_required
    assert any("too low" in w for w in result.warnings)


def test_manual_override_footprint(engine):
    result = engine.measure(simple_gable_request(manual_override_polygon=geo_rect(50, 40)))
    fp = result.footprint
    assert fp.source == FootprintSource.MANUAL_OVERRIDE
    assert fp.confidence == 1.0
    assert fp.area_sqft == pytest.approx(2000.0, rel=1e-3)
    # facets still come from the detector
    assert result.total_adjusted_area_sqft == pytest.approx(1118.03, rel=1e-3)


def test_insight_segments_stand_in_for_missing_facets(engine):
    result = engine.measure(simple_gable_request(vision_model_result=None))
    assert [f.id for f in result.facets] == ["segment-1"]
    assert result.facets[0].pitch == "6/12"
    # plan area is the provider's own box, so variance is not an independent check
    assert _factors(result) == {"cross_source_variance": 15.0}


def test_no_sources_cannot_measure(engine):
    with pytest.raises(FootprintUnavailableError) as exc:
        engine.measure(MeasurementRequest(image_frame=FRAME))
    assert exc.value.code == "cannot_measure"


def test_geometry_summary_counts_height_levels():
    west = geo_box(20, 30, offset(CENTER, -10, 0))
    east = geo_box(20, 30, offset(CENTER, 10, 0))
    request = simple_gable_request(building_insight_result=BuildingInsightResult(
        bounding_box=geo_box(40, 30),
        segments=(
            RoofSegment(bounding_box=west, pitch_degrees=26.57, azimuth_degrees=270.0, height_m=3.0),
            RoofSegment(bounding_box=east, pitch_degrees=26.57, azimuth_degrees=90.0, height_m=9.0),
        ),
        imagery_quality=ImageryQuality.HIGH,
    ))
    summary = MeasurementEngine.geometry_summary(request, geo_rect(40, 30), [], [])
    assert summary.height_levels == 2
    assert [h for _, h in summary.sections] == [3.0, 9.0]
    assert summary.facet_count == 0
