import pytest

from app.models.geometry import Facet, ImageryQuality, LinearFeature, LinearFeatureType, PixelPoint
from app.models.measurement import Complexity, ConfidenceRating
from app.services.confidence_service import ConfidenceEngine, ConfidenceInputs

from roof_fixtures import CENTER, geo_rect, offset


def _clean_inputs(**overrides):
    fields = dict(
        complexity=Complexity.SIMPLE,
        detector_confidence=0.9,
        imagery_quality=ImageryQuality.HIGH,
        measured_plan_area_sqft=1000.0,
        reference_area_sqft=1030.0,
        reference_is_independent=True,
        facet_adjusted_sum_sqft=1118.0,
        reported_total_sqft=1118.0,
    )
    fields.update(overrides)
    return ConfidenceInputs(**fields)


def _factors(report):
    return {p.factor: p.points for p in report.penalties}


def test_clean_measurement_scores_full_marks():
    report = ConfidenceEngine().evaluate(_clean_inputs())
    assert report.score == 100.0
    assert report.rating == ConfidenceRating.EXCELLENT
    assert not report.manual_review_required
    assert report.penalties == ()


def test_every_penalty_stacks():
    report = ConfidenceEngine().evaluate(_clean_inputs(
        complexity=Complexity.VERY_COMPLEX,
        detector_confidence=0.3,
        imagery_quality=ImageryQuality.LOW,
        measured_plan_area_sqft=1500.0,
        reported_total_sqft=900.0,
    ))
    assert _factors(report) == {
        "detector_confidence": 25.0,
        "imagery_quality": 15.0,
        "cross_source_variance": 30.0,
        "complexity": 15.0,
        "internal_consistency": 10.0,
    }
    assert report.score == 5.0
    assert report.rating == ConfidenceRating.POOR
    assert report.manual_review_required


def test_score_clamped_to_zero():
    engine = ConfidenceEngine()
    engine.detector_penalty["low"] = 200.0
    report = engine.evaluate(_clean_inputs(detector_confidence=0.1))
    assert report.score == 0.0


@pytest.mark.parametrize("detector,expected", [(0.95, 0.0), (0.8, 0.0), (0.7, 12.0), (0.6, 12.0), (0.59, 25.0)])
def test_detector_bands(detector, expected):
    report = ConfidenceEngine().evaluate(_clean_inputs(detector_confidence=detector))
    assert _factors(report).get("detector_confidence", 0.0) == expected


@pytest.mark.parametrize("measured,expected", [(1000.0, 0.0), (1120.0, 10.0), (1170.0, 20.0), (1300.0, 30.0)])
def test_variance_bands(measured, expected):
    report = ConfidenceEngine().evaluate(_clean_inputs(measured_plan_area_sqft=measured, reference_area_sqft=1000.0))
    assert _factors(report).get("cross_source_variance", 0.0) == expected


def test_missing_or_dependent_reference_is_unverifiable():
    engine = ConfidenceEngine()
    assert _factors(engine.evaluate(_clean_inputs(reference_area_sqft=None)))["cross_source_variance"] == 15.0
    report = engine.evaluate(_clean_inputs(reference_is_independent=False))
    assert _factors(report)["cross_source_variance"] == 15.0
    assert report.quality_metrics.cross_source_variance is None


def test_absent_sources_cost_nothing():
    report = ConfidenceEngine().evaluate(_clean_inputs(detector_confidence=None, imagery_quality=None))
    assert "detector_confidence" not in _factors(report)
    assert "imagery_quality" not in _factors(report)


def test_medium_imagery_meets_default_threshold():
    engine = ConfidenceEngine()
    assert "imagery_quality" not in _factors(engine.evaluate(_clean_inputs(imagery_quality=ImageryQuality.MEDIUM)))
    strict = ConfidenceEngine(min_imagery_quality="high")
    assert _factors(strict.evaluate(_clean_inputs(imagery_quality=ImageryQuality.MEDIUM)))["imagery_quality"] == 15.0


@pytest.mark.parametrize("score,rating", [(95, "EXCELLENT"), (90, "EXCELLENT"), (89.9, "GOOD"), (75, "GOOD"),
                                          (74, "FAIR"), (60, "FAIR"), (59, "POOR")])
def test_rating_bands(score, rating):
    assert ConfidenceEngine.rating_for(score).value == rating


def test_review_threshold_at_75():
    engine = ConfidenceEngine()
    # 15 + 10 = 25 points off
    report = engine.evaluate(_clean_inputs(complexity=Complexity.VERY_COMPLEX, reported_total_sqft=900.0))
    assert report.score == 75.0
    assert not report.manual_review_required
    report = engine.evaluate(_clean_inputs(complexity=Complexity.VERY_COMPLEX, detector_confidence=0.7))
    assert report.score == 73.0
    assert report.manual_review_required


def test_quality_metrics():
    engine = ConfidenceEngine()
    closed = Facet(id="a", polygon=geo_rect(20, 20), plan_area_sqft=400, pitch="6/12",
                   pixel_polygon=(PixelPoint(0, 0), PixelPoint(10, 0), PixelPoint(10, 10), PixelPoint(1, 1)))
    open_ring = Facet(id="b", polygon=geo_rect(20, 20), plan_area_sqft=400, pitch="6/12",
                      pixel_polygon=(PixelPoint(0, 0), PixelPoint(50, 0), PixelPoint(50, 50), PixelPoint(0, 50)))
    derived = Facet(id="c", polygon=geo_rect(20, 20), plan_area_sqft=400, pitch="6/12")
    assert engine.facet_closure_score([closed, open_ring, derived]) == pytest.approx(2 / 3)
    assert engine.facet_closure_score([]) == 0.0

    def feature(length):
        return LinearFeature(id=str(length), type=LinearFeatureType.EAVE, start=CENTER,
                             end=offset(CENTER, length, 0), length_ft=length)

    assert engine.edge_continuity_score([feature(2), feature(40), feature(150), feature(100)]) == 0.5
    assert engine.edge_continuity_score([]) == 0.5
