import pytest

from app.models.geometry import LinearFeatureType, PixelPoint
from app.models.sources import RoofSegment, VisionLinearFeature
from app.services.linear_features import (
    AzimuthEdgeClassifier,
    LinearFeatureExtractor,
    SlopeAwareEdgeClassifier,
    azimuth_difference,
    get_edge_classifier,
    linear_totals,
)

from roof_fixtures import CENTER, FRAME, geo_box, offset, px_per_ft


def _north_south_pair(north_azimuth, south_azimuth):
    """Two 40 x 15 ft segments meeting along an east-west line through the center."""
    north = RoofSegment(bounding_box=geo_box(40, 15, offset(CENTER, 0, 7.5)), azimuth_degrees=north_azimuth)
    south = RoofSegment(bounding_box=geo_box(40, 15, offset(CENTER, 0, -7.5)), azimuth_degrees=south_azimuth)
    return north, south


def test_azimuth_difference_folds_into_circle():
    assert azimuth_difference(10, 185) == pytest.approx(175)
    assert azimuth_difference(350, 10) == pytest.approx(340)
    assert azimuth_difference(90, 90) == 0


def test_opposing_segments_share_a_ridge():
    north, south = _north_south_pair(10, 185)
    features = LinearFeatureExtractor().from_segments([north, south], geo_box(40, 30))
    ridges = [f for f in features if f.type == LinearFeatureType.RIDGE]
    assert len(ridges) == 1
    assert ridges[0].length_ft == pytest.approx(40.0, rel=1e-3)
    assert ridges[0].start.lat == pytest.approx(CENTER.lat, abs=1e-9)


def test_outer_box_contributes_four_eaves():
    north, south = _north_south_pair(10, 185)
    features = LinearFeatureExtractor().from_segments([north, south], geo_box(40, 30))
    eaves = [f for f in features if f.type == LinearFeatureType.EAVE]
    assert len(eaves) == 4
    assert sum(f.length_ft for f in eaves) == pytest.approx(140.0, rel=1e-3)


def test_non_opposing_segments_default_to_hip():
    north, south = _north_south_pair(0, 90)
    features = LinearFeatureExtractor().from_segments([north, south], geo_box(40, 30))
    kinds = {f.type for f in features if f.type != LinearFeatureType.EAVE}
    assert kinds == {LinearFeatureType.HIP}


def test_distant_segments_share_nothing():
    north = RoofSegment(bounding_box=geo_box(20, 20, offset(CENTER, 0, 60)), azimuth_degrees=0)
    south = RoofSegment(bounding_box=geo_box(20, 20, offset(CENTER, 0, -60)), azimuth_degrees=180)
    extractor = LinearFeatureExtractor()
    assert extractor.shared_edge(north, south) is None


def test_slope_aware_detects_butterfly_valley():
    # both planes descend towards the shared line
    north, south = _north_south_pair(180, 0)
    slope_aware = LinearFeatureExtractor(classifier=SlopeAwareEdgeClassifier())
    features = slope_aware.from_segments([north, south], geo_box(40, 30))
    assert [f.type for f in features if f.type != LinearFeatureType.EAVE] == [LinearFeatureType.VALLEY]

    # the azimuth-only strategy cannot see valleys
    features = LinearFeatureExtractor(classifier=AzimuthEdgeClassifier()).from_segments(
        [north, south], geo_box(40, 30)
    )
    assert LinearFeatureType.VALLEY not in {f.type for f in features}


def test_slope_aware_keeps_ridges():
    north, south = _north_south_pair(0, 180)
    slope_aware = LinearFeatureExtractor(classifier=SlopeAwareEdgeClassifier())
    features = slope_aware.from_segments([north, south], geo_box(40, 30))
    assert [f.type for f in features if f.type != LinearFeatureType.EAVE] == [LinearFeatureType.RIDGE]


def test_classifier_registry():
    assert isinstance(get_edge_classifier("azimuth"), AzimuthEdgeClassifier)
    assert isinstance(get_edge_classifier("slope_aware"), SlopeAwareEdgeClassifier)
    with pytest.raises(ValueError):
        get_edge_classifier("lidar")


def test_vision_features_short_noise_dropped():
    scale = px_per_ft()
    features = [
        VisionLinearFeature(type=LinearFeatureType.RIDGE, start=PixelPoint(200, 320),
                            end=PixelPoint(200 + 30 * scale, 320), confidence=0.8),
        VisionLinearFeature(type=LinearFeatureType.HIP, start=PixelPoint(300, 300),
                            end=PixelPoint(300 + 2 * scale, 300)),
        VisionLinearFeature(type=LinearFeatureType.EAVE, start=PixelPoint(float("nan"), 0),
                            end=PixelPoint(10, 10)),
    ]
    out, warnings = LinearFeatureExtractor(min_length_ft=3.0).from_vision(features, FRAME, default_confidence=0.6)
    assert len(out) == 1
    assert out[0].type == LinearFeatureType.RIDGE
    assert out[0].length_ft == pytest.approx(30.0, rel=1e-3)
    assert out[0].confidence == 0.8
    assert len(warnings) == 1


def test_linear_totals_cover_every_type():
    north, south = _north_south_pair(10, 185)
    totals = linear_totals(LinearFeatureExtractor().from_segments([north, south], geo_box(40, 30)))
    assert set(totals) == {"ridge", "hip", "valley", "eave", "rake"}
    assert totals["ridge"] == pytest.approx(40.0, rel=1e-3)
    assert totals["valley"] == 0.0
