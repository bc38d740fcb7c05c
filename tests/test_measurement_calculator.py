import pytest

from app.models.geometry import (
    Facet,
    Footprint,
    FootprintSource,
    LinearFeature,
    LinearFeatureType,
    degrees_to_pitch,
    parse_pitch,
    pitch_multiplier,
)
from app.models.measurement import Complexity
from app.services.measurement_calculator import MeasurementCalculator

from roof_fixtures import CENTER, geo_rect, offset


def _footprint(area=1200.0):
    return Footprint(polygon=geo_rect(40, 30), area_sqft=area, perimeter_ft=140.0, confidence=0.9,
                     source=FootprintSource.BUILDING_INSIGHT_API)


def _facet(fid, area, pitch):
    return Facet(id=fid, polygon=geo_rect(20, 20), plan_area_sqft=area, pitch=pitch)


def _feature(kind, length_ft, fid=None):
    return LinearFeature(id=fid or kind.value, type=kind, start=CENTER, end=offset(CENTER, length_ft, 0),
                         length_ft=length_ft)


def test_pitch_parsing():
    assert parse_pitch("6/12") == (6.0, 12.0)
    assert parse_pitch("7.5 / 12") == (7.5, 12.0)
    assert parse_pitch("steep") == (0.0, 12.0)
    assert parse_pitch(None) == (0.0, 12.0)
    assert parse_pitch("4/0") == (0.0, 12.0)
    assert degrees_to_pitch(45.0) == "12/12"
    assert degrees_to_pitch(0.0) == "0/12"


def test_pitch_multiplier_monotonic():
    multipliers = [pitch_multiplier(f"{rise}/12") for rise in range(0, 25)]
    assert multipliers[0] == 1.0
    assert all(b > a for a, b in zip(multipliers, multipliers[1:]))
    assert pitch_multiplier("12/12") == pytest.approx(2 ** 0.5)


def test_single_gable_facet_area():
    calc = MeasurementCalculator()
    area = calc.calculate(_footprint(), [_facet("f1", 1000.0, "6/12")], [])
    assert area.total_plan_area_sqft == pytest.approx(1000.0)
    assert area.total_adjusted_area_sqft == pytest.approx(1118.03, abs=0.01)
    assert area.total_squares == pytest.approx(11.1803, abs=1e-4)
    assert area.predominant_pitch == "6/12"
    assert area.facet_adjusted_areas_sqft["f1"] == pytest.approx(1118.03, abs=0.01)


def test_adjusted_area_grows_with_pitch():
    calc = MeasurementCalculator()
    totals = [
        calc.calculate(_footprint(), [_facet("f", 800.0, f"{rise}/12")], []).total_adjusted_area_sqft
        for rise in (0, 4, 8, 12, 16)
    ]
    assert totals[0] == pytest.approx(800.0)
    assert all(b > a for a, b in zip(totals, totals[1:]))


def test_footprint_area_used_without_facets():
    calc = MeasurementCalculator()
    area = calc.calculate(_footprint(1200.0), [], [], pitch_hints=["8/12", "4/12", "8/12"])
    assert area.predominant_pitch == "8/12"
    assert area.total_plan_area_sqft == 1200.0
    assert area.total_adjusted_area_sqft == pytest.approx(1200.0 * pitch_multiplier("8/12"))


def test_predominant_pitch_mode_with_first_seen_tie_break():
    facets = [_facet("a", 100, "8/12"), _facet("b", 100, "4/12"), _facet("c", 100, "4/12"), _facet("d", 100, "8/12")]
    assert MeasurementCalculator.predominant_pitch(facets) == "8/12"
    assert MeasurementCalculator.predominant_pitch([]) == "6/12"
    assert MeasurementCalculator.predominant_pitch([], ["10/12"]) == "10/12"


def test_complexity_and_waste_steps():
    calc = MeasurementCalculator()
    assert calc.classify_complexity(2, 0) == Complexity.SIMPLE
    assert calc.classify_complexity(6, 0) == Complexity.MODERATE
    assert calc.classify_complexity(2, 61) == Complexity.MODERATE
    assert calc.classify_complexity(10, 0) == Complexity.COMPLEX
    assert calc.classify_complexity(2, 121) == Complexity.COMPLEX
    assert calc.classify_complexity(15, 0) == Complexity.VERY_COMPLEX
    assert calc.classify_complexity(2, 201) == Complexity.VERY_COMPLEX

    wastes = []
    for n in (1, 6, 10, 15):
        facets = [_facet(f"f{i}", 100.0, "6/12") for i in range(n)]
        wastes.append(calc.calculate(_footprint(), facets, []).waste_factor_percent)
    assert wastes == [10.0, 12.0, 15.0, 20.0]


def test_materials_rounded_up():
    calc = MeasurementCalculator()
    features = [
        _feature(LinearFeatureType.EAVE, 80.0, "eave-1"),
        _feature(LinearFeatureType.EAVE, 80.0, "eave-2"),
        _feature(LinearFeatureType.RAKE, 30.0),
        _feature(LinearFeatureType.RIDGE, 40.0),
        _feature(LinearFeatureType.HIP, 15.0),
        _feature(LinearFeatureType.VALLEY, 12.0),
    ]
    area = calc.calculate(_footprint(), [_facet("f1", 2000.0, "0/12")], features)
    m = area.materials
    # 20 squares, simple roof: 22 squares with waste, 3 bundles each
    assert area.squares_with_waste == pytest.approx(22.0)
    assert m.shingle_bundles == 66
    assert m.underlayment_rolls == 5
    assert m.ice_water_shield_ft == 332
    assert m.ice_water_shield_rolls == 6
    assert m.drip_edge_ft == 190
    assert m.drip_edge_sheets == 19
    assert m.starter_strip_bundles == 2
    assert m.hip_ridge_cap_ft == 55
    assert m.hip_ridge_cap_bundles == 3
    assert m.valley_metal_ft == 12
    assert m.valley_metal_sheets == 2


def test_materials_zero_when_no_edges():
    area = MeasurementCalculator().calculate(_footprint(), [_facet("f1", 1000.0, "6/12")], [])
    m = area.materials
    assert m.drip_edge_sheets == 0
    assert m.valley_metal_sheets == 0
    assert m.hip_ridge_cap_bundles == 0
