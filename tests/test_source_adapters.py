import pytest

from app.models.geometry import GeoPoint, ImageryQuality, LinearFeatureType, PixelPoint
from app.models.sources import BoundingBox, BuildingInsightResult, RoofSegment, VisionFacet, VisionModelResult
from app.services.errors import InvalidInputError
from app.services.source_adapters import (
    BuildingInsightAdapter,
    ManualOverrideAdapter,
    VisionModelAdapter,
    orientation_from_azimuth,
)

from roof_fixtures import CENTER, FRAME, geo_box, geo_rect, offset, pixel_rect


def test_orientation_from_azimuth():
    assert orientation_from_azimuth(180) == "south_facing"
    assert orientation_from_azimuth(359) == "north_facing"
    assert orientation_from_azimuth(100) == "east_facing"
    assert orientation_from_azimuth(None) == "unknown"


class TestVisionModelAdapter:
    def test_projects_facets_and_fills_defaults(self):
        result = VisionModelResult(facets=(VisionFacet(polygon=pixel_rect(40, 25, closed=True)),))
        out = VisionModelAdapter().adapt(result, FRAME)
        assert len(out.facets) == 1
        facet = out.facets[0]
        assert facet.id == "facet-1"
        assert facet.pitch == "6/12"
        assert facet.confidence == 0.7
        assert facet.vertex_count == 4
        assert facet.plan_area_sqft == pytest.approx(1000.0, rel=1e-3)
        assert out.footprint_candidate is None
        assert out.warnings == []

    def test_drops_bad_facets_with_warnings(self):
        result = VisionModelResult(
            facets=(
                VisionFacet(polygon=(PixelPoint(0, 0), PixelPoint(10, 10)), id="sliver"),
                VisionFacet(polygon=(PixelPoint(0, 0), PixelPoint(float("inf"), 5), PixelPoint(5, 5)), id="nan"),
                VisionFacet(polygon=pixel_rect(30, 20), id="ok", pitch="8/12", area_sqft=612.0),
            ),
            overall_confidence=0.85,
        )
        out = VisionModelAdapter().adapt(result, FRAME)
        assert [f.id for f in out.facets] == ["ok"]
        assert out.facets[0].plan_area_sqft == 612.0
        assert out.facets[0].confidence == 0.85
        assert len(out.warnings) == 2
        assert out.confidence == 0.85

    def test_footprint_candidate_projected(self):
        result = VisionModelResult(footprint=pixel_rect(50, 30))
        out = VisionModelAdapter().adapt(result, FRAME)
        assert out.footprint_candidate is not None
        assert len(out.footprint_candidate) == 4


class TestBuildingInsightAdapter:
    def test_single_segment_uses_bounding_box(self):
        box = geo_box(40, 25)
        result = BuildingInsightResult(
            bounding_box=box,
            segments=(RoofSegment(bounding_box=box, pitch_degrees=26.57, azimuth_degrees=180.0),),
            imagery_quality=ImageryQuality.HIGH,
        )
        out = BuildingInsightAdapter().adapt(result)
        assert out.footprint_candidate == box.corners()
        assert out.confidence == 0.9
        assert out.pitch_hints == ["6/12"]
        assert out.facets[0].id == "segment-1"
        assert out.facets[0].orientation == "south_facing"
        assert [f.type for f in out.linear_features] == [LinearFeatureType.EAVE] * 4
        assert out.linear_features[0].confidence == pytest.approx(0.72)

    def test_multiple_segments_use_hull(self):
        west = RoofSegment(bounding_box=geo_box(20, 30, offset(CENTER, -10, 0)), azimuth_degrees=270)
        east = RoofSegment(bounding_box=geo_box(20, 15, offset(CENTER, 10, -2.5)), azimuth_degrees=90)
        result = BuildingInsightResult(bounding_box=geo_box(40, 30), segments=(west, east))
        out = BuildingInsightAdapter().adapt(result)
        assert out.confidence == 0.75
        # the shorter east wing leaves a chamfer on both of its corners
        assert len(out.footprint_candidate) == 6
        assert len(out.facets) == 2

    def test_low_quality_imagery_not_trusted(self):
        box = geo_box(40, 25)
        result = BuildingInsightResult(
            bounding_box=box,
            segments=(RoofSegment(bounding_box=box, pitch_degrees=35.0),),
            imagery_quality=ImageryQuality.LOW,
        )
        out = BuildingInsightAdapter().adapt(result)
        assert out.footprint_candidate is None
        assert out.facets == []
        assert out.pitch_hints == ["8/12"]
        assert any("too low" in w for w in out.warnings)

    def test_degenerate_segment_dropped(self):
        box = geo_box(40, 25)
        flat = RoofSegment(bounding_box=BoundingBox(sw=CENTER, ne=GeoPoint(CENTER.lat, CENTER.lng + 1e-4)))
        result = BuildingInsightResult(bounding_box=box, segments=(flat,), imagery_quality=ImageryQuality.HIGH)
        out = BuildingInsightAdapter().adapt(result)
        assert out.facets == []
        assert any("degenerate" in w for w in out.warnings)
        assert out.footprint_candidate == box.corners()


class TestManualOverrideAdapter:
    def test_accepts_polygon_verbatim(self):
        polygon = geo_rect(50, 40)
        out = ManualOverrideAdapter().adapt(polygon)
        assert out.footprint_candidate == tuple(polygon)
        assert out.confidence == 1.0
        assert out.source == "manual_override"

    def test_rejects_too_few_vertices(self):
        with pytest.raises(InvalidInputError) as exc:
            ManualOverrideAdapter().adapt([CENTER, offset(CENTER, 10, 0)])
        assert exc.value.status_code == 400

    def test_rejects_non_finite_points(self):
        polygon = list(geo_rect(50, 40))
        polygon[1] = GeoPoint(float("nan"), polygon[1].lng)
        with pytest.raises(InvalidInputError) as exc:
            ManualOverrideAdapter().adapt(polygon)
        assert exc.value.errors == ["vertex 1 has non-finite coordinates"]
