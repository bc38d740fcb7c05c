from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import List
import logging
import os

from app.middleware.request_id import add_request_id_middleware
from app.models.geometry import GeoPoint, ImageFrame, ImageryQuality, LinearFeature, LinearFeatureType, PixelPoint
from app.models.sources import (
    BoundingBox,
    BuildingInsightResult,
    MeasurementRequest,
    RoofSegment,
    VisionFacet,
    VisionLinearFeature,
    VisionModelResult,
)
from app.settings import get_settings
from app.services import MeasurementEngine
from app.services.anomaly_detector import MeasurementSummary
from app.services.artifacts.geojson_writer import measurement_to_feature_collection, write_geojson
from app.services.edge_case_classifier import (
    EDGE_CASE_PATTERNS,
    ImageAnalysis,
    RoofGeometrySummary,
    analyze_image_for_edge_cases,
    get_edge_case_instructions,
)
from app.services.errors import MeasurementError
from app.services.geo_utils import geo_distance_ft

SETTINGS = get_settings()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"
    if SETTINGS.enable_request_id_logging else "%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Roof Measurement Engine",
    description="Roof geometry measurement, confidence scoring and anomaly detection",
    version="1.0.0"
)

# Register request ID middleware
add_request_id_middleware(app, enable_logging=SETTINGS.enable_request_id_logging)

# CORS middleware (configurable via CORS_ALLOW_ORIGINS)
# Accept comma-separated list of origins, e.g.:
#   CORS_ALLOW_ORIGINS=http://localhost:8081,http://127.0.0.1:8081
cors_env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
if cors_env:
    allow_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
else:
    allow_origins = [
        "http://localhost:3000",
        "http://localhost:8081",
        "http://127.0.0.1:8081",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],  # includes OPTIONS
    allow_headers=["*"],
)

engine = MeasurementEngine(SETTINGS)


# === Request models ===
class GeoPointModel(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_geo(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class PixelPointModel(BaseModel):
    x: float
    y: float

    def to_pixel(self) -> PixelPoint:
        return PixelPoint(x=self.x, y=self.y)


class ImageFrameModel(BaseModel):
    center_lat: float = Field(..., description="Image center latitude")
    center_lng: float = Field(..., description="Image center longitude")
    zoom_level: float = Field(..., description="Web-Mercator zoom level")
    width_px: int = Field(640, description="Image width in pixels")
    height_px: int = Field(640, description="Image height in pixels")


class VisionFacetModel(BaseModel):
    polygon: List[PixelPointModel]
    id: str | None = None
    pitch: str | None = None
    orientation: str | None = None
    confidence: float | None = None
    azimuth_degrees: float | None = None
    area_sqft: float | None = None


class VisionLinearFeatureModel(BaseModel):
    type: LinearFeatureType
    start: PixelPointModel
    end: PixelPointModel
    confidence: float | None = None
    id: str | None = None


class VisionModelResultModel(BaseModel):
    facets: List[VisionFacetModel] = []
    linear_features: List[VisionLinearFeatureModel] = []
    footprint: List[PixelPointModel] | None = None
    overall_confidence: float | None = Field(None, ge=0, le=1)
    total_area_sqft: float | None = None


class BoundingBoxModel(BaseModel):
    sw: GeoPointModel
    ne: GeoPointModel

    def to_box(self) -> BoundingBox:
        return BoundingBox(sw=self.sw.to_geo(), ne=self.ne.to_geo())


class RoofSegmentModel(BaseModel):
    bounding_box: BoundingBoxModel
    pitch_degrees: float | None = Field(None, ge=0, le=90)
    azimuth_degrees: float | None = None
    height_m: float | None = None
    plan_area_sqft: float | None = None


class BuildingInsightModel(BaseModel):
    bounding_box: BoundingBoxModel
    segments: List[RoofSegmentModel] = []
    imagery_quality: ImageryQuality = ImageryQuality.MEDIUM
    footprint_area_sqft: float | None = None


class MeasureRequest(BaseModel):
    image_frame: ImageFrameModel
    vision_model_result: VisionModelResultModel | None = None
    building_insight_result: BuildingInsightModel | None = None
    manual_override_polygon: List[GeoPointModel] | None = None
    image_features: List[str] = []


class EdgeModel(BaseModel):
    type: LinearFeatureType
    start: GeoPointModel
    end: GeoPointModel
    id: str | None = None


class AnomalyRequest(BaseModel):
    total_area_sqft: float
    ridge_ft: float = 0.0
    hip_ft: float = 0.0
    valley_ft: float = 0.0
    eave_ft: float = 0.0
    rake_ft: float = 0.0
    facet_count: int = Field(0, ge=0)
    facet_pitches: List[str] = []
    edges: List[EdgeModel] = []


class SegmentLineModel(BaseModel):
    start: GeoPointModel
    end: GeoPointModel


class ImageAnalysisModel(BaseModel):
    detected_shapes: List[str] = []
    shadow_patterns: List[str] = []
    color_variations: List[str] = []
    texture_patterns: List[str] = []


class EdgeCaseRequest(BaseModel):
    facet_count: int = Field(..., ge=0)
    ridge_count: int = Field(0, ge=0)
    hip_count: int = Field(0, ge=0)
    valley_count: int = Field(0, ge=0)
    pitches: List[float] = Field([], description="Rise per 12 run for each facet")
    height_levels: int = Field(1, ge=1)
    footprint: List[GeoPointModel] = []
    ridges: List[SegmentLineModel] = []
    valleys: List[SegmentLineModel] = []
    facet_vertex_counts: List[int] = []
    image_features: List[str] | None = None
    image_analysis: ImageAnalysisModel | None = None


class BaselineUpdateRequest(BaseModel):
    values: List[float] = Field(..., description="Historical observations for the metric")


def _to_measurement_request(req: MeasureRequest) -> MeasurementRequest:
    f = req.image_frame
    frame = ImageFrame(
        center_lat=f.center_lat,
        center_lng=f.center_lng,
        zoom_level=f.zoom_level,
        width_px=f.width_px,
        height_px=f.height_px,
    )
    vision = None
    if req.vision_model_result is not None:
        v = req.vision_model_result
        vision = VisionModelResult(
            facets=tuple(
                VisionFacet(
                    polygon=tuple(p.to_pixel() for p in fm.polygon),
                    id=fm.id,
                    pitch=fm.pitch,
                    orientation=fm.orientation,
                    confidence=fm.confidence,
                    azimuth_degrees=fm.azimuth_degrees,
                    area_sqft=fm.area_sqft,
                )
                for fm in v.facets
            ),
            linear_features=tuple(
                VisionLinearFeature(
                    type=lf.type, start=lf.start.to_pixel(), end=lf.end.to_pixel(),
                    confidence=lf.confidence, id=lf.id,
                )
                for lf in v.linear_features
            ),
            footprint=tuple(p.to_pixel() for p in v.footprint) if v.footprint is not None else None,
            overall_confidence=v.overall_confidence,
            total_area_sqft=v.total_area_sqft,
        )
    insight = None
    if req.building_insight_result is not None:
        b = req.building_insight_result
        insight = BuildingInsightResult(
            bounding_box=b.bounding_box.to_box(),
            segments=tuple(
                RoofSegment(
                    bounding_box=s.bounding_box.to_box(),
                    pitch_degrees=s.pitch_degrees,
                    azimuth_degrees=s.azimuth_degrees,
                    height_m=s.height_m,
                    plan_area_sqft=s.plan_area_sqft,
                )
                for s in b.segments
            ),
            imagery_quality=b.imagery_quality,
            footprint_area_sqft=b.footprint_area_sqft,
        )
    manual = None
    if req.manual_override_polygon is not None:
        manual = tuple(p.to_geo() for p in req.manual_override_polygon)
    return MeasurementRequest(
        image_frame=frame,
        vision_model_result=vision,
        building_insight_result=insight,
        manual_override_polygon=manual,
        image_features=tuple(req.image_features),
    )


def _measurement_http_error(e: MeasurementError) -> HTTPException:
    logger.warning(f"Measurement rejected ({e.code}): {e.message}")
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "roof-measure-engine"}


@app.post("/measure")
async def measure(req: MeasureRequest):
    """
    Run a full measurement over whichever sources are supplied

    Returns:
        MeasurementResult as JSON (unit-suffixed keys)
    """
    try:
        result = engine.measure(_to_measurement_request(req))
        return result.to_dict()
    except MeasurementError as e:
        raise _measurement_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Measurement failed")
        raise HTTPException(status_code=500, detail=f"Measurement failed: {str(e)}")


@app.post("/measure/geojson")
async def measure_geojson(req: MeasureRequest, persist: bool = False):
    """Run a measurement and return it as a GeoJSON FeatureCollection.

    With `persist=true` the collection is also written under ARTIFACT_DIR and
    its path returned in `properties.artifact_path`.
    """
    try:
        result = engine.measure(_to_measurement_request(req))
        collection = measurement_to_feature_collection(result)
        if persist:
            collection["properties"]["artifact_path"] = str(write_geojson(collection))
        return collection
    except MeasurementError as e:
        raise _measurement_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("GeoJSON export failed")
        raise HTTPException(status_code=500, detail=f"GeoJSON export failed: {str(e)}")


@app.post("/anomalies")
async def detect_anomalies(req: AnomalyRequest):
    """Plausibility checks on an already-computed measurement summary."""
    try:
        edges = []
        for idx, e in enumerate(req.edges):
            start, end = e.start.to_geo(), e.end.to_geo()
            edges.append(LinearFeature(
                id=e.id or f"{e.type.value}-{idx + 1}",
                type=e.type,
                start=start,
                end=end,
                length_ft=geo_distance_ft(start, end),
                source="caller",
            ))
        report = engine.anomaly_detector.detect(MeasurementSummary(
            total_area_sqft=req.total_area_sqft,
            ridge_ft=req.ridge_ft,
            hip_ft=req.hip_ft,
            valley_ft=req.valley_ft,
            eave_ft=req.eave_ft,
            rake_ft=req.rake_ft,
            facet_count=req.facet_count,
            facet_pitches=req.facet_pitches,
            edges=edges,
        ))
        return report.to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Anomaly detection failed: {str(e)}")


@app.post("/edge-cases")
async def classify_edge_cases(req: EdgeCaseRequest):
    """Match a roof geometry summary against the registry of atypical roof topologies."""
    try:
        features = req.image_features
        if req.image_analysis is not None:
            derived = analyze_image_for_edge_cases(ImageAnalysis(**req.image_analysis.model_dump()))
            features = list(features or []) + derived
        summary = RoofGeometrySummary(
            facet_count=req.facet_count,
            ridge_count=req.ridge_count,
            hip_count=req.hip_count,
            valley_count=req.valley_count,
            pitches=req.pitches,
            height_levels=req.height_levels,
            footprint=[p.to_geo() for p in req.footprint],
            ridges=[(r.start.to_geo(), r.end.to_geo()) for r in req.ridges],
            valleys=[(v.start.to_geo(), v.end.to_geo()) for v in req.valleys],
            facet_vertex_counts=req.facet_vertex_counts,
        )
        detection = engine.edge_case_classifier.classify(summary, features)
        return detection.to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Edge case classification failed: {str(e)}")


@app.get("/edge-cases/{pattern}/instructions")
async def edge_case_instructions(pattern: str):
    """Calculation guidance for one topology; unknown names get generic guidance."""
    return {"pattern": pattern, "known": pattern in EDGE_CASE_PATTERNS, **get_edge_case_instructions(pattern)}


@app.get("/baselines")
async def get_baselines():
    snapshot = engine.anomaly_detector.registry.snapshot()
    return {
        "version": snapshot.version,
        "baselines": {name: stats.to_dict() for name, stats in snapshot.stats.items()},
    }


@app.post("/baselines/{metric}")
async def update_baseline(metric: str, req: BaselineUpdateRequest):
    """Replace one metric's baseline with statistics computed from history."""
    try:
        snapshot = engine.anomaly_detector.registry.update_baseline(metric, req.values)
        return {"metric": metric, "version": snapshot.version, "baseline": snapshot.stats[metric].to_dict()}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": "Roof Measurement Engine",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "measure": "/measure",
            "measure_geojson": "/measure/geojson",
            "anomalies": "/anomalies",
            "edge_cases": "/edge-cases",
            "baselines": "/baselines",
            "docs": "/docs"
        }
    }
