from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.main import app, engine

from roof_fixtures import CENTER, geo_points_json, offset, regular_polygon, simple_gable_payload

client = TestClient(app)


def test_health_and_root():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "roof-measure-engine"}

    root = client.get("/").json()
    assert root["endpoints"]["measure"] == "/measure"


def test_e2e_simple_gable_measurement():
    response = client.post("/measure", json=simple_gable_payload())
    assert response.status_code == 200
    data = response.json()
    assert data["total_adjusted_area_sqft"] == pytest.approx(1118.03, abs=0.5)
    assert data["predominant_pitch"] == "6/12"
    assert data["overall_confidence"] == 100.0
    assert data["confidence_rating"] == "EXCELLENT"
    assert data["manual_review_required"] is False
    assert data["footprint"]["source"] == "building_insight_api"
    assert data["linear_totals_ft"]["eave"] == pytest.approx(130.0, abs=0.5)
    assert data["anomalies"]["overall_risk"] == "low"
    assert data["edge_cases"]["recommended_pipeline"] == "standard"
    assert set(data["materials"]) >= {"shingle_bundles", "drip_edge_sheets", "valley_metal_sheets"}


def test_geojson_endpoint():
    response = client.post("/measure/geojson", json=simple_gable_payload())
    assert response.status_code == 200
    collection = response.json()
    assert collection["type"] == "FeatureCollection"
    assert collection["features"][0]["properties"]["kind"] == "footprint"
    assert "artifact_path" not in collection["properties"]


def test_geojson_endpoint_persists_on_request(tmp_path, monkeypatch):
    monkeypatch.setenv("ARTIFACT_DIR", str(tmp_path))
    response = client.post("/measure/geojson?persist=true", json=simple_gable_payload())
    assert response.status_code == 200
    path = Path(response.json()["properties"]["artifact_path"])
    assert path.parent == tmp_path
    assert path.exists()


def test_request_id_header_present():
    # Verify X-Request-Id is attached
    response = client.get("/health")
    assert response.headers.get("X-Request-Id")

    echoed = client.get("/health", headers={"X-Request-Id": "job-123"})
    assert echoed.headers["X-Request-Id"] == "job-123"


def test_anomalies_endpoint_flags_tiny_area():
    response = client.post("/anomalies", json={
        "total_area_sqft": 8.0,
        "ridge_ft": 4.0,
        "eave_ft": 12.0,
        "facet_count": 2,
        "facet_pitches": ["6/12", "6/12"],
    })
    assert response.status_code == 200
    report = response.json()
    assert report["overall_risk"] == "critical"
    impossible = [a for a in report["anomalies"] if a["type"] == "impossible_geometry"]
    assert impossible[0]["severity"] == "critical"
    assert impossible[0]["expected_range"] == {"min": 10.0, "max": None}


def test_anomalies_endpoint_checks_crossings():
    response = client.post("/anomalies", json={
        "total_area_sqft": 2400.0,
        "ridge_ft": 40.0,
        "hip_ft": 30.0,
        "eave_ft": 160.0,
        "rake_ft": 40.0,
        "facet_count": 4,
        "edges": [
            {"id": "r1", "type": "ridge", "start": geo_points_json([offset(CENTER, -10, 0)])[0],
             "end": geo_points_json([offset(CENTER, 10, 0)])[0]},
            {"id": "h1", "type": "hip", "start": geo_points_json([offset(CENTER, 0, -10)])[0],
             "end": geo_points_json([offset(CENTER, 0, 10)])[0]},
        ],
    })
    assert response.status_code == 200
    ids = [a["id"] for a in response.json()["anomalies"]]
    assert ids == ["edge-crossing-r1-h1"]


def test_edge_cases_dome_goes_manual():
    body = {
        "facet_count": 22,
        "footprint": geo_points_json(regular_polygon(12, 20)),
        "facet_vertex_counts": [3] * 22,
    }
    response = client.post("/edge-cases", json=body)
    assert response.status_code == 200
    detection = response.json()
    assert detection["is_edge_case"] is True
    assert detection["recommended_pipeline"] == "manual"
    assert detection["confidence_adjustment"] == -30.0
    patterns = {p["pattern"] for p in detection["detected_patterns"]}
    assert "geodesic_dome" in patterns

    body["image_analysis"] = {"detected_shapes": ["circular"], "texture_patterns": ["triangular_grid"]}
    response = client.post("/edge-cases", json=body)
    assert response.status_code == 200
    assert response.json()["recommended_pipeline"] in {"standard", "specialized", "manual"}


def test_edge_case_instructions_endpoint():
    known = client.get("/edge-cases/mansard/instructions").json()
    assert known["known"] is True
    assert known["pattern"] == "mansard"
    unknown = client.get("/edge-cases/a-frame/instructions").json()
    assert unknown["known"] is False
    assert unknown["calculation_method"].startswith("Requires specialized analysis")


def test_baselines_read_and_update():
    registry = engine.anomaly_detector.registry
    try:
        before = client.get("/baselines").json()
        assert set(before["baselines"]) == {"total_area", "ridge_length", "facet_count"}

        values = [2, 3, 4, 4, 5, 5, 6, 6, 7, 8, 9, 12]
        response = client.post("/baselines/facet_count", json={"values": values})
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == before["version"] + 1
        assert data["baseline"]["min"] == 2.0
        assert client.get("/baselines").json()["version"] == data["version"]

        too_few = client.post("/baselines/facet_count", json={"values": [1, 2, 3, 4, 5]})
        assert too_few.status_code == 400
        unknown = client.post("/baselines/eave_length", json={"values": values})
        assert unknown.status_code == 400
    finally:
        registry.reset()
