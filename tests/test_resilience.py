from fastapi.testclient import TestClient

from app.main import app
from app.services.measurement_calculator import MeasurementCalculator

from roof_fixtures import geo_points_json, geo_rect, simple_gable_payload

client = TestClient(app)


def test_measure_handles_internal_failure(monkeypatch):
    def _boom(self, *args, **kwargs):
        raise RuntimeError("calculator exploded")

    monkeypatch.setattr(MeasurementCalculator, "calculate", _boom)

    response = client.post("/measure", json=simple_gable_payload())
    assert response.status_code == 500
    assert "calculator exploded" in response.text


def test_invalid_frame_is_400():
    payload = simple_gable_payload()
    payload["image_frame"]["center_lat"] = 89.0
    response = client.post("/measure", json=payload)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_input"


def test_no_sources_is_422():
    payload = {"image_frame": simple_gable_payload()["image_frame"]}
    response = client.post("/measure", json=payload)
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "cannot_measure"


def test_tiny_manual_footprint_is_422():
    payload = simple_gable_payload()
    payload["manual_override_polygon"] = geo_points_json(geo_rect(10, 10))
    response = client.post("/measure", json=payload)
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "footprint_invalid"
    assert detail["footprint"]["source"] == "manual_override"


def test_measure_handles_invalid_body():
    # Missing image_frame to trigger 422
    resp = client.post("/measure", json={"vision_model_result": {"facets": []}})
    assert resp.status_code == 422


def test_garbage_facets_degrade_to_warnings():
    payload = simple_gable_payload()
    payload["vision_model_result"]["facets"].append({"id": "junk", "polygon": [{"x": 1, "y": 1}, {"x": 1, "y": 1}]})
    response = client.post("/measure", json=payload)
    assert response.status_code == 200
    data = response.json()
    assert any("junk" in w for w in data["warnings"])
    assert [f["id"] for f in data["facets"]] == ["main"]
