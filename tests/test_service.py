from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from spillwatch.errors import AuthError, CatalogError, StoreError
from spillwatch_service.main import create_app
from spillwatch_service.middleware import APIKeyMiddleware, MaxBodySizeMiddleware
from tests.conftest import BASE_TIME, StoreErrorBackend, StubCatalog


@pytest.fixture
def stub_catalog() -> StubCatalog:
    return StubCatalog()


@pytest.fixture
def client(test_settings, memory_backend, stub_catalog):
    app = create_app(test_settings, backend=memory_backend, catalog=stub_catalog)
    with TestClient(app) as test_client:
        yield test_client


def test_root_page(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert "SpillWatch Service" in response.text
    assert "<code>sqlite</code>" in response.text


def test_list_detections(client) -> None:
    response = client.get("/v1/detections")

    assert response.status_code == 200
    payload = response.json()
    assert [item["id"] for item in payload["items"]] == ["det-1", "det-3", "det-2"]
    assert payload["total"] == 3
    assert payload["stale"] is False
    assert response.headers["X-Request-ID"]
    assert "X-SpillWatch-Stale" not in response.headers


def test_list_detections_applies_query_filters(client) -> None:
    response = client.get(
        "/v1/detections",
        params=[("status", "Oil spill"), ("tag", "tanker"), ("severity", "Critical")],
    )
    assert [item["id"] for item in response.json()["items"]] == ["det-3"]

    nearby = client.get("/v1/detections", params={"lat": 25.0, "lng": -71.3, "radius_km": 10})
    assert [item["id"] for item in nearby.json()["items"]] == ["det-1"]


@pytest.mark.parametrize(
    "params",
    [
        {"radius_km": 10},
        {"status": "Maybe"},
        {"date_from": "2026-03-02T00:00:00Z", "date_to": "2026-03-01T00:00:00Z"},
    ],
)
def test_invalid_filters_return_422(client, params) -> None:
    assert client.get("/v1/detections", params=params).status_code == 422


def test_get_detection_and_not_found(client) -> None:
    assert client.get("/v1/detections/det-2").json()["status"] == "Non Oil spill"

    missing = client.get("/v1/detections/nope")
    assert missing.status_code == 404
    assert missing.json() == {"detail": "Detection 'nope' not found."}


def test_patch_detection(client, memory_backend) -> None:
    response = client.patch("/v1/detections/det-1", json={"severity": "Critical", "tags": ["a"]})

    assert response.status_code == 200
    assert response.json()["severity"] == "Critical"
    assert response.json()["updated_at"] is not None
    assert memory_backend.rows["det-1"]["tags"] == ["a"]
    assert client.get("/v1/statistics").json()["critical"] == 2


def test_patch_rejects_immutable_fields(client, memory_backend) -> None:
    response = client.patch("/v1/detections/det-1", json={"latitude": 10.0})

    assert response.status_code == 422
    assert "latitude" in response.json()["detail"]
    assert memory_backend.rows["det-1"]["latitude"] == 25.0343


def test_failed_write_with_unreachable_store_marks_list_stale(client, memory_backend) -> None:
    memory_backend.fail_update = StoreError("write rejected")
    memory_backend.fail_select = StoreError("database offline")

    response = client.patch("/v1/detections/det-1", json={"notes": "x"})
    assert response.status_code == 503

    listing = client.get("/v1/detections")
    assert listing.json()["stale"] is True
    assert listing.headers["X-SpillWatch-Stale"] == "true"
    assert client.get("/v1/health").json()["status"] == "degraded"


def test_delete_detection(client, memory_backend) -> None:
    response = client.delete("/v1/detections/det-3")

    assert response.json() == {"id": "det-3", "deleted": True}
    assert "det-3" not in memory_backend.rows
    assert client.get("/v1/detections/det-3").status_code == 404
    assert client.delete("/v1/detections/det-3").status_code == 404


def test_statistics(client) -> None:
    assert client.get("/v1/statistics").json() == {
        "total": 3,
        "oil_spills": 2,
        "non_oil_spills": 1,
        "verified": 2,
        "critical": 1,
    }
    filtered = client.get("/v1/statistics", params={"validation_status": "Unverified"}).json()
    assert filtered["total"] == 1


@pytest.mark.parametrize(
    "fmt, media_type, extension",
    [
        ("csv", "text/csv", ".csv"),
        ("json", "application/json", ".json"),
        ("geojson", "application/geo+json", ".geojson"),
        ("kml", "application/vnd.google-earth.kml+xml", ".kml"),
        ("report", "text/plain", ".txt"),
    ],
)
def test_export_formats(client, fmt, media_type, extension) -> None:
    response = client.get(f"/v1/export/{fmt}", params={"status": "Oil spill"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith(media_type)
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="oil_spills')
    assert disposition.endswith(f'{extension}"')


def test_export_unknown_format(client) -> None:
    assert client.get("/v1/export/xlsx").status_code == 422


def test_detection_imagery(client, stub_catalog) -> None:
    response = client.get("/v1/detections/det-1/imagery", params={"days_before": 5})

    assert response.status_code == 200
    payload = response.json()
    assert payload["partial"] is True
    assert payload["radar"][0]["id"] == "s1-a"
    latitude, longitude, center, before, after = stub_catalog.lookups[0]
    assert (latitude, longitude, before, after) == (25.0343, -71.2847, 5, 3)
    assert center == BASE_TIME


def test_detection_imagery_rejects_wide_window(client) -> None:
    assert client.get("/v1/detections/det-1/imagery", params={"days_after": 31}).status_code == 422


def test_detection_imagery_upstream_errors(client, stub_catalog) -> None:
    stub_catalog.error = CatalogError("maintenance", status=503)
    response = client.get("/v1/detections/det-1/imagery")
    assert response.status_code == 502
    assert response.json() == {"detail": "maintenance", "upstream_status": 503}

    stub_catalog.error = AuthError("invalid_client", status=401)
    response = client.get("/v1/detections/det-1/imagery")
    assert response.status_code == 502
    assert "authentication" in response.json()["detail"]


def test_imagery_preview(client) -> None:
    response = client.get("/v1/imagery/abc/preview")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert response.content == b"\xff\xd8abc"


def test_health(client) -> None:
    payload = client.get("/v1/health").json()

    assert payload["status"] == "ok"
    assert payload["store_state"] == "ready"
    assert payload["detections"] == "3"
    assert payload["db_backend"] == "sqlite"
    assert payload["catalog_authenticated"] == "false"


def test_metrics(client) -> None:
    client.get("/v1/detections")
    body = client.get("/v1/metrics").text

    assert 'spillwatch_detections{status="Oil spill"} 2.0' in body
    assert "spillwatch_http_requests_total" in body


def test_metrics_label_routes_by_template(client) -> None:
    client.get("/v1/detections/det-1")
    client.get("/v1/detections/det-2")
    client.get("/no-such-page")
    body = client.get("/v1/metrics").text

    assert 'path="/v1/detections/{detection_id}"' in body
    assert 'path="/v1/detections/det-1"' not in body
    assert 'path="_unmatched"' in body


def test_metrics_can_be_disabled(test_settings, memory_backend, stub_catalog) -> None:
    settings = test_settings.model_copy(update={"spillwatch_enable_metrics": False})
    with TestClient(create_app(settings, backend=memory_backend, catalog=stub_catalog)) as client:
        assert client.get("/v1/metrics").status_code == 404


def test_api_key_required_outside_public_paths(test_settings, memory_backend, stub_catalog) -> None:
    settings = test_settings.model_copy(update={"spillwatch_api_key": "secret"})
    with TestClient(create_app(settings, backend=memory_backend, catalog=stub_catalog)) as client:
        assert client.get("/v1/detections").status_code == 401
        assert client.get("/v1/detections", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/v1/detections", headers={"X-API-Key": "secret"}).status_code == 200
        assert client.get("/v1/health").status_code == 200


def test_oversized_body_is_rejected(test_settings, memory_backend, stub_catalog) -> None:
    with TestClient(create_app(test_settings, backend=memory_backend, catalog=stub_catalog)) as client:
        response = client.patch(
            "/v1/detections/det-1",
            content=b"x" * (3 * 1024 * 1024),
            headers={"Content-Type": "application/json"},
        )
    assert response.status_code == 413


def test_unreachable_store_on_startup(test_settings, stub_catalog) -> None:
    app = create_app(test_settings, backend=StoreErrorBackend(), catalog=stub_catalog)
    with TestClient(app) as client:
        assert client.get("/v1/detections").status_code == 503
        health = client.get("/v1/health").json()
        assert health["status"] == "degraded"
        assert health["store_state"] == "idle"


def _keyed_app(api_key: str | None) -> FastAPI:
    app = FastAPI()
    app.add_middleware(APIKeyMiddleware, api_key=api_key)

    @app.get("/v1/events")
    def events() -> dict:
        return {"ok": True}

    @app.get("/v1/detections")
    def detections() -> dict:
        return {"ok": True}

    return app


def test_event_stream_accepts_api_key_query_parameter() -> None:
    client = TestClient(_keyed_app("secret"))

    assert client.get("/v1/events").status_code == 401
    assert client.get("/v1/events", params={"api_key": "wrong"}).status_code == 401
    assert client.get("/v1/events", params={"api_key": "secret"}).status_code == 200
    assert client.get("/v1/detections", params={"api_key": "secret"}).status_code == 401
    assert client.get("/v1/detections", headers={"X-API-Key": "secret"}).status_code == 200


def test_body_limit_only_applies_to_edits() -> None:
    app = FastAPI()
    app.add_middleware(MaxBodySizeMiddleware, max_body_bytes=8)

    @app.api_route("/echo", methods=["GET", "PATCH"])
    async def echo() -> dict:
        return {"ok": True}

    client = TestClient(app)
    assert client.patch("/echo", content=b"x" * 9).status_code == 413
    assert client.patch("/echo", content=b"x" * 8).status_code == 200
    assert client.request("GET", "/echo", content=b"x" * 9).status_code == 200
