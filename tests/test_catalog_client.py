from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from spillwatch.catalog.client import CatalogClient, ImagerySearchParams
from spillwatch.catalog.query import bounding_box
from spillwatch.errors import AuthError, CatalogError, ValidationError
from spillwatch.models import ImageryPlatform
from tests.conftest import (
    CATALOG_URL,
    PROCESSING_URL,
    TOKEN_URL,
    FakeResponse,
    catalog_item,
    token_response,
)


PRODUCTS_URL = f"{CATALOG_URL}/odata/v1/Products"
CENTER = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


def _params(**overrides) -> ImagerySearchParams:
    values = {
        "latitude": 25.0343,
        "longitude": -71.2847,
        "start": datetime(2026, 2, 26, tzinfo=timezone.utc),
        "end": datetime(2026, 3, 4, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return ImagerySearchParams(**values)


def _by_collection(radar: FakeResponse, optical: FakeResponse):
    def responder(call):
        odata = (call.get("params") or {}).get("$filter", "")
        return radar if "SENTINEL-1" in odata else optical

    return responder


@pytest.mark.anyio
async def test_search_radar_maps_products(catalog, session) -> None:
    session.add(
        "GET",
        PRODUCTS_URL,
        FakeResponse(200, {"value": [catalog_item("a1"), catalog_item("a2")]}),
    )

    products = await catalog.search_radar(_params())

    assert [item.id for item in products] == ["a1", "a2"]
    first = products[0]
    assert first.platform == ImageryPlatform.sar
    assert first.mission == "SENTINEL-1"
    assert first.instrument == "SAR"
    assert first.footprint.startswith("POLYGON")
    assert first.preview_url == f"{CATALOG_URL}/odata/v1/Products(a1)/Quicklook/$value"

    call = session.calls_to(PRODUCTS_URL)[0]
    assert call["headers"]["Authorization"] == "Bearer tok-1"
    assert "productType" in call["params"]["$filter"]
    assert "'GRD'" in call["params"]["$filter"]


@pytest.mark.anyio
async def test_search_optical_reads_cloud_cover(catalog, session) -> None:
    session.add("GET", PRODUCTS_URL, FakeResponse(200, {"value": [catalog_item("o1", cloud=12.5)]}))

    products = await catalog.search_optical(_params(max_cloud_coverage=20))

    assert products[0].platform == ImageryPlatform.optical
    assert products[0].cloud_coverage == 12.5
    assert "cloudCover" in session.calls_to(PRODUCTS_URL)[0]["params"]["$filter"]


@pytest.mark.anyio
async def test_search_follows_next_link_up_to_max_results(session, token_cache) -> None:
    client = CatalogClient(
        token_cache=token_cache,
        catalog_url=CATALOG_URL,
        processing_url=PROCESSING_URL,
        session=session,
        max_results=3,
    )
    next_page = f"{PRODUCTS_URL}?$skip=2"
    session.add(
        "GET",
        PRODUCTS_URL,
        FakeResponse(200, {"value": [catalog_item("p1"), catalog_item("p2")], "@odata.nextLink": next_page}),
        FakeResponse(200, {"value": [catalog_item("p3"), catalog_item("p4")], "@odata.nextLink": next_page}),
    )

    products = await client.search_radar(_params())

    assert [item.id for item in products] == ["p1", "p2", "p3"]
    calls = session.calls_to(PRODUCTS_URL)
    assert len(calls) == 2
    assert calls[1]["url"] == next_page
    assert calls[1]["params"] is None


@pytest.mark.anyio
async def test_invalid_catalog_records_are_skipped(catalog, session) -> None:
    broken = catalog_item("bad")
    broken["ContentDate"] = {}
    session.add("GET", PRODUCTS_URL, FakeResponse(200, {"value": [broken, catalog_item("ok")]}))

    products = await catalog.search_radar(_params())

    assert [item.id for item in products] == ["ok"]


@pytest.mark.anyio
async def test_unauthorized_clears_token_and_retries_once(catalog, session) -> None:
    session.clear_routes()
    session.add("POST", TOKEN_URL, token_response("stale"), token_response("fresh"))
    session.add(
        "GET",
        PRODUCTS_URL,
        FakeResponse(401, text="expired"),
        FakeResponse(200, {"value": [catalog_item("r1")]}),
    )

    products = await catalog.search_radar(_params())

    assert [item.id for item in products] == ["r1"]
    assert len(session.calls_to(TOKEN_URL)) == 2
    searches = session.calls_to(PRODUCTS_URL)
    assert [call["headers"]["Authorization"] for call in searches] == [
        "Bearer stale",
        "Bearer fresh",
    ]


@pytest.mark.anyio
async def test_second_unauthorized_is_terminal(catalog, session) -> None:
    session.add("GET", PRODUCTS_URL, FakeResponse(401, text="nope"))

    with pytest.raises(AuthError):
        await catalog.search_radar(_params())
    assert len(session.calls_to(PRODUCTS_URL)) == 2


@pytest.mark.anyio
async def test_concurrent_unauthorized_searches_refresh_token_once(catalog, session) -> None:
    session.clear_routes()
    session.add("POST", TOKEN_URL, token_response("stale"), token_response("fresh"), token_response("extra"))

    def responder(call):
        odata = (call.get("params") or {}).get("$filter", "")
        radar = "SENTINEL-1" in odata
        if call["headers"]["Authorization"] == "Bearer stale":
            # The optical rejection lands after the radar retry has refreshed the token.
            return FakeResponse(401, text="expired", delay=0.0 if radar else 0.05)
        return FakeResponse(200, {"value": [catalog_item("r1" if radar else "o1")]})

    session.add("GET", PRODUCTS_URL, responder)

    radar, optical = await asyncio.gather(
        catalog.search_radar(_params()), catalog.search_optical(_params())
    )

    assert [item.id for item in radar] == ["r1"]
    assert [item.id for item in optical] == ["o1"]
    assert len(session.calls_to(TOKEN_URL)) == 2


@pytest.mark.anyio
async def test_non_success_status_raises_catalog_error(catalog, session) -> None:
    session.add("GET", PRODUCTS_URL, FakeResponse(503, text="maintenance"))

    with pytest.raises(CatalogError) as excinfo:
        await catalog.search_optical(_params())

    assert excinfo.value.status == 503
    assert excinfo.value.message == "maintenance"
    assert str(excinfo.value) == "503 - maintenance"


@pytest.mark.anyio
async def test_find_imagery_degrades_failed_optical_family(catalog, session) -> None:
    radar = FakeResponse(200, {"value": [catalog_item("s1-a"), catalog_item("s1-b")]})
    session.add("GET", PRODUCTS_URL, _by_collection(radar, FakeResponse(500, text="boom")))

    bundle = await catalog.find_imagery(25.0343, -71.2847, CENTER)

    assert [item.id for item in bundle.radar] == ["s1-a", "s1-b"]
    assert bundle.optical == []
    assert bundle.partial is True
    assert bundle.errors and bundle.errors[0].startswith("optical:")


@pytest.mark.anyio
async def test_find_imagery_uses_default_window_and_cloud_limit(catalog, session) -> None:
    empty = FakeResponse(200, {"value": []})
    session.add("GET", PRODUCTS_URL, empty)

    bundle = await catalog.find_imagery(25.0343, -71.2847, CENTER)

    assert bundle.partial is False
    filters = [call["params"]["$filter"] for call in session.calls_to(PRODUCTS_URL)]
    assert all("ge 2026-02-26T12:00:00.000Z" in item for item in filters)
    assert all("le 2026-03-04T12:00:00.000Z" in item for item in filters)
    optical = next(item for item in filters if "SENTINEL-2" in item)
    assert "DoubleAttribute/Value le 20" in optical


@pytest.mark.anyio
async def test_find_imagery_raises_when_both_families_fail(catalog, session) -> None:
    session.add("GET", PRODUCTS_URL, FakeResponse(500, text="down"))

    with pytest.raises(CatalogError, match="All imagery searches failed"):
        await catalog.find_imagery(25.0, -71.0, CENTER)


@pytest.mark.anyio
async def test_find_imagery_raises_auth_error_when_both_families_unauthorized(catalog, session) -> None:
    session.add("GET", PRODUCTS_URL, FakeResponse(401, text="denied"))

    with pytest.raises(AuthError):
        await catalog.find_imagery(25.0, -71.0, CENTER)


@pytest.mark.anyio
async def test_find_imagery_validates_before_network(catalog, session) -> None:
    with pytest.raises(ValidationError):
        await catalog.find_imagery(95.0, -71.0, CENTER)
    with pytest.raises(ValidationError):
        await catalog.find_imagery(25.0, -71.0, CENTER, buffer_km=0)
    assert session.calls == []


@pytest.mark.anyio
async def test_fetch_quicklook(catalog, session) -> None:
    session.add("GET", "/Quicklook/$value", FakeResponse(200, body=b"\xff\xd8jpeg"))

    content = await catalog.fetch_quicklook("abc-123")

    assert content == b"\xff\xd8jpeg"
    assert session.calls_to("Quicklook")[0]["headers"]["Accept"] == "image/*"


@pytest.mark.anyio
async def test_fetch_quicklook_rejects_malformed_id(catalog, session) -> None:
    with pytest.raises(ValidationError):
        await catalog.fetch_quicklook("../../etc/passwd")
    assert session.calls == []


@pytest.mark.anyio
async def test_render_oil_spill_index_posts_evalscript(catalog, session) -> None:
    session.add("POST", f"{PROCESSING_URL}/api/v1/process", FakeResponse(200, body=b"\x89PNG"))
    bbox = bounding_box(25.0343, -71.2847, 10)

    image = await catalog.render_oil_spill_index(
        bbox,
        datetime(2026, 3, 1, tzinfo=timezone.utc),
        datetime(2026, 3, 2, tzinfo=timezone.utc),
    )

    assert image == b"\x89PNG"
    body = session.calls_to("/api/v1/process")[0]["json"]
    assert body["input"]["bounds"]["bbox"] == bbox.as_list()
    assert body["input"]["data"][0]["dataFilter"]["timeRange"] == {
        "from": "2026-03-01T00:00:00.000Z",
        "to": "2026-03-02T00:00:00.000Z",
    }
    assert "(sample.B03 + sample.B04) / sample.B02" in body["evalscript"]


@pytest.mark.anyio
async def test_search_many_isolates_failing_locations(catalog, session) -> None:
    def responder(call):
        odata = call["params"]["$filter"]
        if "POLYGON ((9" in odata:
            return FakeResponse(500, text="bad tile")
        return FakeResponse(200, {"value": [catalog_item("hit")]})

    session.add("GET", PRODUCTS_URL, responder)

    results = await catalog.search_many([(25.0, -71.0), (10.0, 10.0)], _params())

    assert [item.id for item in results["25.0,-71.0"]] == ["hit"]
    assert results["10.0,10.0"] == []
