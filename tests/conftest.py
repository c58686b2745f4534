from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from spillwatch.catalog.auth import TokenCache
from spillwatch.catalog.client import CatalogClient
from spillwatch.errors import DetectionNotFoundError, StoreError
from spillwatch.models import ChangeType, ImageryBundle, ImageryPlatform, Product, SearchFilters
from spillwatch.settings import Settings
from spillwatch.store.backend import (
    DETECTIONS_TABLE,
    DetectionQuery,
    storage_record,
    storage_timestamp,
    validated_detection,
)


BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def detection_record(**overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": "det-1",
        "latitude": 25.0343,
        "longitude": -71.2847,
        "status": "Oil spill",
        "detected_at": BASE_TIME.isoformat(),
        "confidence": 0.9,
        "source": "Sentinel-1",
        "created_at": BASE_TIME.isoformat(),
        "severity": "High",
        "area_affected_km2": 12.5,
        "response_status": "Pending",
        "validation_status": "Unverified",
        "copernicus_product_id": "S1A_IW_GRDH_1SDV_20260301",
        "notes": "Sheen near shipping lane, reported by patrol",
        "tags": ["shipping"],
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_record() -> Callable[..., dict[str, Any]]:
    return detection_record


class MemoryBackend:
    """In-memory detection backend with a change log and scripted failures."""

    table = DETECTIONS_TABLE

    def __init__(self, records: list[dict[str, Any]] | None = None):
        self._lock = threading.RLock()
        self.rows: dict[str, dict[str, Any]] = {}
        self.changes: list[dict[str, Any]] = []
        self.select_calls: list[DetectionQuery] = []
        self.select_gate: threading.Event | None = None
        self.select_started = threading.Event()
        self.fail_select: Exception | None = None
        self.fail_update: Exception | None = None
        self.fail_delete: Exception | None = None
        self.write_gate: threading.Event | None = None
        self.closed = False
        for record in records or []:
            stored = storage_record(validated_detection(record))
            self.rows[stored["id"]] = stored

    def select(self, query: DetectionQuery) -> list[dict[str, Any]]:
        self.select_calls.append(query)
        self.select_started.set()
        if self.select_gate is not None:
            self.select_gate.wait(timeout=5)
        if self.fail_select is not None:
            raise self.fail_select
        with self._lock:
            rows = [dict(row) for row in self.rows.values() if self._matches(row, query)]
        rows.sort(key=lambda row: row["detected_at"], reverse=True)
        return rows

    @staticmethod
    def _matches(row: dict[str, Any], query: DetectionQuery) -> bool:
        if query.status and row["status"] != query.status:
            return False
        for column in ("severity", "response_status", "validation_status"):
            wanted = getattr(query, column)
            if wanted and row.get(column) not in wanted:
                return False
        if query.detected_from and row["detected_at"] < storage_timestamp(query.detected_from):
            return False
        if query.detected_to and row["detected_at"] > storage_timestamp(query.detected_to):
            return False
        if query.search_text:
            needle = query.search_text.lower()
            haystacks = (row.get("notes") or "", row.get("copernicus_product_id") or "")
            if not any(needle in text.lower() for text in haystacks):
                return False
        if query.tags and not set(query.tags).issubset(row.get("tags") or []):
            return False
        return True

    def get(self, detection_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.rows.get(detection_id)
            return dict(row) if row else None

    def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        stored = storage_record(validated_detection(record))
        with self._lock:
            self.rows[stored["id"]] = stored
            self._log(ChangeType.insert, stored, None)
        return stored

    def update(self, detection_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if self.write_gate is not None:
            self.write_gate.wait(timeout=5)
        if self.fail_update is not None:
            raise self.fail_update
        with self._lock:
            current = self.rows.get(detection_id)
            if current is None:
                raise DetectionNotFoundError(detection_id)
            stored = storage_record(validated_detection({**current, **fields, "id": detection_id}))
            self.rows[detection_id] = stored
            self._log(ChangeType.update, stored, None)
        return stored

    def delete(self, detection_id: str) -> None:
        if self.write_gate is not None:
            self.write_gate.wait(timeout=5)
        if self.fail_delete is not None:
            raise self.fail_delete
        with self._lock:
            if self.rows.pop(detection_id, None) is None:
                raise DetectionNotFoundError(detection_id)
            self._log(ChangeType.delete, None, {"id": detection_id})

    def _log(self, change_type: ChangeType, record: dict | None, old: dict | None) -> None:
        self.changes.append(
            {
                "id": len(self.changes) + 1,
                "table": self.table,
                "type": change_type.value,
                "timestamp": storage_timestamp(datetime.now(timezone.utc)),
                "record": record,
                "old": old,
            }
        )

    def list_changes(self, since_id: int | None, limit: int = 200) -> list[dict[str, Any]]:
        with self._lock:
            rows = [row for row in self.changes if since_id is None or row["id"] > since_id]
        return rows[:limit]

    def latest_change_id(self) -> int | None:
        with self._lock:
            return self.changes[-1]["id"] if self.changes else None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def memory_backend(make_record) -> MemoryBackend:
    return MemoryBackend(
        [
            make_record(),
            make_record(
                id="det-2",
                latitude=29.5,
                longitude=-88.1,
                status="Non Oil spill",
                severity=None,
                response_status=None,
                validation_status="Verified",
                detected_at=(BASE_TIME - timedelta(days=2)).isoformat(),
                notes="Algae bloom",
                copernicus_product_id=None,
                tags=[],
            ),
            make_record(
                id="det-3",
                latitude=25.3,
                longitude=-71.0,
                severity="Critical",
                validation_status="Verified",
                detected_at=(BASE_TIME - timedelta(days=1)).isoformat(),
                notes="Large slick, tanker AIS gap",
                tags=["tanker", "shipping"],
            ),
        ]
    )


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        payload: Any = None,
        *,
        body: bytes = b"",
        text: str | None = None,
        delay: float = 0.0,
    ):
        self.status = status
        self._payload = payload
        self._body = body
        self._text = text
        self._delay = delay

    async def __aenter__(self) -> "FakeResponse":
        if self._delay:
            await asyncio.sleep(self._delay)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def json(self, content_type: str | None = "application/json") -> Any:
        return self._payload

    async def text(self) -> str:
        if self._text is not None:
            return self._text
        return "" if self._payload is None else str(self._payload)

    async def read(self) -> bytes:
        return self._body


Responder = Callable[[dict[str, Any]], FakeResponse]


class FakeSession:
    """Scripted stand-in for ``aiohttp.ClientSession``.

    Routes match on method and a URL fragment. A route holds either a queue of
    responses (the last one repeats) or a callable receiving the recorded call.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self._routes: list[tuple[str, str, list[FakeResponse] | Responder]] = []
        self.closed = False

    def add(self, method: str, fragment: str, *responses: FakeResponse | Responder) -> None:
        if len(responses) == 1 and callable(responses[0]) and not isinstance(responses[0], FakeResponse):
            self._routes.append((method.upper(), fragment, responses[0]))
        else:
            self._routes.append((method.upper(), fragment, list(responses)))

    def clear_routes(self) -> None:
        self._routes.clear()

    def calls_to(self, fragment: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if fragment in call["url"]]

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        call = {"method": method.upper(), "url": url, **kwargs}
        self.calls.append(call)
        for route_method, fragment, responder in self._routes:
            if route_method == call["method"] and fragment in url:
                if callable(responder):
                    return responder(call)
                if len(responder) > 1:
                    return responder.pop(0)
                return responder[0]
        raise AssertionError(f"Unexpected request {method} {url}")

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    async def close(self) -> None:
        self.closed = True


TOKEN_URL = "https://identity.test/token"
CATALOG_URL = "https://catalog.test"
PROCESSING_URL = "https://sh.test"


def token_response(token: str = "tok-1", expires_in: int = 600, **kwargs: Any) -> FakeResponse:
    return FakeResponse(200, {"access_token": token, "expires_in": expires_in}, **kwargs)


def catalog_item(product_id: str, *, start: str = "2026-03-01T10:00:00.000Z", cloud: float | None = None) -> dict[str, Any]:
    item: dict[str, Any] = {
        "Id": product_id,
        "Name": f"{product_id}.SAFE",
        "ContentDate": {"Start": start, "End": start},
        "Footprint": "geography'SRID=4326;POLYGON((-71.5 24.8,-71.0 24.8,-71.0 25.3,-71.5 25.3,-71.5 24.8))'",
        "Attributes": [],
    }
    if cloud is not None:
        item["Attributes"].append({"Name": "cloudCover", "Value": cloud})
    return item


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def token_cache(session: FakeSession, clock: FakeClock) -> TokenCache:
    session.add("POST", TOKEN_URL, token_response())
    return TokenCache(
        client_id="client",
        client_secret="secret",
        token_url=TOKEN_URL,
        session=session,
        clock=clock,
    )


@pytest.fixture
def catalog(session: FakeSession, token_cache: TokenCache) -> CatalogClient:
    return CatalogClient(
        token_cache=token_cache,
        catalog_url=CATALOG_URL,
        processing_url=PROCESSING_URL,
        session=session,
        max_results=10,
    )


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        spillwatch_db_backend="sqlite",
        spillwatch_db_path=tmp_path / "spillwatch.db",
        spillwatch_feed_poll_seconds=0.05,
        spillwatch_api_key=None,
        spillwatch_copernicus_client_id="client",
        spillwatch_copernicus_client_secret="secret",
    )


@pytest.fixture
def all_filters() -> SearchFilters:
    return SearchFilters()


class StoreErrorBackend(MemoryBackend):
    def select(self, query: DetectionQuery) -> list[dict[str, Any]]:
        raise StoreError("database offline")


class StubCatalog:
    def __init__(self) -> None:
        self.lookups: list[tuple] = []
        self.error: Exception | None = None
        self.bundle = ImageryBundle(
            radar=[
                Product(
                    id="s1-a",
                    title="S1A_IW_GRDH.SAFE",
                    platform=ImageryPlatform.sar,
                    mission="SENTINEL-1",
                    instrument="SAR",
                    acquisition_date=BASE_TIME,
                )
            ],
            partial=True,
            errors=["optical: 500 - boom"],
        )

    async def find_imagery(self, latitude, longitude, center_time, *, days_before=3, days_after=3):
        self.lookups.append((latitude, longitude, center_time, days_before, days_after))
        if self.error is not None:
            raise self.error
        return self.bundle

    async def fetch_quicklook(self, product_id: str) -> bytes:
        return b"\xff\xd8" + product_id.encode()

    async def close(self) -> None:
        pass
