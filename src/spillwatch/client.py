from __future__ import annotations

import json
import time
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from typing import Any

import requests
from anyio.from_thread import BlockingPortal, start_blocking_portal

from spillwatch.catalog.auth import TokenCache
from spillwatch.catalog.client import CatalogClient
from spillwatch.errors import DetectionNotFoundError, ValidationError
from spillwatch.export import render
from spillwatch.models import (
    ChangeEvent,
    Detection,
    DetectionPatch,
    DetectionStatistics,
    ImageryBundle,
    SearchFilters,
)
from spillwatch.settings import Settings, get_settings
from spillwatch.store.backend_factory import create_detection_backend
from spillwatch.sync.detection_store import DetectionStore, coerce_filters, coerce_patch


FiltersLike = SearchFilters | Mapping[str, Any] | None


def _as_filters(filters: FiltersLike) -> SearchFilters:
    if filters is None:
        return SearchFilters()
    return coerce_filters(filters)


class SpillWatchClient(AbstractContextManager["SpillWatchClient"]):
    """Synchronous client supporting direct mode and service mode.

    Direct mode runs a ``DetectionStore`` and ``CatalogClient`` on a background
    event loop. Service mode talks to a running ``spillwatch_service``.
    """

    def __init__(
        self,
        *,
        mode: str = "direct",
        service_url: str | None = None,
        api_key: str | None = None,
        settings: Settings | None = None,
        store: DetectionStore | None = None,
        catalog: CatalogClient | None = None,
    ):
        normalized_mode = mode.strip().lower()
        if normalized_mode not in {"direct", "service"}:
            raise ValueError("mode must be 'direct' or 'service'.")

        self.mode = normalized_mode
        self.service_url = (service_url or "http://127.0.0.1:8000").rstrip("/")
        self.api_key = api_key

        self._session: requests.Session | None = None
        self._portal: BlockingPortal | None = None
        self._portal_cm = None
        self._store: DetectionStore | None = None
        self._catalog: CatalogClient | None = None
        self._tokens: TokenCache | None = None
        self._owns_backend = False
        self._owns_catalog = False

        if self.mode == "service":
            self._session = requests.Session()
            if self.api_key:
                self._session.headers.update({"X-API-Key": self.api_key})
            return

        settings = settings or get_settings()
        self._portal_cm = start_blocking_portal()
        self._portal = self._portal_cm.__enter__()
        if store is not None:
            self._store = store
        else:
            self._store = DetectionStore.from_settings(
                settings, backend=create_detection_backend(settings)
            )
            self._owns_backend = True
        if catalog is not None:
            self._catalog = catalog
        else:
            self._tokens = TokenCache.from_settings(settings)
            self._catalog = CatalogClient.from_settings(settings, token_cache=self._tokens)
            self._owns_catalog = True
        self._portal.call(self._store.start)

    def close(self) -> None:
        if self.mode == "direct":
            if self._portal and self._store:
                self._portal.call(self._store.close)
                if self._owns_backend:
                    self._store.backend.close()
            if self._portal and self._catalog and self._owns_catalog:
                self._portal.call(self._catalog.close)
            if self._portal and self._tokens:
                self._portal.call(self._tokens.close)
            if self._portal_cm:
                self._portal_cm.__exit__(None, None, None)
            self._portal = None
            self._portal_cm = None
            self._store = None
            self._catalog = None
            self._tokens = None
        else:
            if self._session:
                self._session.close()
            self._session = None

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def list_detections(self, filters: FiltersLike = None) -> list[Detection]:
        query = _as_filters(filters)
        if self.mode == "direct":
            assert self._portal and self._store
            return list(self._reload(query))

        payload = self._get_json("/v1/detections", params=query.to_query_params())
        return [Detection.model_validate(item) for item in payload["items"]]

    def get_detection(self, detection_id: str) -> Detection:
        if self.mode == "direct":
            assert self._portal and self._store
            return self._portal.call(self._store.fetch, detection_id)

        return Detection.model_validate(self._get_json(f"/v1/detections/{detection_id}"))

    def update_detection(
        self, detection_id: str, changes: DetectionPatch | Mapping[str, Any]
    ) -> Detection:
        if self.mode == "direct":
            assert self._portal and self._store
            return self._portal.call(self._store.update, detection_id, changes)

        patch = coerce_patch(changes)
        assert self._session is not None
        response = self._session.patch(
            f"{self.service_url}/v1/detections/{detection_id}",
            json=patch.changes(),
            timeout=30,
        )
        self._raise_for_status(response, detection_id)
        return Detection.model_validate(response.json())

    def delete_detection(self, detection_id: str) -> None:
        if self.mode == "direct":
            assert self._portal and self._store
            self._portal.call(self._store.delete, detection_id)
            return

        assert self._session is not None
        response = self._session.delete(
            f"{self.service_url}/v1/detections/{detection_id}", timeout=30
        )
        self._raise_for_status(response, detection_id)

    def statistics(self, filters: FiltersLike = None) -> DetectionStatistics:
        query = _as_filters(filters)
        if self.mode == "direct":
            assert self._portal and self._store
            self._reload(query)
            return self._store.statistics

        return DetectionStatistics.model_validate(
            self._get_json("/v1/statistics", params=query.to_query_params())
        )

    def find_imagery(
        self,
        detection_id: str,
        *,
        days_before: int = 3,
        days_after: int = 3,
    ) -> ImageryBundle:
        if self.mode == "direct":
            assert self._portal and self._store and self._catalog
            detection = self._portal.call(self._store.fetch, detection_id)

            async def _lookup() -> ImageryBundle:
                assert self._catalog is not None
                return await self._catalog.find_imagery(
                    detection.latitude,
                    detection.longitude,
                    detection.detected_at,
                    days_before=days_before,
                    days_after=days_after,
                )

            return self._portal.call(_lookup)

        payload = self._get_json(
            f"/v1/detections/{detection_id}/imagery",
            params={"days_before": days_before, "days_after": days_after},
            timeout=120,
        )
        return ImageryBundle.model_validate(payload)

    def fetch_quicklook(self, product_id: str) -> bytes:
        if self.mode == "direct":
            assert self._portal and self._catalog
            return self._portal.call(self._catalog.fetch_quicklook, product_id)

        assert self._session is not None
        response = self._session.get(
            f"{self.service_url}/v1/imagery/{product_id}/preview", timeout=60
        )
        self._raise_for_status(response, product_id)
        return response.content

    def export(self, fmt: str, filters: FiltersLike = None) -> str:
        query = _as_filters(filters)
        if self.mode == "direct":
            assert self._portal and self._store
            detections = self._reload(query)
            return render(fmt, detections)

        assert self._session is not None
        response = self._session.get(
            f"{self.service_url}/v1/export/{fmt}",
            params=query.to_query_params(),
            timeout=60,
        )
        self._raise_for_status(response, fmt)
        return response.text

    def stream_changes(
        self,
        *,
        since: int | None = None,
        poll_interval: float = 0.5,
    ) -> Iterator[ChangeEvent]:
        if self.mode == "direct":
            assert self._portal and self._store
            backend = self._store.backend
            cursor = since
            if cursor is None:
                cursor = self._portal.call(backend.latest_change_id)
            while True:
                rows = self._portal.call(backend.list_changes, cursor, 200)
                if rows:
                    for row in rows:
                        cursor = int(row["id"])
                        yield ChangeEvent.model_validate(row)
                    continue
                time.sleep(max(0.2, poll_interval))

        assert self._session is not None
        response = self._session.get(
            f"{self.service_url}/v1/events",
            params={"since": since},
            stream=True,
            timeout=120,
        )
        response.raise_for_status()

        event_type = "message"
        event_id: int | None = None
        data_parts: list[str] = []

        for raw_line in response.iter_lines(decode_unicode=True):
            if raw_line is None:
                continue
            line = raw_line.strip()
            if not line:
                if data_parts and event_type != "heartbeat":
                    payload = json.loads("\n".join(data_parts))
                    payload.setdefault("id", event_id)
                    yield ChangeEvent.model_validate(payload)
                event_type = "message"
                event_id = None
                data_parts = []
                continue

            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_type = line.split(":", 1)[1].strip()
            elif line.startswith("id:"):
                value = line.split(":", 1)[1].strip()
                event_id = int(value) if value.isdigit() else None
            elif line.startswith("data:"):
                data_parts.append(line.split(":", 1)[1].strip())

    def _reload(self, query: SearchFilters) -> tuple[Detection, ...]:
        assert self._portal and self._store
        detections = self._portal.call(self._store.reload, query)
        # The store keeps the last good collection on failure; scripts want the error.
        if self._store.error is not None:
            raise self._store.error
        return detections

    def _get_json(
        self, path: str, *, params: Any = None, timeout: float = 30
    ) -> Any:
        assert self._session is not None
        response = self._session.get(f"{self.service_url}{path}", params=params, timeout=timeout)
        self._raise_for_status(response, path)
        return response.json()

    @staticmethod
    def _raise_for_status(response: requests.Response, subject: str) -> None:
        if response.status_code == 404:
            raise DetectionNotFoundError(subject)
        if response.status_code == 422:
            raise ValidationError(_detail(response))
        response.raise_for_status()


def _detail(response: requests.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return response.text
    return detail if isinstance(detail, str) else json.dumps(detail)
