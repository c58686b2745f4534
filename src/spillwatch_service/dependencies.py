from __future__ import annotations

from datetime import datetime

from fastapi import HTTPException, Query, Request, status

from spillwatch.catalog.client import CatalogClient
from spillwatch.models import SearchFilters
from spillwatch.settings import Settings
from spillwatch.sync.detection_store import DetectionStore, coerce_filters


def get_store(request: Request) -> DetectionStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Detection store is not ready.",
        )
    return store


def get_catalog(request: Request) -> CatalogClient:
    catalog = getattr(request.app.state, "catalog", None)
    if catalog is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Catalog client is not ready.",
        )
    return catalog


def get_runtime_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settings are not ready.",
        )
    return settings


def get_filters(
    status: str | None = None,
    severity: list[str] = Query(default=[]),
    response_status: list[str] = Query(default=[]),
    validation_status: list[str] = Query(default=[]),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    lat: float | None = None,
    lng: float | None = None,
    radius_km: float | None = None,
    q: str | None = None,
    tag: list[str] = Query(default=[]),
) -> SearchFilters:
    """Build ``SearchFilters`` from the detection query parameters."""

    raw: dict[str, object] = {
        "severity": severity,
        "response_status": response_status,
        "validation_status": validation_status,
        "search_text": q,
        "tags": tag,
    }
    if status:
        raw["status"] = status
    if date_from is not None or date_to is not None:
        raw["date_range"] = {"start": date_from, "end": date_to}
    if lat is not None or lng is not None or radius_km is not None:
        raw["location"] = {"lat": lat, "lng": lng, "radius_km": radius_km}
    return coerce_filters(raw)
