from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from spillwatch.catalog.client import CatalogClient
from spillwatch.errors import AuthError, CatalogError
from spillwatch.models import ImageryBundle
from spillwatch.sync.detection_store import DetectionStore
from spillwatch_service.dependencies import get_catalog, get_store
from spillwatch_service.observability import record_imagery_lookup

router = APIRouter(prefix="/v1", tags=["imagery"])


@router.get("/detections/{detection_id}/imagery", response_model=ImageryBundle)
async def detection_imagery(
    detection_id: str,
    days_before: int = Query(default=3, ge=0, le=30),
    days_after: int = Query(default=3, ge=0, le=30),
    store: DetectionStore = Depends(get_store),
    catalog: CatalogClient = Depends(get_catalog),
) -> ImageryBundle:
    detection = await store.fetch(detection_id)
    try:
        bundle = await catalog.find_imagery(
            detection.latitude,
            detection.longitude,
            detection.detected_at,
            days_before=days_before,
            days_after=days_after,
        )
    except (AuthError, CatalogError):
        record_imagery_lookup("failed")
        raise
    record_imagery_lookup("partial" if bundle.partial else "complete")
    return bundle


@router.get("/imagery/{product_id}/preview")
async def imagery_preview(
    product_id: str,
    catalog: CatalogClient = Depends(get_catalog),
) -> Response:
    content = await catalog.fetch_quicklook(product_id)
    return Response(
        content=content,
        media_type="image/jpeg",
        headers={"Cache-Control": "public, max-age=3600"},
    )
