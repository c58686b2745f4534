from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from spillwatch.export import EXPORT_FORMATS, export_filename, render
from spillwatch.models import SearchFilters
from spillwatch.sync.detection_store import DetectionStore
from spillwatch_service.api.detections import visible_detections
from spillwatch_service.dependencies import get_filters, get_store

router = APIRouter(prefix="/v1", tags=["export"])


@router.get("/export/{fmt}")
def export_detections(
    fmt: str,
    filters: SearchFilters = Depends(get_filters),
    store: DetectionStore = Depends(get_store),
) -> Response:
    body = render(fmt, visible_detections(store, filters))
    _, media_type, _ = EXPORT_FORMATS[fmt.strip().lower()]
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(fmt)}"'},
    )
