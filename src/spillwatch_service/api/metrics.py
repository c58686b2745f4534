from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from spillwatch.settings import Settings
from spillwatch.sync.detection_store import DetectionStore
from spillwatch_service.dependencies import get_runtime_settings, get_store
from spillwatch_service.observability import render_metrics

router = APIRouter(prefix="/v1", tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
def metrics(
    store: DetectionStore = Depends(get_store),
    settings: Settings = Depends(get_runtime_settings),
) -> Response:
    if not settings.spillwatch_enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled.")
    body = render_metrics(store.detections)
    return Response(content=body, media_type=CONTENT_TYPE_LATEST)
