from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from spillwatch.errors import SpillWatchError
from spillwatch.models import (
    Detection,
    DetectionListResponse,
    DetectionStatistics,
    SearchFilters,
)
from spillwatch.sync.detection_store import DetectionStore, StoreState
from spillwatch.sync.statistics import compute_statistics
from spillwatch_service.dependencies import get_filters, get_store
from spillwatch_service.observability import record_mutation

router = APIRouter(prefix="/v1", tags=["detections"])


def visible_detections(store: DetectionStore, filters: SearchFilters) -> list[Detection]:
    if store.state == StoreState.idle and store.error is not None:
        raise store.error
    return [item for item in store.detections if filters.matches(item)]


@router.get("/detections", response_model=DetectionListResponse)
def list_detections(
    filters: SearchFilters = Depends(get_filters),
    store: DetectionStore = Depends(get_store),
) -> DetectionListResponse:
    items = visible_detections(store, filters)
    return DetectionListResponse(items=items, total=len(items), stale=store.error is not None)


@router.get("/statistics", response_model=DetectionStatistics)
def statistics(
    filters: SearchFilters = Depends(get_filters),
    store: DetectionStore = Depends(get_store),
) -> DetectionStatistics:
    detections = visible_detections(store, filters)
    if filters == SearchFilters():
        return store.statistics
    return compute_statistics(detections)


@router.get("/detections/{detection_id}", response_model=Detection)
async def get_detection(
    detection_id: str,
    store: DetectionStore = Depends(get_store),
) -> Detection:
    return await store.fetch(detection_id)


@router.patch("/detections/{detection_id}", response_model=Detection)
async def update_detection(
    detection_id: str,
    changes: dict[str, Any] = Body(...),
    store: DetectionStore = Depends(get_store),
) -> Detection:
    try:
        detection = await store.update(detection_id, changes)
    except SpillWatchError:
        record_mutation("update", "failed")
        raise
    record_mutation("update", "ok")
    return detection


@router.delete("/detections/{detection_id}")
async def delete_detection(
    detection_id: str,
    store: DetectionStore = Depends(get_store),
) -> dict[str, object]:
    try:
        await store.delete(detection_id)
    except SpillWatchError:
        record_mutation("delete", "failed")
        raise
    record_mutation("delete", "ok")
    return {"id": detection_id, "deleted": True}
