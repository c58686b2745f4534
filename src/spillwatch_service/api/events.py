from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from spillwatch.settings import Settings
from spillwatch.store.changes import stream_changes
from spillwatch.sync.detection_store import DetectionStore
from spillwatch_service.dependencies import get_runtime_settings, get_store

router = APIRouter(prefix="/v1", tags=["events"])


@router.get("/events")
async def events(
    since: int | None = None,
    store: DetectionStore = Depends(get_store),
    settings: Settings = Depends(get_runtime_settings),
) -> StreamingResponse:
    backend = store.backend

    async def event_stream():
        async for event in stream_changes(
            backend,
            table=backend.table,
            since_id=since,
            poll_interval=settings.spillwatch_feed_poll_seconds,
        ):
            if event is None:
                yield ": heartbeat\n\n"
                continue
            payload = event.model_dump(mode="json")
            if payload.get("id") is not None:
                yield f"id: {payload['id']}\n"
            yield f"event: {payload['type']}\n"
            yield f"data: {json.dumps(payload)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
