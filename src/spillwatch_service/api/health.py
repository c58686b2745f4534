from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from spillwatch.settings import Settings
from spillwatch_service.dependencies import get_runtime_settings

router = APIRouter(prefix="/v1", tags=["health"])


@router.get("/health")
def healthcheck(
    request: Request,
    settings: Settings = Depends(get_runtime_settings),
) -> dict[str, str]:
    store = getattr(request.app.state, "store", None)
    tokens = getattr(request.app.state, "tokens", None)
    return {
        "status": "ok" if store is not None and store.error is None else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db_backend": settings.db_backend,
        "store_state": store.state.value if store is not None else "unavailable",
        "detections": str(len(store.detections)) if store is not None else "0",
        "catalog_authenticated": str(bool(tokens and tokens.is_authenticated())).lower(),
        "metrics_enabled": str(bool(settings.spillwatch_enable_metrics)).lower(),
    }
