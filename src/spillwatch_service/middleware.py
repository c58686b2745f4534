from __future__ import annotations

import logging
import secrets
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from spillwatch_service.observability import record_http_request


logger = logging.getLogger("spillwatch.api")

PUBLIC_PATHS = frozenset({"/", "/v1/health"})
# EventSource cannot send headers, so the event stream may pass the key as a query parameter.
QUERY_KEY_PATHS = frozenset({"/v1/events"})
STALE_HEADER = "X-SpillWatch-Stale"


class APIKeyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, api_key: str | None):
        super().__init__(app)
        self._api_key = api_key.strip() if api_key else None

    def _presented_key(self, request: Request) -> str:
        key = request.headers.get("X-API-Key")
        if key is None and request.url.path in QUERY_KEY_PATHS:
            key = request.query_params.get("api_key")
        return key or ""

    async def dispatch(self, request: Request, call_next):
        if not self._api_key or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if not secrets.compare_digest(self._presented_key(request), self._api_key):
            logger.warning("api_key_rejected method=%s path=%s", request.method, request.url.path)
            return JSONResponse(status_code=401, content={"detail": "Invalid API key."})

        return await call_next(request)


class MaxBodySizeMiddleware(BaseHTTPMiddleware):
    """Reject detection edits whose body exceeds the configured size."""

    def __init__(self, app, max_body_bytes: int):
        super().__init__(app)
        self._max_body_bytes = max(1, int(max_body_bytes))

    async def dispatch(self, request: Request, call_next):
        if request.method not in {"PATCH", "POST", "PUT"}:
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            size = int(content_length)
        else:
            size = len(await request.body())
        if size > self._max_body_bytes:
            logger.warning(
                "request_body_rejected path=%s bytes=%s limit=%s",
                request.url.path,
                size,
                self._max_body_bytes,
            )
            return JSONResponse(status_code=413, content={"detail": "Payload too large."})

        return await call_next(request)


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    """Tag responses with a request id and the store's staleness, then record metrics.

    Requests are labelled by route template so ``/v1/detections/{detection_id}``
    stays a single metrics series.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.monotonic()
        status_code = 500
        stale = False
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            stale = _store_is_stale(request)
            response.headers["X-Request-ID"] = request_id
            if stale:
                response.headers[STALE_HEADER] = "true"
            return response
        finally:
            elapsed = max(0.0, time.monotonic() - started)
            route = request.scope.get("route")
            route_path = str(getattr(route, "path", "_unmatched"))
            record_http_request(request.method, route_path, status_code, elapsed)
            logger.info(
                "request_completed method=%s route=%s status=%s stale=%s duration_s=%.4f",
                request.method,
                route_path,
                status_code,
                str(stale).lower(),
                elapsed,
                extra={"request_id": request_id},
            )


def _store_is_stale(request: Request) -> bool:
    store = getattr(request.app.state, "store", None)
    return store is not None and store.error is not None
