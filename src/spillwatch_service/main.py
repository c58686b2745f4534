from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from spillwatch.catalog.auth import TokenCache
from spillwatch.catalog.client import CatalogClient
from spillwatch.errors import (
    AuthError,
    CatalogError,
    DetectionNotFoundError,
    StoreError,
    ValidationError,
)
from spillwatch.settings import Settings, get_settings
from spillwatch.store.backend import DetectionBackend
from spillwatch.store.backend_factory import create_detection_backend
from spillwatch.sync.detection_store import DetectionStore
from spillwatch_service.api.detections import router as detections_router
from spillwatch_service.api.events import router as events_router
from spillwatch_service.api.export import router as export_router
from spillwatch_service.api.health import router as health_router
from spillwatch_service.api.imagery import router as imagery_router
from spillwatch_service.api.metrics import router as metrics_router
from spillwatch_service.logging_config import configure_logging
from spillwatch_service.middleware import (
    APIKeyMiddleware,
    MaxBodySizeMiddleware,
    RequestTelemetryMiddleware,
)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(DetectionNotFoundError)
    async def not_found(request: Request, exc: DetectionNotFoundError) -> JSONResponse:
        detection_id = exc.args[0] if exc.args else ""
        return JSONResponse(
            status_code=404, content={"detail": f"Detection '{detection_id}' not found."}
        )

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"detail": f"Catalog authentication failed: {exc}"},
        )

    @app.exception_handler(CatalogError)
    async def catalog_error(request: Request, exc: CatalogError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"detail": exc.message, "upstream_status": exc.status},
        )


def create_app(
    settings: Settings | None = None,
    *,
    backend: DetectionBackend | None = None,
    catalog: CatalogClient | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(level=settings.spillwatch_log_level, json_logs=settings.spillwatch_log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store_backend = backend or create_detection_backend(settings)
        store = DetectionStore.from_settings(settings, backend=store_backend)
        tokens: TokenCache | None = None
        catalog_client = catalog
        if catalog_client is None:
            tokens = TokenCache.from_settings(settings)
            catalog_client = CatalogClient.from_settings(settings, token_cache=tokens)

        await store.start()
        app.state.settings = settings
        app.state.store = store
        app.state.catalog = catalog_client
        app.state.tokens = tokens
        try:
            yield
        finally:
            await store.close()
            if catalog is None:
                await catalog_client.close()
            if tokens is not None:
                await tokens.close()
            if backend is None:
                store_backend.close()

    app = FastAPI(
        title="SpillWatch Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestTelemetryMiddleware)
    app.add_middleware(
        MaxBodySizeMiddleware, max_body_bytes=settings.spillwatch_max_request_mb * 1024 * 1024
    )
    app.add_middleware(APIKeyMiddleware, api_key=settings.spillwatch_api_key)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    _register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(detections_router)
    app.include_router(imagery_router)
    app.include_router(export_router)
    app.include_router(events_router)
    app.include_router(metrics_router)

    @app.get("/", response_class=HTMLResponse, include_in_schema=False)
    def root_page() -> str:
        return _ROOT_PAGE % settings.db_backend

    return app


_ROOT_PAGE = """
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>SpillWatch Service</title>
    <style>
      body { font-family: Arial, sans-serif; margin: 2rem; color: #111827; }
      h1 { margin-bottom: .25rem; }
      p { color: #4b5563; }
      .card { border: 1px solid #e5e7eb; border-radius: 10px; padding: 1rem; max-width: 700px; }
      code { background: #f3f4f6; padding: .15rem .4rem; border-radius: 6px; }
      ul { line-height: 1.9; }
      a { color: #0f766e; text-decoration: none; }
    </style>
  </head>
  <body>
    <div class="card">
      <h1>SpillWatch Service</h1>
      <p>Service is running. Detection store backend: <code>%s</code></p>
      <ul>
        <li><a href="/docs">OpenAPI docs</a></li>
        <li><a href="/v1/health">Health check</a></li>
        <li><code>GET /v1/detections</code></li>
        <li><code>GET /v1/detections/{id}/imagery</code></li>
        <li><code>GET /v1/events</code> (SSE)</li>
      </ul>
    </div>
  </body>
</html>
"""


app = create_app()
