"""FastAPI application setup for Privacy Vault."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from privacy_vault.api.dependencies import get_app_settings, get_pipeline, get_scheduler, shutdown
from privacy_vault.api.routes_admin import router as admin_router
from privacy_vault.api.routes_ingest import router as ingest_router
from privacy_vault.api.routes_query import router as query_router
from privacy_vault.core.errors import PipelineError
from privacy_vault.core.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Privacy Vault",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5174",
        "http://localhost:5174",
        "tauri://localhost",
    ],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(ingest_router, prefix="/ingest", tags=["ingest"])
app.include_router(query_router, prefix="", tags=["query"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup() -> None:
    """Open the store, load indexes and start the retention scheduler."""
    settings = get_app_settings()
    get_pipeline()
    if settings.scheduler_enabled:
        get_scheduler().start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    shutdown()


@app.get("/health", tags=["admin"])
def health() -> dict[str, object]:
    """Liveness plus the state a caller may need to act on."""
    pipeline = get_pipeline()
    return {
        "ok": True,
        "documents": pipeline.documents.count(),
        "capacity": pipeline.documents.capacity,
        "detection_degraded": pipeline.pii.degraded,
        "embedding_backend": pipeline.documents.embedding_model.backend,
        "embedding_degraded": pipeline.documents.embedding_model.degraded,
    }
