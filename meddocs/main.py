"""
FastAPI Application - Entry Point

Medical Document Ingestion API

Architecture:
  - Documents are uploaded under /api/medical-documents and processed in the
    background by DocumentPipeline (text extraction → structured extraction)
  - System prompts are editable at runtime under /api/admin/system-prompts
  - Every error body is {"error", "code", "requestId"?}

Middleware stack (innermost → outermost):
  1. CORS - restrict to configured origins
  2. Request ID injection - X-Request-ID header on every response
  3. Request logging - one log line per request with latency

Lifespan:
  startup   schema ensured, default prompts seeded, stale PROCESSING rows
            failed, file store / prompt store / pipeline / dispatcher built,
            periodic stale sweeper started (in-process dispatch only)
  shutdown  sweeper stopped, in-flight pipelines drained (runs still going
            after the drain window are cancelled and marked FAILED),
            connection pool disposed
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from meddocs.api.v1.documents import router as documents_router
from meddocs.api.v1.prompts import router as prompts_router
from meddocs.core.config import settings
from meddocs.db.session import AsyncSessionLocal, check_db_health, engine, init_models
from meddocs.llm.prompts import PromptStore
from meddocs.llm.structured import build_structured_extractor
from meddocs.processing.extractor import TextExtractorOrchestrator
from meddocs.schemas.documents import ErrorResponse, UploadErrors
from meddocs.services.dispatcher import InProcessDispatcher, build_dispatcher
from meddocs.services.pipeline import (
    DocumentPipeline,
    fail_stale_documents,
    sweep_stale_documents_forever,
)
from meddocs.storage.local import LocalFileStore

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

SHUTDOWN_DRAIN_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Application lifespan - startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Medical Document API | env=%s dispatch=%s ai_enabled=%s",
        settings.app_env, settings.dispatch_backend, settings.ai_enabled,
    )

    if settings.db_auto_create:
        await init_models()

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    prompt_store = PromptStore()
    async with AsyncSessionLocal() as db:
        async with db.begin():
            seeded = await prompt_store.seed_defaults(db)
    logger.info("System prompts ready | seeded=%d", seeded)

    await fail_stale_documents()

    pipeline = DocumentPipeline(
        TextExtractorOrchestrator(),
        build_structured_extractor(prompt_store),
    )
    app.state.file_store   = LocalFileStore(settings.uploads_dir)
    app.state.prompt_store = prompt_store
    app.state.pipeline     = pipeline
    app.state.dispatcher   = build_dispatcher(pipeline)

    # Celery beat owns the periodic sweep when dispatching through Celery
    sweeper = None
    if isinstance(app.state.dispatcher, InProcessDispatcher):
        sweeper = asyncio.create_task(
            sweep_stale_documents_forever(settings.stale_sweep_interval_seconds),
            name="stale-sweeper",
        )

    if not settings.ai_enabled:
        logger.warning("OPENAI_API_KEY not set; every document with text will end FAILED")

    yield

    logger.info("Shutting down Medical Document API")
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Medical Document Ingestion API",
        description=(
            "Upload medical documents (PDF, JPG, PNG), extract their text with "
            "embedded-text or OCR, and turn it into structured clinical data."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order - last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers - uniform {error, code, requestId} bodies
    # ----------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """
        Routes raise HTTPException(detail=ErrorResponse.body()); send the body as-is.
        Framework errors (unknown route, wrong method) get the same envelope.
        """
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = ErrorResponse(
                error=str(exc.detail),
                code=f"HTTP_{exc.status_code}",
                request_id=getattr(request.state, "request_id", None),
            ).body()
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
        body = ErrorResponse(
            error=f"Invalid request: {field} {first.get('msg', '')}".strip(),
            code="VALIDATION_ERROR",
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.body(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions - never expose stack traces."""
        request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex[:16]
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=UploadErrors.internal_error(request_id).body(),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router)
    app.include_router(prompts_router)

    # ----------------------------------------------------------------
    # Health & readiness endpoints
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "meddocs-api"}

    @app.get(
        "/health/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meddocs.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
