# ============================================================
# Face Watch — descriptor matching engine
# api/main.py
# ============================================================
# FastAPI application entry point.
#
# Responsibilities:
#   - Create and configure the FastAPI app instance
#   - Lifespan handler: build the candidate store, detection
#     log, worker pool and detection service on startup;
#     shut the pool down on exit
#   - Register all routers under /api/v1
#   - CORS, request ID and metrics middleware
#   - Global exception handlers (descriptor shape, batch index, pool,
#     timeout, validation, HTTP, generic)
#
# Run with:
#   uvicorn api.main:app --host 0.0.0.0 --port 8000
# ============================================================

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.routers import detection, health
from api.schemas.responses import ErrorDetail, ErrorResponse
from config.settings import settings
from core.detection import DetectionService, InMemoryCandidateStore, InMemoryDetectionLog
from core.engine import WorkerPoolManager
from core.errors import BatchIndexError, MatchTimeoutError, PoolError, ShapeError, WorkerCrashedError
from utils.circuit_breaker import CircuitBreaker
from utils.logger import get_logger, setup_from_settings

# Configure logger from settings before any other logging
setup_from_settings()

logger = get_logger(__name__)


# ============================================================
# Lifespan — worker pool startup / teardown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    On startup:
      - Create the candidate store and detection log
      - Spawn the worker pool (unless POOL_ENABLED=false)
      - Build the detection service on top of them
      - Attach everything to app.state for use in route handlers

    On shutdown:
      - Stop the worker pool
    """
    logger.info("=" * 60)
    logger.info(f"{settings.app_name} — starting up")
    logger.info(f"env={settings.environment} v={settings.app_version}")
    logger.info("=" * 60)

    store = InMemoryCandidateStore()
    detection_log = InMemoryDetectionLog()
    app.state.candidate_store = store
    app.state.detection_log = detection_log

    # ── Worker pool ──────────────────────────────────────────────────
    pool = None
    if settings.pool.enabled:
        pool = WorkerPoolManager.from_settings(settings)
        try:
            await pool.initialize()
        except Exception as exc:
            logger.error(f"Failed to start worker pool: {exc} — matching will run in-process.")
            pool = None
    else:
        logger.info("Worker pool disabled (POOL_ENABLED=false); matching runs in-process.")
    app.state.worker_pool = pool

    # ── Detection service ────────────────────────────────────────────
    app.state.detection_service = DetectionService(
        candidates=store,
        pool=pool,
        detection_log=detection_log,
        threshold=settings.matcher.threshold,
        breaker=CircuitBreaker.from_settings(settings.pool) if pool is not None else None,
        max_results=settings.matcher.max_results,
    )
    logger.success(
        f"Detection service ready | threshold={settings.matcher.threshold} "
        f"| pool={'on' if pool is not None else 'off'}"
    )
    logger.info("=" * 60)

    # ── Yield (application runs here) ───────────────────────────────
    yield

    # ── Shutdown ─────────────────────────────────────────────────────
    logger.info("Shutting down...")
    if pool is not None:
        await pool.shutdown()
    app.state.detection_service = None
    app.state.worker_pool = None
    logger.info("Shutdown complete.")


# ============================================================
# App factory
# ============================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Separated into a factory function so tests can create isolated
    app instances and drive the lifespan through ``TestClient``.

    Returns:
        Configured ``FastAPI`` instance.
    """
    api_prefix = settings.api.api_prefix

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "# Face Watch Matching Service\n\n"
            "REST API for:\n"
            "- **Face matching** — 128-dim descriptor vs. the candidate set\n"
            "- **Batch matching** — many descriptors, one worker, index-aligned results\n"
            "- **Worker pool status** — isolated matching processes\n\n"
            "Descriptors are produced client-side; this service never sees images."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.is_development,
    )

    # ── Middleware (CORS + Metrics + Request ID) ─────────────────────
    from api.middleware.cors import configure_middleware  # noqa: PLC0415
    configure_middleware(app)

    # ── Routers ──────────────────────────────────────────────────────
    app.include_router(health.router,    prefix=api_prefix)
    app.include_router(detection.router, prefix=api_prefix)

    # ── Exception handlers ───────────────────────────────────────────
    _register_exception_handlers(app)

    logger.info(f"FastAPI app created | version={settings.app_version} prefix={api_prefix}")
    return app


# ============================================================
# Exception handlers
# ============================================================

def _error_response(request: Request, status_code: int, error: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            details=details or [],
            request_id=getattr(request.state, "request_id", None),
        ).model_dump(),
    )


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on *app*."""

    @app.exception_handler(ShapeError)
    async def shape_error_handler(request: Request, exc: ShapeError) -> JSONResponse:
        """Malformed descriptor → 400 with the matcher's message."""
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "invalid_descriptor", str(exc))

    @app.exception_handler(BatchIndexError)
    async def batch_index_handler(request: Request, exc: BatchIndexError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "invalid_batch", str(exc))

    @app.exception_handler(MatchTimeoutError)
    async def timeout_handler(request: Request, exc: MatchTimeoutError) -> JSONResponse:
        logger.warning(f"Match timed out on {request.url.path}: {exc}")
        return _error_response(request, status.HTTP_504_GATEWAY_TIMEOUT, "match_timeout", str(exc))

    @app.exception_handler(PoolError)
    async def pool_error_handler(request: Request, exc: PoolError) -> JSONResponse:
        logger.error(f"Worker pool failure on {request.url.path}: {exc}")
        error = "worker_crashed" if isinstance(exc, WorkerCrashedError) else "worker_pool_unavailable"
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, error, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Return a structured 422 for Pydantic / FastAPI validation errors."""
        details = []
        for error in exc.errors():
            loc   = " → ".join(str(l) for l in error.get("loc", []))
            msg   = error.get("msg", "Validation error")
            code  = error.get("type", "validation_error")
            details.append(ErrorDetail(field=loc or None, message=msg, code=code))

        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "One or more request fields failed validation.",
            details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        """Return a structured JSON body for all HTTP exceptions."""
        return _error_response(
            request, exc.status_code, _status_to_error_code(exc.status_code), str(exc.detail)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all handler — prevents stack traces leaking to clients."""
        logger.exception(f"Unhandled exception on {request.url}: {exc}")
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        )


def _status_to_error_code(status_code: int) -> str:
    """Map an HTTP status code to a short machine-readable error string."""
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        408: "request_timeout",
        413: "payload_too_large",
        422: "unprocessable_entity",
        500: "internal_server_error",
        503: "service_unavailable",
        504: "gateway_timeout",
    }
    return mapping.get(status_code, f"http_{status_code}")


# ============================================================
# App instance (module-level for Uvicorn)
# ============================================================

app = create_app()


@app.get("/", include_in_schema=False)
async def root() -> JSONResponse:
    """Point clients at the docs and health endpoints."""
    return JSONResponse(
        content={
            "message": settings.app_name,
            "docs":    "/docs",
            "redoc":   "/redoc",
            "health":  f"{settings.api.api_prefix}/health",
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.api.reload,
    )
