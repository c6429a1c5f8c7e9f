# ============================================================
# Face Watch — descriptor matching engine
# api/routers/health.py
# ============================================================
# GET /api/v1/health  — liveness + readiness check endpoint.
# GET /api/v1/metrics — Prometheus exposition.
#
# Health reports the detection service, the candidate store
# and the worker pool. A missing pool only degrades the
# service: requests are still answered by direct matching.
#
# Used by:
#   - Docker HEALTHCHECK (curl -f http://localhost:8000/api/v1/health)
#   - Kubernetes readiness / liveness probes
# ============================================================

from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Request, Response

from api.metrics import CONTENT_TYPE_LATEST, render_latest
from api.schemas.responses import (
    ComponentHealth,
    ComponentStatus,
    HealthResponse,
)
from config.settings import settings
from utils.circuit_breaker import CircuitState
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

# Module-level start time for uptime calculation
_START_TIME: float = time.perf_counter()


# ============================================================
# Endpoints
# ============================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description=(
        "Returns the overall API health status and per-component "
        "readiness. status='ok' or status='degraded' means requests "
        "are being answered; status='down' means they are not."
    ),
)
async def health_check(request: Request) -> HealthResponse:
    """
    Liveness + readiness probe.

    - ``ok``       — service ready and the worker pool fully up.
    - ``degraded`` — service ready but the pool is disabled, partly
                     dead, or its circuit breaker is open.
    - ``down``     — the detection service is not initialised.
    """
    uptime = time.perf_counter() - _START_TIME
    state = request.app.state

    components: Dict[str, ComponentHealth] = {
        "detection_service": _check_service(state),
        "candidate_store": _check_store(state),
        "worker_pool": _check_pool(state),
    }

    if components["detection_service"].status == ComponentStatus.DOWN:
        overall = ComponentStatus.DOWN
    elif any(c.status != ComponentStatus.OK for c in components.values()):
        overall = ComponentStatus.DEGRADED
    else:
        overall = ComponentStatus.OK

    logger.debug(f"Health check: overall={overall.value} uptime={uptime:.1f}s")

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        uptime_seconds=uptime,
        components=components,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Prometheus scrape endpoint."""
    pool = getattr(request.app.state, "worker_pool", None)
    return Response(content=render_latest(pool), media_type=CONTENT_TYPE_LATEST)


# ============================================================
# Helpers
# ============================================================

def _check_service(state) -> ComponentHealth:
    if getattr(state, "detection_service", None) is None:
        return ComponentHealth(
            status=ComponentStatus.DOWN,
            loaded=False,
            detail="Detection service not initialised.",
        )
    return ComponentHealth(status=ComponentStatus.OK, loaded=True)


def _check_store(state) -> ComponentHealth:
    store = getattr(state, "candidate_store", None)
    if store is None:
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            loaded=False,
            detail="Candidate store not initialised.",
        )
    count = getattr(store, "count", None)
    detail = f"{count} candidates" if count is not None else None
    return ComponentHealth(status=ComponentStatus.OK, loaded=True, detail=detail)


def _check_pool(state) -> ComponentHealth:
    """
    Inspect ``state.worker_pool``.

    A pool that is absent (disabled by config or failed to start) is
    DEGRADED, never DOWN: matching falls back to the request loop's
    thread executor.
    """
    pool = getattr(state, "worker_pool", None)
    if pool is None or not pool.is_initialized:
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            loaded=False,
            detail="Worker pool not running; matching runs in-process.",
        )

    slots = pool.slots()
    alive = sum(1 for s in slots if s.alive)
    pool_status = pool.status()
    detail = (
        f"{pool_status.available_workers}/{pool_status.total_workers} workers available, "
        f"{alive} alive, {pool_status.queued_requests} queued"
    )

    service = getattr(state, "detection_service", None)
    breaker = getattr(service, "breaker", None)
    if breaker is not None and breaker.state != CircuitState.CLOSED:
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            loaded=True,
            detail=f"{detail}; circuit {breaker.state.value}",
        )
    if alive < len(slots):
        return ComponentHealth(status=ComponentStatus.DEGRADED, loaded=True, detail=detail)
    return ComponentHealth(status=ComponentStatus.OK, loaded=True, detail=detail)
