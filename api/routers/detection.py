# ============================================================
# Face Watch — descriptor matching engine
# api/routers/detection.py
# ============================================================
# Detection endpoints.
#
#   POST /detect/face           — best match for one descriptor
#   POST /detect/batch          — best match for many descriptors
#   POST /detect/matches        — every match under the threshold
#   GET  /detect/worker-status  — pool occupancy (camelCase keys)
#   GET  /detect/logs           — recent logged detections
#
# ShapeError / PoolError / MatchTimeoutError are not caught
# here; the global handlers in api/main.py map them to
# 400 / 503 / 504 error envelopes.
# ============================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from api.metrics import BATCH_ITEM_COUNT, FALLBACK_COUNT, MATCH_COUNT
from api.schemas.requests import BatchDetectRequest, FaceDetectRequest, FindMatchesRequest
from api.schemas.responses import (
    BatchDetectResponse,
    DetectionLogResponse,
    ErrorResponse,
    FaceDetectResponse,
    FindMatchesResponse,
    WorkerStatusResponse,
)
from config.settings import settings
from core.detection.service import NO_CANDIDATES_MESSAGE, DetectionService
from core.matcher.types import BatchItem
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/detect", tags=["Detection"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed descriptor."},
    422: {"description": "Validation error."},
    503: {"model": ErrorResponse, "description": "Detection service or worker pool unavailable."},
    504: {"model": ErrorResponse, "description": "Match timed out."},
}


def get_detection_service(request: Request) -> DetectionService:
    """Dependency: the service built by the lifespan, or HTTP 503."""
    service = getattr(request.app.state, "detection_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Detection service is not initialised.",
        )
    return service


# ============================================================
# Endpoints
# ============================================================

@router.post(
    "/face",
    response_model=FaceDetectResponse,
    summary="Match one face descriptor",
    description=(
        "Compare a 128-dimensional face descriptor against every candidate "
        "and return the closest one under the distance threshold. "
        "With `useWorker=true` the match runs on the isolated worker pool; "
        "if the pool fails the request is answered by direct matching."
    ),
    responses=_ERROR_RESPONSES,
)
async def detect_face(
    body: FaceDetectRequest,
    response: Response,
    service: DetectionService = Depends(get_detection_service),
) -> FaceDetectResponse:
    outcome = await service.match_face(
        body.descriptor,
        use_worker=body.use_worker,
        location=body.location,
    )

    if outcome.via_worker:
        mode = "worker"
    elif outcome.fell_back:
        mode = "fallback"
        FALLBACK_COUNT.inc()
    else:
        mode = "direct"
    if outcome.match:
        result_label = "match"
    elif outcome.message == NO_CANDIDATES_MESSAGE:
        result_label = "no_candidates"
    else:
        result_label = "no_match"
    MATCH_COUNT.labels(mode=mode, outcome=result_label).inc()
    response.headers["X-Match-Mode"] = mode

    return FaceDetectResponse(
        match=outcome.match,
        result=outcome.result.to_dict() if outcome.result is not None else None,
        message=outcome.message,
        via_worker=outcome.via_worker,
    )


@router.post(
    "/batch",
    response_model=BatchDetectResponse,
    summary="Match a batch of face descriptors",
    description=(
        "Match several descriptors (e.g. faces collected from video frames). "
        "Items are processed in order by one worker; a failure in one item "
        "does not affect the others. Results are index-aligned with the request."
    ),
    responses={
        **_ERROR_RESPONSES,
        413: {"model": ErrorResponse, "description": "Too many descriptors."},
    },
)
async def detect_batch(
    body: BatchDetectRequest,
    service: DetectionService = Depends(get_detection_service),
) -> BatchDetectResponse:
    max_items = settings.api.max_batch_size
    if len(body.descriptors) > max_items:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch of {len(body.descriptors)} descriptors exceeds the limit of {max_items}.",
        )

    items = [
        BatchItem(index=index, descriptor=d.descriptor)
        for index, d in zip(body.effective_indexes(), body.descriptors)
    ]
    outcomes = await service.batch_match(items, use_worker=body.use_worker, location=body.location)

    results = [o.to_dict() for o in outcomes]
    matches = [o.result.to_dict() for o in outcomes if o.success and o.result is not None]
    for o in outcomes:
        if not o.success:
            BATCH_ITEM_COUNT.labels(outcome="failed").inc()
        elif o.result is not None:
            BATCH_ITEM_COUNT.labels(outcome="match").inc()
        else:
            BATCH_ITEM_COUNT.labels(outcome="no_match").inc()

    logger.info(f"Batch of {len(items)} descriptors: {len(matches)} matches")
    return BatchDetectResponse(
        results=results,
        matches=matches,
        total=len(items),
        match_count=len(matches),
    )


@router.post(
    "/matches",
    response_model=FindMatchesResponse,
    summary="List every candidate under the threshold",
    description="All qualifying candidates, closest first, truncated to `maxResults`.",
    responses=_ERROR_RESPONSES,
)
async def find_matches(
    body: FindMatchesRequest,
    service: DetectionService = Depends(get_detection_service),
) -> FindMatchesResponse:
    matches = await service.find_matches(body.descriptor, max_results=body.max_results)
    return FindMatchesResponse(
        matches=[m.to_dict() for m in matches],
        count=len(matches),
    )


@router.get(
    "/worker-status",
    response_model=WorkerStatusResponse,
    summary="Worker pool status",
    description="Total / available workers and queued / in-flight requests.",
)
async def worker_status(
    service: DetectionService = Depends(get_detection_service),
) -> WorkerStatusResponse:
    return WorkerStatusResponse.model_validate(service.get_worker_status().to_dict())


@router.get(
    "/logs",
    response_model=DetectionLogResponse,
    summary="Recent detections",
)
async def recent_detections(
    limit: int = Query(default=20, ge=1, le=500),
    service: DetectionService = Depends(get_detection_service),
) -> DetectionLogResponse:
    if service.detection_log is None:
        return DetectionLogResponse(entries=[], count=0)
    entries = await service.detection_log.recent(limit)
    return DetectionLogResponse(
        entries=[e.to_dict() for e in entries],
        count=len(entries),
    )
