# Pydantic v2 response models for all FastAPI endpoints.
#
# These models define the exact JSON structure returned by:
#   GET  /api/v1/health
#   POST /api/v1/detect/face
#   POST /api/v1/detect/batch
#   POST /api/v1/detect/matches
#   GET  /api/v1/detect/worker-status
#   GET  /api/v1/detect/logs

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ComponentStatus(str, Enum):
    """Status of an individual system component."""

    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class ComponentHealth(BaseModel):
    """Health status for a single service component."""

    status: ComponentStatus = Field(..., description="Component health status.")
    loaded: bool = Field(..., description="Whether the component is initialised.")
    detail: Optional[str] = Field(None, description="Extra info or error message.")


class HealthResponse(BaseModel):
    """
    Response for GET /api/v1/health.

    Returns overall API status plus per-component health checks
    for the detection service, the candidate store and the
    worker pool.
    """

    status: ComponentStatus = Field(
        ..., description="Overall API health: 'ok' | 'degraded' | 'down'."
    )
    version: str = Field(..., description="Application version string.")
    environment: str = Field(..., description="Deployment environment (development / production).")
    uptime_seconds: float = Field(..., description="Seconds since the API process started.")
    components: Dict[str, ComponentHealth] = Field(
        default_factory=dict,
        description="Per-component health map keyed by component name.",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok",
                "version": "1.0.0",
                "environment": "development",
                "uptime_seconds": 42.3,
                "components": {
                    "detection_service": {"status": "ok", "loaded": True, "detail": None},
                    "candidate_store": {"status": "ok", "loaded": True, "detail": "12 candidates"},
                    "worker_pool": {"status": "ok", "loaded": True, "detail": "2/2 workers available"},
                },
            }
        }
    }


class MatchResultResponse(BaseModel):
    """
    A matched candidate.

    Extra display fields stored with the candidate (email, cnic,
    violation_count, ...) are passed through as-is.
    """

    id: Any = Field(..., description="Candidate identifier.")
    name: str = Field(..., description="Display name.")
    crime_type: Optional[str] = Field(None, description="Crime category.")
    risk_level: Optional[str] = Field(None, description="LOW | MEDIUM | HIGH | CRITICAL.")
    image_url: Optional[str] = Field(None, description="Registered photo reference.")
    status: Optional[str] = Field(None, description="Record status.")
    confidence: float = Field(..., ge=0.0, le=100.0, description="Closeness score, 0–100, 2 dp.")
    distance: float = Field(..., ge=0.0, description="Euclidean distance to the query, 4 dp.")

    model_config = {"extra": "allow"}


class FaceDetectResponse(BaseModel):
    """Response for POST /api/v1/detect/face."""

    match: bool = Field(..., description="True when a candidate was under the threshold.")
    result: Optional[MatchResultResponse] = Field(None, description="Best match, when found.")
    message: str = Field(..., description="Human-readable summary.")
    via_worker: bool = Field(False, description="The match ran on the worker pool.")


class BatchItemResponse(BaseModel):
    """Per-item outcome of a batch request."""

    index: int = Field(..., description="Index of the originating item.")
    success: bool = Field(..., description="False when the item timed out or failed.")
    result: Optional[MatchResultResponse] = Field(None, description="Best match or null.")
    error: Optional[str] = Field(None, description="Failure reason when not successful.")


class BatchDetectResponse(BaseModel):
    """Response for POST /api/v1/detect/batch."""

    results: List[BatchItemResponse] = Field(..., description="Index-aligned outcomes.")
    matches: List[MatchResultResponse] = Field(..., description="Successful matches only.")
    total: int = Field(..., description="Number of descriptors submitted.")
    match_count: int = Field(..., alias="matchCount", description="Number of matches.")

    model_config = {"populate_by_name": True}


class FindMatchesResponse(BaseModel):
    """Response for POST /api/v1/detect/matches."""

    matches: List[MatchResultResponse] = Field(..., description="Closest first.")
    count: int = Field(..., description="Number of matches returned.")


class WorkerStatusResponse(BaseModel):
    """Response for GET /api/v1/detect/worker-status (camelCase keys)."""

    total_workers: int = Field(..., alias="totalWorkers")
    available_workers: int = Field(..., alias="availableWorkers")
    queued_requests: int = Field(..., alias="queuedRequests")
    pending_requests: int = Field(..., alias="pendingRequests")

    model_config = {"populate_by_name": True}


class DetectionLogEntryResponse(BaseModel):
    """A logged detection."""

    id: int
    person_id: Any
    confidence: float = Field(..., ge=0.0, le=1.0, description="Stored as a fraction.")
    location: Optional[str] = None
    detected_at: float = Field(..., description="Unix timestamp.")


class DetectionLogResponse(BaseModel):
    """Response for GET /api/v1/detect/logs."""

    entries: List[DetectionLogEntryResponse] = Field(..., description="Newest first.")
    count: int


class ErrorDetail(BaseModel):
    """A single structured error detail."""

    field: Optional[str] = Field(None, description="Field name the error relates to (if any).")
    message: str = Field(..., description="Human-readable error description.")
    code: Optional[str] = Field(None, description="Machine-readable error code.")


class ErrorResponse(BaseModel):
    """
    Standardised error envelope returned for all 4xx / 5xx responses.

    All API errors use this shape so clients can handle them uniformly.
    """

    error: str = Field(..., description="Short error category (e.g. 'invalid_descriptor').")
    message: str = Field(..., description="Human-readable description of the error.")
    details: List[ErrorDetail] = Field(
        default_factory=list,
        description="Optional list of per-field or per-item error details.",
    )
    request_id: Optional[str] = Field(
        None, description="Unique request ID for tracing (from X-Request-ID header)."
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "invalid_descriptor",
                "message": "Descriptor must have 128 dimensions, got 127",
                "details": [],
                "request_id": "req_abc123",
            }
        }
    }


__all__ = [
    # Health
    "ComponentStatus",
    "ComponentHealth",
    "HealthResponse",
    # Detection
    "MatchResultResponse",
    "FaceDetectResponse",
    "BatchItemResponse",
    "BatchDetectResponse",
    "FindMatchesResponse",
    "WorkerStatusResponse",
    "DetectionLogEntryResponse",
    "DetectionLogResponse",
    # Errors
    "ErrorDetail",
    "ErrorResponse",
]
