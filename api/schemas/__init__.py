# ============================================================
# api/schemas/__init__.py
# API Schema Package — re-exports all request/response models
# ============================================================

from api.schemas.requests import (
    BaseAPIRequest,
    BatchDescriptor,
    BatchDetectRequest,
    FaceDetectRequest,
    FindMatchesRequest,
)

from api.schemas.responses import (
    ComponentStatus,
    ComponentHealth,
    HealthResponse,
    MatchResultResponse,
    FaceDetectResponse,
    BatchItemResponse,
    BatchDetectResponse,
    FindMatchesResponse,
    WorkerStatusResponse,
    DetectionLogEntryResponse,
    DetectionLogResponse,
    ErrorDetail,
    ErrorResponse,
)

__all__ = [
    # ── Enums ──────────────────────────────────────────────
    "ComponentStatus",
    # ── Request models ─────────────────────────────────────
    "BaseAPIRequest",
    "FaceDetectRequest",
    "BatchDescriptor",
    "BatchDetectRequest",
    "FindMatchesRequest",
    # ── Health ─────────────────────────────────────────────
    "ComponentHealth",
    "HealthResponse",
    # ── Detection ──────────────────────────────────────────
    "MatchResultResponse",
    "FaceDetectResponse",
    "BatchItemResponse",
    "BatchDetectResponse",
    "FindMatchesResponse",
    "WorkerStatusResponse",
    "DetectionLogEntryResponse",
    "DetectionLogResponse",
    # ── Errors ─────────────────────────────────────────────
    "ErrorDetail",
    "ErrorResponse",
]
