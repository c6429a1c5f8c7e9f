# ============================================================
# Face Watch — descriptor matching engine
# api/schemas/requests.py
# ============================================================
# Pydantic v2 request models for the detection endpoints.
#
# Schemas:
#   FaceDetectRequest   — POST /api/v1/detect/face
#   BatchDetectRequest  — POST /api/v1/detect/batch
#   FindMatchesRequest  — POST /api/v1/detect/matches
#
# Descriptor elements are passed through untouched: pydantic
# would coerce booleans and numeric strings to floats. The
# matcher checks length, element types and finiteness, and the
# API maps its ShapeError to HTTP 400 with the same message.
# ============================================================

from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================
# Shared base
# ============================================================

class BaseAPIRequest(BaseModel):
    """Common config: strip strings, reject unknown fields, accept snake or camel case."""

    model_config = {"str_strip_whitespace": True, "extra": "forbid", "populate_by_name": True}


# ============================================================
# Single match
# ============================================================

class FaceDetectRequest(BaseAPIRequest):
    """
    POST /api/v1/detect/face

    Fields:
        descriptor: 128 numbers produced by the client-side face model.
        use_worker: Match on the worker pool instead of a thread
                    (``useWorker`` is accepted too).
        location:   Optional camera / place label stored with the
                    detection log entry.
    """

    descriptor: Optional[List[Any]] = Field(
        ...,
        description="128-dimensional face descriptor.",
    )
    use_worker: bool = Field(
        default=False,
        alias="useWorker",
        description="Run the match on the isolated worker pool.",
    )
    location: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Where the face was seen.",
    )


# ============================================================
# Batch match
# ============================================================

class BatchDescriptor(BaseAPIRequest):
    """One entry of a batch; ``index`` defaults to its position."""

    index: Optional[int] = Field(default=None, ge=0, description="Caller's correlation index.")
    descriptor: Optional[List[Any]] = Field(..., description="128-dimensional face descriptor.")


class BatchDetectRequest(BaseAPIRequest):
    """
    POST /api/v1/detect/batch

    Typically one entry per face found across the frames of a video.
    """

    descriptors: Annotated[List[BatchDescriptor], Field(min_length=1)] = Field(
        ...,
        description="Descriptors to match, processed in order.",
    )
    use_worker: bool = Field(
        default=True,
        alias="useWorker",
        description="Run the batch on the worker pool (falls back to direct matching).",
    )
    location: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def unique_indexes(self) -> "BatchDetectRequest":
        # Compared after a missing index has defaulted to its position
        indexes = self.effective_indexes()
        if len(indexes) != len(set(indexes)):
            raise ValueError("Batch indexes must be unique.")
        return self

    def effective_indexes(self) -> List[int]:
        return [d.index if d.index is not None else i for i, d in enumerate(self.descriptors)]


# ============================================================
# Top-N
# ============================================================

class FindMatchesRequest(BaseAPIRequest):
    """POST /api/v1/detect/matches — every candidate under the threshold, closest first."""

    descriptor: Optional[List[Any]] = Field(..., description="128-dimensional face descriptor.")
    max_results: Optional[int] = Field(
        default=None,
        ge=1,
        le=100,
        alias="maxResults",
        description="Return at most this many matches (server default if omitted).",
    )


__all__ = [
    "BaseAPIRequest",
    "FaceDetectRequest",
    "BatchDescriptor",
    "BatchDetectRequest",
    "FindMatchesRequest",
]
