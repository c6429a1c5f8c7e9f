# ============================================================
# Face Watch — descriptor matching engine
# core/matcher/types.py
# ============================================================
# Data types exchanged between the matcher, the worker pool
# and the detection service.
#
# Key data types:
#   Candidate        — known person eligible for matching
#   MatchResult      — best candidate + distance + confidence
#   MatchCheck       — outcome of one pairwise comparison
#   BatchItem        — one descriptor of a batch request
#   BatchItemOutcome — per-item result of a batch request
#
# All types pickle cleanly: they cross process boundaries as
# copies inside worker messages.
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np

from utils.logger import get_logger

logger = get_logger(__name__)

DESCRIPTOR_DIM: int = 128
DEFAULT_THRESHOLD: float = 0.6

# Rounding applied to numbers handed to API consumers
DISTANCE_DECIMALS: int = 4
CONFIDENCE_DECIMALS: int = 2

FaceDescriptor = Union[Sequence[float], np.ndarray]


# ============================================================
# Candidate
# ============================================================

@dataclass
class Candidate:
    """
    A known person eligible for matching.

    Attributes:
        id:          Person identifier from the records store.
        name:        Display name.
        crime_type:  Crime category label.
        risk_level:  'LOW' | 'MEDIUM' | 'HIGH' | 'CRITICAL'.
        image_url:   Reference to the person's registered photo.
        status:      Record status (e.g. 'wanted', 'active').
        descriptor:  128-dim face descriptor, or None when the person
                     has no registered face.  Candidates without a
                     descriptor are skipped by every search.
        metadata:    Extra display fields (email, cnic, violation_count,
                     description, ...) passed through untouched.
    """

    id: Any
    name: str
    crime_type: Optional[str] = None
    risk_level: Optional[str] = None
    image_url: Optional[str] = None
    status: Optional[str] = None
    descriptor: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    metadata: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.descriptor is None or isinstance(self.descriptor, np.ndarray):
            return
        try:
            self.descriptor = np.asarray(self.descriptor, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            # Unusable stored descriptor: the candidate is excluded from matching
            logger.warning(f"Candidate {self.id!r} has an unreadable descriptor: {exc}")
            self.descriptor = None

    @property
    def has_descriptor(self) -> bool:
        return self.descriptor is not None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Candidate":
        """
        Build a Candidate from a repository row.

        Accepts either ``descriptor`` or ``face_descriptor`` as the
        descriptor key. Keys that are not Candidate fields end up in
        ``metadata``.
        """
        known = {"id", "name", "crime_type", "risk_level", "image_url", "status"}
        descriptor = record.get("descriptor", record.get("face_descriptor"))
        metadata = {
            k: v for k, v in record.items()
            if k not in known and k not in ("descriptor", "face_descriptor")
        }
        return cls(
            id=record["id"],
            name=record.get("name", ""),
            crime_type=record.get("crime_type"),
            risk_level=record.get("risk_level"),
            image_url=record.get("image_url"),
            status=record.get("status"),
            descriptor=descriptor,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Display fields only; the descriptor is never serialised out."""
        data = {
            "id": self.id,
            "name": self.name,
            "crime_type": self.crime_type,
            "risk_level": self.risk_level,
            "image_url": self.image_url,
            "status": self.status,
        }
        data.update(self.metadata)
        return data


# ============================================================
# Results
# ============================================================

@dataclass(frozen=True)
class MatchCheck:
    """Outcome of comparing one descriptor against another."""

    is_match: bool
    distance: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_match": self.is_match,
            "distance": round(self.distance, DISTANCE_DECIMALS),
            "confidence": round(self.confidence, CONFIDENCE_DECIMALS),
        }


@dataclass(frozen=True)
class MatchResult:
    """
    The closest qualifying candidate for one query descriptor.

    ``distance`` and ``confidence`` keep full precision; rounding to
    4 and 2 decimals happens only in :meth:`to_dict`.

    Attributes:
        candidate:  The matched Candidate.
        distance:   Euclidean distance to the query (< threshold).
        confidence: Closeness score in [0, 100].
    """

    candidate: Candidate
    distance: float
    confidence: float

    @property
    def candidate_id(self) -> Any:
        return self.candidate.id

    def to_dict(self) -> Dict[str, Any]:
        data = self.candidate.to_dict()
        data["distance"] = round(self.distance, DISTANCE_DECIMALS)
        data["confidence"] = round(self.confidence, CONFIDENCE_DECIMALS)
        return data

    def __repr__(self) -> str:
        return (
            f"MatchResult(id={self.candidate.id!r}, "
            f"name={self.candidate.name!r}, "
            f"distance={self.distance:.4f}, "
            f"confidence={self.confidence:.2f})"
        )


@dataclass(frozen=True)
class BatchItem:
    """One descriptor of a batch request, correlated by ``index``."""

    index: int
    descriptor: FaceDescriptor


@dataclass(frozen=True)
class BatchItemOutcome:
    """
    Per-item result of a batch request.

    Attributes:
        index:   Index of the originating BatchItem.
        success: False when the item timed out or failed.
        result:  Best match, or None for "no match" (only when success).
        error:   Error message (only when not success).
    """

    index: int
    success: bool
    result: Optional[MatchResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"index": self.index, "success": self.success}
        if self.success:
            data["result"] = self.result.to_dict() if self.result else None
        else:
            data["error"] = self.error
        return data
