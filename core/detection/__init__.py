# ============================================================
# Face Watch — Detection Service Module
# ============================================================

from core.detection.repository import (
    CandidateSource,
    DetectionEntry,
    DetectionLog,
    InMemoryCandidateStore,
    InMemoryDetectionLog,
)
from core.detection.service import DetectionOutcome, DetectionService

__all__ = [
    "CandidateSource",
    "DetectionEntry",
    "DetectionLog",
    "DetectionOutcome",
    "DetectionService",
    "InMemoryCandidateStore",
    "InMemoryDetectionLog",
]
