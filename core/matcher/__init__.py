# ============================================================
# Face Watch — Descriptor Matcher Module
# ============================================================

from core.matcher.descriptor_matcher import (
    BestMatchTracker,
    check_match,
    confidence_for,
    distance,
    find_all_matches,
    find_best_match,
    validate,
    validate_batch,
)
from core.matcher.types import (
    DEFAULT_THRESHOLD,
    DESCRIPTOR_DIM,
    BatchItem,
    BatchItemOutcome,
    Candidate,
    MatchCheck,
    MatchResult,
)

__all__ = [
    "DEFAULT_THRESHOLD",
    "DESCRIPTOR_DIM",
    "BatchItem",
    "BatchItemOutcome",
    "BestMatchTracker",
    "Candidate",
    "MatchCheck",
    "MatchResult",
    "check_match",
    "confidence_for",
    "distance",
    "find_all_matches",
    "find_best_match",
    "validate",
    "validate_batch",
]
