# ============================================================
# Face Watch — descriptor matching engine
# core/matcher/descriptor_matcher.py
# ============================================================
# Pure, stateless descriptor comparison.
#
#   validate()          — shape / finiteness check (ShapeError)
#   validate_batch()    — batch items with unique correlation indexes
#   distance()          — Euclidean distance, inf when incomparable
#   confidence_for()    — distance → 0..100 closeness score
#   check_match()       — pairwise decision
#   find_best_match()   — single best candidate under threshold
#   find_all_matches()  — every qualifying candidate, closest first
#
# Every function here is safe to call concurrently from any
# thread or process: nothing is shared or mutated.
# ============================================================

from __future__ import annotations

import math
import numbers
from collections.abc import Sequence
from typing import Any, Iterable, List, Mapping, Optional, Union

import numpy as np

from core.errors import BatchIndexError, ShapeError
from core.matcher.types import (
    DEFAULT_THRESHOLD,
    DESCRIPTOR_DIM,
    BatchItem,
    Candidate,
    FaceDescriptor,
    MatchCheck,
    MatchResult,
)


def validate(descriptor: FaceDescriptor) -> np.ndarray:
    """
    Check that *descriptor* is exactly 128 finite real numbers.

    Args:
        descriptor: List, tuple or 1-D ndarray.

    Returns:
        The descriptor as a float64 array of shape (128,).

    Raises:
        ShapeError: With a message naming the problem, e.g.
                    ``"Descriptor must have 128 dimensions, got 127"``.
    """
    if descriptor is None:
        raise ShapeError("Descriptor is null")

    if isinstance(descriptor, np.ndarray):
        if descriptor.ndim != 1:
            raise ShapeError(
                f"Descriptor must be one-dimensional, got shape {descriptor.shape}"
            )
        if len(descriptor) != DESCRIPTOR_DIM:
            raise ShapeError(
                f"Descriptor must have {DESCRIPTOR_DIM} dimensions, got {len(descriptor)}"
            )
        if descriptor.dtype == np.bool_ or not np.issubdtype(descriptor.dtype, np.number):
            raise ShapeError(f"Descriptor must hold real numbers, got dtype {descriptor.dtype}")
        if np.iscomplexobj(descriptor):
            raise ShapeError("Descriptor must hold real numbers, got complex values")
        bad = np.flatnonzero(~np.isfinite(descriptor))
        if bad.size:
            raise ShapeError(f"Invalid value at index {int(bad[0])}")
        return descriptor.astype(np.float64, copy=False)

    if isinstance(descriptor, (str, bytes)) or not isinstance(descriptor, Sequence):
        raise ShapeError("Descriptor must be a sequence of numbers")

    if len(descriptor) != DESCRIPTOR_DIM:
        raise ShapeError(
            f"Descriptor must have {DESCRIPTOR_DIM} dimensions, got {len(descriptor)}"
        )

    for i, value in enumerate(descriptor):
        # bool is an Integral subclass; a descriptor of flags is still wrong
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ShapeError(f"Invalid value at index {i}")
        if not math.isfinite(value):
            raise ShapeError(f"Invalid value at index {i}")

    return np.asarray(descriptor, dtype=np.float64)


def validate_batch(items: Sequence[Union[BatchItem, Mapping[str, Any]]]) -> List[BatchItem]:
    """
    Validate every item of a batch before any of it is matched.

    Items may be BatchItems or mappings with ``descriptor`` and an
    optional ``index``; a missing index defaults to the item's position.
    Indexes are checked for uniqueness after that default is applied.

    Raises:
        ShapeError:      ``"Invalid descriptor at index {i}: ..."``.
        BatchIndexError: Two items share a correlation index.
    """
    batch: List[BatchItem] = []
    seen = set()
    for position, item in enumerate(items):
        if not isinstance(item, BatchItem):
            index = item.get("index")
            item = BatchItem(index=position if index is None else int(index), descriptor=item.get("descriptor"))
        if item.index in seen:
            raise BatchIndexError(f"Duplicate batch index {item.index} at position {position}")
        seen.add(item.index)
        try:
            batch.append(BatchItem(index=item.index, descriptor=validate(item.descriptor)))
        except ShapeError as exc:
            raise ShapeError(f"Invalid descriptor at index {item.index}: {exc}") from exc
    return batch


def distance(a: Optional[FaceDescriptor], b: Optional[FaceDescriptor]) -> float:
    """
    Euclidean distance between two descriptors.

    Returns ``math.inf`` instead of raising when either side is missing,
    unreadable, or the lengths differ. ``inf`` never satisfies a
    threshold, so such pairs simply never match.
    """
    if a is None or b is None:
        return math.inf
    try:
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return math.inf
    if va.ndim != 1 or va.shape != vb.shape:
        return math.inf
    return float(np.linalg.norm(va - vb))


def confidence_for(dist: float, threshold: float = DEFAULT_THRESHOLD) -> float:
    """
    Map a distance to a confidence percentage.

    0 distance → 100, distance ≥ threshold → 0, linear in between.
    """
    _check_threshold(threshold)
    if not dist < threshold:
        return 0.0
    return max(0.0, min(100.0, (1.0 - dist / threshold) * 100.0))


def check_match(
    a: Optional[FaceDescriptor],
    b: Optional[FaceDescriptor],
    threshold: float = DEFAULT_THRESHOLD,
) -> MatchCheck:
    """Compare two descriptors: ``is_match`` iff distance < threshold."""
    _check_threshold(threshold)
    d = distance(a, b)
    is_match = d < threshold
    return MatchCheck(
        is_match=is_match,
        distance=d,
        confidence=confidence_for(d, threshold) if is_match else 0.0,
    )


class BestMatchTracker:
    """
    Incremental best-match search.

    Feed candidates one at a time with :meth:`offer`; the tracker keeps
    the closest one strictly below the threshold. The comparison is a
    strict ``<``, so among equal distances the first candidate offered
    is kept.

    Shared by :func:`find_best_match` and the worker's cooperative scan.
    """

    def __init__(self, query: np.ndarray, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.query = query
        self.threshold = _check_threshold(threshold)
        self.compared = 0
        self._best: Optional[Candidate] = None
        self._best_distance = math.inf

    def offer(self, candidate: Candidate) -> None:
        if not candidate.has_descriptor:
            return
        self.compared += 1
        d = distance(self.query, candidate.descriptor)
        if d < self._best_distance and d < self.threshold:
            self._best = candidate
            self._best_distance = d

    def result(self) -> Optional[MatchResult]:
        if self._best is None:
            return None
        return MatchResult(
            candidate=self._best,
            distance=self._best_distance,
            confidence=confidence_for(self._best_distance, self.threshold),
        )


def find_best_match(
    descriptor: FaceDescriptor,
    candidates: Iterable[Candidate],
    threshold: float = DEFAULT_THRESHOLD,
) -> Optional[MatchResult]:
    """
    Find the closest candidate strictly below *threshold*.

    Args:
        descriptor: Query descriptor (validated here).
        candidates: Candidate snapshot; entries without a descriptor
                    are skipped.
        threshold:  Maximum distance (exclusive) counted as a match.

    Returns:
        MatchResult, or None when the set is empty or nothing qualifies.

    Raises:
        ShapeError: If *descriptor* is malformed.
    """
    tracker = BestMatchTracker(validate(descriptor), threshold)
    for candidate in candidates:
        tracker.offer(candidate)
    return tracker.result()


def find_all_matches(
    descriptor: FaceDescriptor,
    candidates: Iterable[Candidate],
    threshold: float = DEFAULT_THRESHOLD,
    max_results: int = 5,
) -> List[MatchResult]:
    """
    Every candidate strictly below *threshold*, closest first.

    Ordering is ascending distance, which is descending confidence;
    ties keep candidate order. The list is truncated to *max_results*.

    Raises:
        ShapeError: If *descriptor* is malformed.
    """
    query = validate(descriptor)
    _check_threshold(threshold)
    if max_results <= 0:
        return []

    scored = []
    for candidate in candidates:
        if not candidate.has_descriptor:
            continue
        d = distance(query, candidate.descriptor)
        if d < threshold:
            scored.append((d, candidate))

    scored.sort(key=lambda pair: pair[0])
    return [
        MatchResult(candidate=c, distance=d, confidence=confidence_for(d, threshold))
        for d, c in scored[:max_results]
    ]


def _check_threshold(threshold: float) -> float:
    if not threshold > 0 or not math.isfinite(threshold):
        raise ValueError(f"Threshold must be a positive finite number, got {threshold!r}")
    return float(threshold)
