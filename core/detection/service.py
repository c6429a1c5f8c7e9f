# ============================================================
# Face Watch — descriptor matching engine
# core/detection/service.py
# ============================================================
# Detection service: the request-facing front of the matching
# engine.
#
# Per request:
#   1. Validate the query descriptor(s)        (ShapeError)
#   2. Load a fresh candidate snapshot
#   3. Match on the worker pool, or directly in a thread
#      executor; any pool failure falls back to direct
#      matching, and a circuit breaker skips the pool while
#      it keeps failing
#   4. Record confirmed matches in the detection log
# ============================================================

from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from core.detection.repository import CandidateSource, DetectionLog
from core.engine.pool import PoolStatus, WorkerPoolManager
from core.errors import MatchTimeoutError, PoolError, ShapeError
from core.matcher.descriptor_matcher import find_all_matches, find_best_match, validate, validate_batch
from core.matcher.types import (
    DEFAULT_THRESHOLD,
    BatchItem,
    BatchItemOutcome,
    Candidate,
    FaceDescriptor,
    MatchResult,
)
from utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from utils.logger import get_logger

logger = get_logger(__name__)

NO_CANDIDATES_MESSAGE = "No candidates in database"
NO_MATCH_MESSAGE = "No match found"
MATCH_FOUND_MESSAGE = "Match found"

# Failures that send a request down the direct-matching path
_POOL_FAILURES = (PoolError, MatchTimeoutError, CircuitOpenError)


@dataclass(frozen=True)
class DetectionOutcome:
    """
    Result of :meth:`DetectionService.match_face`.

    Attributes:
        match:      True when a candidate was under the threshold.
        result:     The best match (only when ``match``).
        message:    Human-readable summary.
        via_worker: The answer came from the worker pool.
        fell_back:  The pool was requested but direct matching answered.
    """

    match: bool
    result: Optional[MatchResult] = None
    message: str = NO_MATCH_MESSAGE
    via_worker: bool = False
    fell_back: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"match": self.match, "message": self.message}
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


class DetectionService:
    """
    Match face descriptors against the candidate set and log hits.

    Args:
        candidates:    Source of candidate snapshots.
        pool:          Initialised WorkerPoolManager, or None to always
                       match directly.
        detection_log: Where confirmed matches are recorded (optional).
        threshold:     Distance threshold for every search.
        breaker:       Circuit breaker guarding the pool; one is created
                       when a pool is given and none is supplied.
        max_results:   Default top-N for :meth:`find_matches`.
        executor:      Executor for direct matching (default: the loop's).
    """

    def __init__(
        self,
        candidates: CandidateSource,
        pool: Optional[WorkerPoolManager] = None,
        detection_log: Optional[DetectionLog] = None,
        threshold: float = DEFAULT_THRESHOLD,
        breaker: Optional[CircuitBreaker] = None,
        max_results: int = 5,
        executor: Optional[Executor] = None,
    ) -> None:
        if not threshold > 0:
            raise ValueError(f"Threshold must be positive, got {threshold!r}")
        self.candidates = candidates
        self.pool = pool
        self.detection_log = detection_log
        self.threshold = float(threshold)
        self.max_results = max_results
        self.breaker = breaker
        if self.breaker is None and pool is not None:
            self.breaker = CircuitBreaker("worker-pool")
        self._executor = executor

    # ------------------------------------------------------------------
    # Single match
    # ------------------------------------------------------------------

    async def match_face(
        self,
        descriptor: FaceDescriptor,
        use_worker: bool = False,
        location: Optional[str] = None,
    ) -> DetectionOutcome:
        """
        Find the best candidate for one descriptor.

        Args:
            descriptor: 128-dim query.
            use_worker: Match on the worker pool instead of a thread.
            location:   Stored with the detection log entry.

        Raises:
            ShapeError: Malformed descriptor.
        """
        query = validate(descriptor)
        candidates = await self.candidates.load_candidates()
        if not candidates:
            return DetectionOutcome(match=False, message=NO_CANDIDATES_MESSAGE)

        via_worker = False
        fell_back = False
        if use_worker and self.pool is not None:
            try:
                result = await self._pool_match(query, candidates)
                via_worker = True
            except _POOL_FAILURES as exc:
                logger.warning(f"Worker matching failed, falling back to direct matching: {exc}")
                fell_back = True
                result = await self._direct_match(query, candidates)
        else:
            result = await self._direct_match(query, candidates)

        if result is None:
            return DetectionOutcome(
                match=False, message=NO_MATCH_MESSAGE, via_worker=via_worker, fell_back=fell_back
            )

        logger.info(
            f"Match: {result.candidate.name!r} (id={result.candidate_id!r}) "
            f"distance={result.distance:.4f} confidence={result.confidence:.2f}%"
        )
        await self._log_detection(result, location)
        return DetectionOutcome(
            match=True,
            result=result,
            message=MATCH_FOUND_MESSAGE,
            via_worker=via_worker,
            fell_back=fell_back,
        )

    # ------------------------------------------------------------------
    # Batch match
    # ------------------------------------------------------------------

    async def batch_match(
        self,
        items: Sequence[Union[BatchItem, Mapping[str, Any]]],
        use_worker: bool = True,
        location: Optional[str] = None,
    ) -> List[BatchItemOutcome]:
        """
        Match several descriptors; outcomes are index-aligned with *items*.

        Every descriptor is validated before any matching starts.

        Raises:
            ShapeError: ``"Invalid descriptor at index {i}: ..."``.
            BatchIndexError: Two items share an index.
        """
        batch = validate_batch(items)

        candidates = await self.candidates.load_candidates()
        if not candidates:
            return [BatchItemOutcome(index=item.index, success=True) for item in batch]

        outcomes: Optional[List[BatchItemOutcome]] = None
        if use_worker and self.pool is not None:
            try:
                outcomes = await self._pool_batch(batch, candidates)
            except _POOL_FAILURES as exc:
                logger.warning(f"Worker batch failed, matching {len(batch)} items directly: {exc}")

        if outcomes is None:
            loop = asyncio.get_running_loop()
            outcomes = await loop.run_in_executor(
                self._executor, partial(self._match_batch_direct, batch, candidates, self.threshold)
            )

        for outcome in outcomes:
            if outcome.success and outcome.result is not None:
                await self._log_detection(outcome.result, location)
        return outcomes

    # ------------------------------------------------------------------
    # Top-N and status
    # ------------------------------------------------------------------

    async def find_matches(
        self,
        descriptor: FaceDescriptor,
        max_results: Optional[int] = None,
    ) -> List[MatchResult]:
        """Every candidate under the threshold, closest first, truncated."""
        query = validate(descriptor)
        candidates = await self.candidates.load_candidates()
        if not candidates:
            return []
        limit = self.max_results if max_results is None else max_results
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, partial(find_all_matches, query, candidates, self.threshold, limit)
        )

    def get_worker_status(self) -> PoolStatus:
        if self.pool is None:
            return PoolStatus(total_workers=0, available_workers=0, queued_requests=0, pending_requests=0)
        return self.pool.status()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _pool_match(self, query, candidates: List[Candidate]) -> Optional[MatchResult]:
        self.breaker.check()
        try:
            result = await self.pool.submit(query, candidates, self.threshold)
        except (PoolError, MatchTimeoutError):
            self.breaker.record_failure()
            raise
        except BaseException:
            # Cancellation or an unexpected error says nothing about pool health
            self.breaker.release_trial()
            raise
        self.breaker.record_success()
        return result

    async def _pool_batch(self, batch: List[BatchItem], candidates: List[Candidate]) -> List[BatchItemOutcome]:
        self.breaker.check()
        try:
            outcomes = await self.pool.submit_batch(batch, candidates, self.threshold)
        except PoolError:
            self.breaker.record_failure()
            raise
        except BaseException:
            self.breaker.release_trial()
            raise
        self.breaker.record_success()
        return outcomes

    async def _direct_match(self, query, candidates: List[Candidate]) -> Optional[MatchResult]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, partial(find_best_match, query, candidates, self.threshold)
        )

    @staticmethod
    def _match_batch_direct(
        batch: List[BatchItem],
        candidates: List[Candidate],
        threshold: float,
    ) -> List[BatchItemOutcome]:
        outcomes = []
        for item in batch:
            try:
                result = find_best_match(item.descriptor, candidates, threshold)
            except ShapeError as exc:
                outcomes.append(BatchItemOutcome(index=item.index, success=False, error=str(exc)))
                continue
            outcomes.append(BatchItemOutcome(index=item.index, success=True, result=result))
        return outcomes

    async def _log_detection(self, result: MatchResult, location: Optional[str]) -> None:
        if self.detection_log is None:
            return
        # Stored as a fraction, reported as a percentage
        await self.detection_log.record(
            person_id=result.candidate_id,
            confidence=result.confidence / 100.0,
            location=location,
        )
