# ============================================================
# Face Watch — descriptor matching engine
# tests/unit/test_detection_service.py
# ============================================================
# Unit tests for DetectionService and the in-memory stores.
#
# The worker pool is replaced by a FakePool so these tests never
# start child processes; the real pool is covered in test_pool.py.
#
# Test groups:
#   1.  Stores              — candidate store, detection log
#   2.  match_face()        — direct matching, messages, logging
#   3.  Worker path         — pool answers, fallback, breaker
#   4.  batch_match()       — validation, alignment, fallback
#   5.  find_matches() / get_worker_status()
# ============================================================

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from core.detection import (
    DetectionService,
    InMemoryCandidateStore,
    InMemoryDetectionLog,
)
from core.detection.service import MATCH_FOUND_MESSAGE, NO_CANDIDATES_MESSAGE, NO_MATCH_MESSAGE
from core.engine.pool import PoolStatus
from core.errors import (
    BatchIndexError,
    MatchTimeoutError,
    PoolShutdownError,
    ShapeError,
    WorkerCrashedError,
)
from core.matcher import BatchItemOutcome, find_best_match
from core.matcher.types import DESCRIPTOR_DIM, BatchItem
from tests.helpers import descriptor_at, make_candidate
from utils.circuit_breaker import CircuitBreaker, CircuitState


class FakePool:
    """Stands in for WorkerPoolManager; answers with the real matcher or fails."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.hang = False
        self.calls = 0
        self.batch_calls = 0

    def _resolved(self, value):
        future = asyncio.get_running_loop().create_future()
        if self.hang:
            return future
        if self.error is not None:
            future.set_exception(self.error)
        else:
            future.set_result(value)
        return future

    def submit(self, descriptor, candidates, threshold=None):
        self.calls += 1
        return self._resolved(find_best_match(descriptor, candidates, threshold))

    def submit_batch(self, items, candidates, threshold=None):
        self.batch_calls += 1
        outcomes = [
            BatchItemOutcome(
                index=item.index,
                success=True,
                result=find_best_match(item.descriptor, candidates, threshold),
            )
            for item in items
        ]
        return self._resolved(outcomes)

    def status(self) -> PoolStatus:
        return PoolStatus(total_workers=2, available_workers=1, queued_requests=0, pending_requests=1)


def _zero() -> List[float]:
    return [0.0] * DESCRIPTOR_DIM


@pytest.fixture
def store(sample_candidates) -> InMemoryCandidateStore:
    return InMemoryCandidateStore(sample_candidates)


@pytest.fixture
def detection_log() -> InMemoryDetectionLog:
    return InMemoryDetectionLog()


# ============================================================
# 1. Stores
# ============================================================

class TestCandidateStore:

    @pytest.mark.asyncio
    async def test_load_skips_candidates_without_descriptor(self, store):
        assert store.count == 4
        loaded = await store.load_candidates()
        assert sorted(c.id for c in loaded) == [1, 2, 3]

    def test_add_dict_record(self):
        store = InMemoryCandidateStore()
        candidate = store.add({"id": "x", "name": "From Dict", "face_descriptor": descriptor_at(0.1)})
        assert candidate.has_descriptor
        assert store.get("x").name == "From Dict"

    def test_add_replaces_same_id(self):
        store = InMemoryCandidateStore([make_candidate(1, 0.1, name="Old")])
        store.add(make_candidate(1, 0.2, name="New"))
        assert len(store) == 1
        assert store.get(1).name == "New"

    def test_remove_and_clear(self, store):
        assert store.remove(1) is True
        assert store.remove(1) is False
        store.clear()
        assert store.count == 0


class TestDetectionLog:

    @pytest.mark.asyncio
    async def test_recent_is_newest_first(self, detection_log):
        for pid in (1, 2, 3):
            await detection_log.record(pid, 0.5, location="gate")
        recent = await detection_log.recent(limit=2)
        assert [e.person_id for e in recent] == [3, 2]
        assert recent[0].location == "gate"

    @pytest.mark.asyncio
    async def test_max_entries_trims_oldest(self):
        log = InMemoryDetectionLog(max_entries=2)
        for pid in (1, 2, 3):
            await log.record(pid, 0.9)
        assert [e.person_id for e in log.entries()] == [2, 3]
        assert [e.id for e in log.entries()] == [2, 3]

    @pytest.mark.asyncio
    async def test_entries_filtered_by_person(self, detection_log):
        await detection_log.record(1, 0.5)
        await detection_log.record(2, 0.5)
        await detection_log.record(1, 0.7)
        assert len(detection_log.entries(person_id=1)) == 2

    @pytest.mark.asyncio
    async def test_non_positive_limit(self, detection_log):
        await detection_log.record(1, 0.5)
        assert await detection_log.recent(limit=0) == []


# ============================================================
# 2. match_face() — direct
# ============================================================

class TestMatchFaceDirect:

    @pytest.mark.asyncio
    async def test_match_found_and_logged(self, store, detection_log):
        service = DetectionService(store, detection_log=detection_log)
        outcome = await service.match_face(_zero(), location="entrance")

        assert outcome.match is True
        assert outcome.message == MATCH_FOUND_MESSAGE
        assert outcome.result.candidate.name == "Closest"
        assert outcome.via_worker is False

        entries = detection_log.entries()
        assert len(entries) == 1
        assert entries[0].person_id == 2
        assert entries[0].confidence == pytest.approx(0.5)
        assert entries[0].location == "entrance"

    @pytest.mark.asyncio
    async def test_no_match(self, detection_log):
        service = DetectionService(InMemoryCandidateStore([make_candidate(1, 0.9)]), detection_log=detection_log)
        outcome = await service.match_face(_zero())

        assert outcome.match is False
        assert outcome.message == NO_MATCH_MESSAGE
        assert outcome.to_dict() == {"match": False, "message": NO_MATCH_MESSAGE}
        assert detection_log.count == 0

    @pytest.mark.asyncio
    async def test_empty_store(self):
        outcome = await DetectionService(InMemoryCandidateStore()).match_face(_zero())
        assert outcome.match is False
        assert outcome.message == NO_CANDIDATES_MESSAGE

    @pytest.mark.asyncio
    async def test_shape_error_propagates(self, store):
        with pytest.raises(ShapeError, match="got 127"):
            await DetectionService(store).match_face([0.0] * 127)

    @pytest.mark.asyncio
    async def test_to_dict_includes_result(self, store):
        outcome = await DetectionService(store).match_face(_zero())
        data = outcome.to_dict()
        assert data["match"] is True
        assert data["result"]["name"] == "Closest"
        assert data["result"]["confidence"] == 50.0

    def test_invalid_threshold(self, store):
        with pytest.raises(ValueError):
            DetectionService(store, threshold=0)


# ============================================================
# 3. Worker path
# ============================================================

class TestMatchFaceWorker:

    @pytest.mark.asyncio
    async def test_pool_answers(self, store):
        pool = FakePool()
        service = DetectionService(store, pool=pool)
        outcome = await service.match_face(_zero(), use_worker=True)

        assert pool.calls == 1
        assert outcome.via_worker is True
        assert outcome.fell_back is False
        assert outcome.result.candidate.id == 2

    @pytest.mark.asyncio
    async def test_pool_not_used_unless_requested(self, store):
        pool = FakePool()
        outcome = await DetectionService(store, pool=pool).match_face(_zero())
        assert pool.calls == 0
        assert outcome.via_worker is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [WorkerCrashedError(0, -9), PoolShutdownError(), MatchTimeoutError("Match operation timed out after 5000 ms")],
    )
    async def test_pool_failure_falls_back(self, store, error):
        service = DetectionService(store, pool=FakePool(error=error))
        outcome = await service.match_face(_zero(), use_worker=True)

        assert outcome.match is True
        assert outcome.via_worker is False
        assert outcome.fell_back is True
        assert outcome.result.candidate.id == 2

    @pytest.mark.asyncio
    async def test_open_breaker_skips_pool(self, store):
        pool = FakePool(error=WorkerCrashedError(0))
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60.0)
        service = DetectionService(store, pool=pool, breaker=breaker)

        for _ in range(2):
            await service.match_face(_zero(), use_worker=True)
        assert breaker.state == CircuitState.OPEN
        assert pool.calls == 2

        outcome = await service.match_face(_zero(), use_worker=True)
        assert pool.calls == 2
        assert outcome.fell_back is True
        assert outcome.match is True

    @pytest.mark.asyncio
    async def test_cancelled_half_open_call_frees_the_pool_path(self, store):
        pool = FakePool(error=WorkerCrashedError(0))
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0.01)
        service = DetectionService(store, pool=pool, breaker=breaker)

        await service.match_face(_zero(), use_worker=True)
        assert breaker.state == CircuitState.OPEN
        await asyncio.sleep(0.02)

        pool.error = None
        pool.hang = True
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(service.match_face(_zero(), use_worker=True), 0.05)
        assert pool.calls == 2

        pool.hang = False
        outcome = await service.match_face(_zero(), use_worker=True)
        assert pool.calls == 3
        assert outcome.via_worker is True
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_breaker(self, store):
        pool = FakePool(error=WorkerCrashedError(0))
        breaker = CircuitBreaker("test", failure_threshold=3)
        service = DetectionService(store, pool=pool, breaker=breaker)

        await service.match_face(_zero(), use_worker=True)
        assert breaker.failure_count == 1
        pool.error = None
        await service.match_face(_zero(), use_worker=True)
        assert breaker.failure_count == 0

    def test_breaker_created_with_pool(self, store):
        assert DetectionService(store, pool=FakePool()).breaker is not None
        assert DetectionService(store).breaker is None


# ============================================================
# 4. batch_match()
# ============================================================

class TestBatchMatch:

    @pytest.mark.asyncio
    async def test_batch_via_pool_is_aligned_and_logged(self, store, detection_log):
        pool = FakePool()
        service = DetectionService(store, pool=pool, detection_log=detection_log)
        items = [
            {"index": 0, "descriptor": _zero()},
            {"index": 1, "descriptor": descriptor_at(5.0)},
            BatchItem(index=2, descriptor=_zero()),
        ]
        outcomes = await service.batch_match(items, location="lobby")

        assert pool.batch_calls == 1
        assert [o.index for o in outcomes] == [0, 1, 2]
        assert outcomes[1].result is None
        assert detection_log.count == 2

    @pytest.mark.asyncio
    async def test_invalid_item_names_index_and_matches_nothing(self, store):
        pool = FakePool()
        service = DetectionService(store, pool=pool)
        items = [{"index": 0, "descriptor": _zero()}, {"index": 4, "descriptor": [0.0] * 10}]

        with pytest.raises(ShapeError, match="Invalid descriptor at index 4"):
            await service.batch_match(items)
        assert pool.batch_calls == 0

    @pytest.mark.asyncio
    async def test_default_index_colliding_with_explicit_is_rejected(self, store):
        pool = FakePool()
        service = DetectionService(store, pool=pool)
        items = [{"index": 1, "descriptor": _zero()}, {"descriptor": _zero()}]

        with pytest.raises(BatchIndexError, match="Duplicate batch index 1"):
            await service.batch_match(items)
        assert pool.batch_calls == 0

    @pytest.mark.asyncio
    async def test_positional_index_default(self, store):
        outcomes = await DetectionService(store).batch_match(
            [{"descriptor": _zero()}, {"descriptor": _zero()}], use_worker=False
        )
        assert [o.index for o in outcomes] == [0, 1]

    @pytest.mark.asyncio
    async def test_empty_store_returns_empty_results(self):
        service = DetectionService(InMemoryCandidateStore(), pool=FakePool())
        outcomes = await service.batch_match([{"index": 0, "descriptor": _zero()}])
        assert outcomes == [BatchItemOutcome(index=0, success=True)]

    @pytest.mark.asyncio
    async def test_pool_failure_falls_back_to_direct(self, store):
        service = DetectionService(store, pool=FakePool(error=PoolShutdownError()))
        outcomes = await service.batch_match([{"index": 0, "descriptor": _zero()}])
        assert outcomes[0].success is True
        assert outcomes[0].result.candidate.id == 2


# ============================================================
# 5. find_matches() / get_worker_status()
# ============================================================

class TestFindMatchesAndStatus:

    @pytest.mark.asyncio
    async def test_find_matches_sorted(self, store):
        results = await DetectionService(store).find_matches(_zero())
        assert [r.candidate.id for r in results] == [2, 1]

    @pytest.mark.asyncio
    async def test_find_matches_limit(self, store):
        results = await DetectionService(store).find_matches(_zero(), max_results=1)
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_find_matches_empty_store(self):
        assert await DetectionService(InMemoryCandidateStore()).find_matches(_zero()) == []

    def test_worker_status_without_pool(self, store):
        status = DetectionService(store).get_worker_status()
        assert status.to_dict() == {
            "totalWorkers": 0,
            "availableWorkers": 0,
            "queuedRequests": 0,
            "pendingRequests": 0,
        }

    def test_worker_status_from_pool(self, store):
        status = DetectionService(store, pool=FakePool()).get_worker_status()
        assert status.total_workers == 2
        assert status.pending_requests == 1
