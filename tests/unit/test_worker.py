# ============================================================
# Face Watch — descriptor matching engine
# tests/unit/test_worker.py
# ============================================================
# Unit tests for ExecutionWorker, driven in-process through
# fake pipe ends (no child processes are started here).
#
# Test groups:
#   1.  Single match     — success, no match, shape failure
#   2.  Timeouts         — a slow scan is cancelled and reported
#   3.  Batches          — order, alignment, per-item failures
#   4.  Control messages — status queries, stop, closed inbox
# ============================================================

from __future__ import annotations

import asyncio
from collections import deque
from typing import List

import numpy as np
import pytest

from core.engine.messages import (
    BatchReply,
    BatchTask,
    ErrorKind,
    MatchReply,
    MatchTask,
    StatusQuery,
    StatusReply,
    StopCommand,
    WorkerConfig,
)
from core.engine.worker import ExecutionWorker, WorkerState
from core.matcher.types import DESCRIPTOR_DIM, BatchItem
from tests.helpers import descriptor_at, make_candidate


class FakeInbox:
    """Receiving pipe end backed by a deque; ``close_writer()`` simulates EOF."""

    def __init__(self, *messages) -> None:
        self.messages = deque(messages)
        self.writer_closed = False

    def put(self, message) -> None:
        self.messages.append(message)

    def close_writer(self) -> None:
        self.writer_closed = True

    def poll(self) -> bool:
        return bool(self.messages) or self.writer_closed

    def recv(self):
        if self.messages:
            return self.messages.popleft()
        raise EOFError

    def close(self) -> None:
        pass


class FakeOutbox:
    def __init__(self) -> None:
        self.sent: List = []

    def send(self, message) -> None:
        self.sent.append(message)

    def close(self) -> None:
        pass


FAST = WorkerConfig(idle_delay_s=0.001, match_timeout_s=5.0, batch_item_timeout_s=5.0)


def _zero() -> np.ndarray:
    return np.zeros(DESCRIPTOR_DIM)


async def _wait_for_replies(outbox: FakeOutbox, count: int, timeout: float = 5.0) -> None:
    async def _poll():
        while len(outbox.sent) < count:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


async def _run_until_replies(worker: ExecutionWorker, inbox: FakeInbox, outbox: FakeOutbox, count: int) -> None:
    """Run *worker* until *count* messages went out, then stop it."""
    runner = asyncio.create_task(worker.run())
    try:
        await _wait_for_replies(outbox, count)
    finally:
        inbox.put(StopCommand())
        await asyncio.wait_for(runner, 5.0)


# ============================================================
# 1. Single match
# ============================================================

class TestSingleMatch:

    @pytest.mark.asyncio
    async def test_match_reply_carries_best_candidate(self, sample_candidates):
        inbox, outbox = FakeInbox(MatchTask("r1", _zero(), sample_candidates, 0.6)), FakeOutbox()
        worker = ExecutionWorker(0, inbox, outbox, FAST)

        await _run_until_replies(worker, inbox, outbox, 1)

        reply = outbox.sent[0]
        assert isinstance(reply, MatchReply)
        assert reply.request_id == "r1"
        assert reply.success is True
        assert reply.result.candidate.name == "Closest"
        assert reply.result.confidence == pytest.approx(50.0)
        assert worker.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_no_match_is_success_with_none(self):
        task = MatchTask("r2", _zero(), [make_candidate(1, 0.8)], 0.6)
        inbox, outbox = FakeInbox(task), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, FAST), inbox, outbox, 1)

        assert outbox.sent[0].success is True
        assert outbox.sent[0].result is None

    @pytest.mark.asyncio
    async def test_malformed_descriptor_reported_as_shape_failure(self, sample_candidates):
        task = MatchTask("r3", np.zeros(127), sample_candidates, 0.6)
        inbox, outbox = FakeInbox(task), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, FAST), inbox, outbox, 1)

        reply = outbox.sent[0]
        assert reply.success is False
        assert reply.error_kind == ErrorKind.SHAPE
        assert "got 127" in reply.error

    @pytest.mark.asyncio
    async def test_tasks_processed_in_arrival_order(self):
        tasks = [MatchTask(f"r{i}", _zero(), [make_candidate(i, 0.1)], 0.6) for i in range(5)]
        inbox, outbox = FakeInbox(*tasks), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, FAST), inbox, outbox, 5)

        assert [r.request_id for r in outbox.sent] == [f"r{i}" for i in range(5)]


# ============================================================
# 2. Timeouts
# ============================================================

class TestTimeout:

    @pytest.mark.asyncio
    async def test_slow_scan_times_out(self):
        candidates = [make_candidate(i, 0.9) for i in range(20_000)]
        config = WorkerConfig(idle_delay_s=0.001, match_timeout_s=0.001, yield_every=1)
        inbox, outbox = FakeInbox(MatchTask("slow", _zero(), candidates, 0.6)), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, config), inbox, outbox, 1)

        reply = outbox.sent[0]
        assert reply.success is False
        assert reply.error_kind == ErrorKind.TIMEOUT
        assert "timed out" in reply.error

    @pytest.mark.asyncio
    async def test_worker_keeps_serving_after_timeout(self):
        slow = MatchTask("slow", _zero(), [make_candidate(i, 0.9) for i in range(20_000)], 0.6)
        fast = MatchTask("fast", _zero(), [make_candidate(1, 0.1)], 0.6)
        config = WorkerConfig(idle_delay_s=0.001, match_timeout_s=0.001, yield_every=1)
        inbox, outbox = FakeInbox(slow, fast), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, config), inbox, outbox, 2)

        assert outbox.sent[0].error_kind == ErrorKind.TIMEOUT
        assert outbox.sent[1].success is True
        assert outbox.sent[1].result.candidate.id == 1


# ============================================================
# 3. Batches
# ============================================================

class TestBatch:

    @pytest.mark.asyncio
    async def test_batch_results_are_index_aligned(self, sample_candidates):
        items = [
            BatchItem(index=0, descriptor=_zero()),
            BatchItem(index=1, descriptor=np.zeros(127)),
            BatchItem(index=2, descriptor=np.array(descriptor_at(5.0))),
        ]
        inbox, outbox = FakeInbox(BatchTask("b1", items, sample_candidates, 0.6)), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, FAST), inbox, outbox, 1)

        reply = outbox.sent[0]
        assert isinstance(reply, BatchReply)
        assert reply.success is True
        assert [o.index for o in reply.results] == [0, 1, 2]

        first, second, third = reply.results
        assert first.success and first.result.candidate.name == "Closest"
        assert not second.success and "got 127" in second.error
        assert third.success and third.result is None

    @pytest.mark.asyncio
    async def test_batch_item_timeout_does_not_abort_rest(self):
        slow_candidates = [make_candidate(i, 0.9) for i in range(20_000)]
        items = [BatchItem(index=i, descriptor=_zero()) for i in range(3)]
        config = WorkerConfig(idle_delay_s=0.001, batch_item_timeout_s=0.001, yield_every=1)
        inbox, outbox = FakeInbox(BatchTask("b2", items, slow_candidates, 0.6)), FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, config), inbox, outbox, 1)

        results = outbox.sent[0].results
        assert len(results) == 3
        assert all(not r.success and "timed out" in r.error for r in results)


# ============================================================
# 4. Control messages
# ============================================================

class TestControl:

    @pytest.mark.asyncio
    async def test_status_query_answered(self):
        inbox, outbox = FakeInbox(StatusQuery("q1")), FakeOutbox()
        worker = ExecutionWorker(3, inbox, outbox, FAST)

        await _run_until_replies(worker, inbox, outbox, 1)

        status = outbox.sent[0]
        assert isinstance(status, StatusReply)
        assert status.query_id == "q1"
        assert status.worker_id == 3
        assert status.is_running is True
        assert status.is_processing is False
        assert status.queue_length == 0

    @pytest.mark.asyncio
    async def test_stop_rejects_queued_tasks(self, sample_candidates):
        # The stop arrives in the same inbox drain as the tasks, before any runs
        inbox = FakeInbox(
            MatchTask("q-a", _zero(), sample_candidates, 0.6),
            BatchTask("q-b", [BatchItem(0, _zero())], sample_candidates, 0.6),
            StopCommand(reason="test"),
        )
        outbox = FakeOutbox()
        worker = ExecutionWorker(0, inbox, outbox, FAST)

        await asyncio.wait_for(worker.run(), 5.0)

        assert [r.request_id for r in outbox.sent] == ["q-a", "q-b"]
        for reply in outbox.sent:
            assert reply.success is False
            assert reply.error_kind == ErrorKind.STOPPED
            assert reply.error == "Worker stopped before processing"
        assert worker.state == WorkerState.TERMINATED
        assert worker.tasks_completed == 0

    @pytest.mark.asyncio
    async def test_closed_inbox_stops_worker(self):
        inbox, outbox = FakeInbox(), FakeOutbox()
        inbox.close_writer()
        worker = ExecutionWorker(0, inbox, outbox, FAST)

        await asyncio.wait_for(worker.run(), 5.0)

        assert worker.is_running is False
        assert worker.state == WorkerState.TERMINATED

    @pytest.mark.asyncio
    async def test_unknown_message_is_ignored(self, sample_candidates):
        inbox = FakeInbox("garbage", MatchTask("ok", _zero(), sample_candidates, 0.6))
        outbox = FakeOutbox()

        await _run_until_replies(ExecutionWorker(0, inbox, outbox, FAST), inbox, outbox, 1)

        assert outbox.sent[0].request_id == "ok"
