# ============================================================
# Face Watch — descriptor matching engine
# core/engine/worker.py
# ============================================================
# Execution worker: one isolated process running a cooperative
# asyncio loop that serves match tasks sent by the pool manager.
#
# Lifecycle:
#   STARTING → RUNNING → (RECEIVING → COMPUTING → REPORTING)
#            → RUNNING → … → STOPPING → TERMINATED
#
# Two coroutines share the worker's event loop:
#   _pump_inbox()  — drains the inbound pipe, answers status
#                    queries and stop commands immediately,
#                    queues tasks in a FIFO deque
#   run()          — takes one task at a time off the deque,
#                    processes it to completion, sleeps briefly
#
# Scans yield every ``yield_every`` candidates so the pump is
# never starved, and so a timed-out scan is cancelled at its
# next yield point instead of running on in the background.
# ============================================================

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from collections import deque
from enum import Enum
from typing import Deque, List, Optional

import numpy as np

from core.engine.messages import (
    BatchReply,
    BatchTask,
    ErrorKind,
    MatchReply,
    MatchTask,
    StatusQuery,
    StatusReply,
    StopCommand,
    Task,
    WorkerConfig,
    WorkerFault,
)
from core.errors import MatchTimeoutError, ShapeError
from core.matcher.descriptor_matcher import BestMatchTracker, validate
from core.matcher.types import BatchItem, BatchItemOutcome, Candidate, MatchResult
from utils.logger import get_logger, setup_worker_logger

logger = get_logger(__name__)


class WorkerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RECEIVING = "receiving"
    COMPUTING = "computing"
    REPORTING = "reporting"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class ExecutionWorker:
    """
    Cooperative match loop hosted inside a worker process.

    The worker only talks to the outside world through *inbox* and
    *outbox*, two objects with the ``multiprocessing.Connection``
    interface (``poll()`` / ``recv()`` on the inbox, ``send()`` on
    the outbox).

    At most one task is processed at a time: ``run()`` awaits each
    task to completion before taking the next one off the queue, so
    no two computations ever overlap inside one worker.

    Args:
        worker_id: Pool slot index, used in logs and status replies.
        inbox:     Receiving end of the manager → worker pipe.
        outbox:    Sending end of the worker → manager pipe.
        config:    Timeouts and loop pacing.
    """

    def __init__(self, worker_id: int, inbox, outbox, config: Optional[WorkerConfig] = None) -> None:
        self.worker_id = worker_id
        self.config = config or WorkerConfig()
        self.state = WorkerState.STARTING
        self.tasks_completed = 0

        self._inbox = inbox
        self._outbox = outbox
        self._queue: Deque[Task] = deque()
        self._running = False
        self._processing = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Serve tasks until a stop command arrives or the inbox closes."""
        self._running = True
        self.state = WorkerState.RUNNING
        logger.info(f"Worker {self.worker_id} started")

        pump = asyncio.create_task(self._pump_inbox(), name=f"worker-{self.worker_id}-inbox")
        try:
            while self._running and not pump.done():
                if self._queue and not self._processing:
                    await self._process(self._queue.popleft())
                await asyncio.sleep(self.config.idle_delay_s)
        finally:
            self.state = WorkerState.STOPPING
            if not pump.done():
                pump.cancel()
            self._reject_queued()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
            self.state = WorkerState.TERMINATED
            logger.info(
                f"Worker {self.worker_id} processing loop ended "
                f"({self.tasks_completed} tasks completed)"
            )

    async def _pump_inbox(self) -> None:
        while self._running:
            while self._inbox.poll():
                try:
                    message = self._inbox.recv()
                except EOFError:
                    logger.warning(f"Worker {self.worker_id}: manager connection closed, stopping")
                    self._running = False
                    return
                self._dispatch(message)
            await asyncio.sleep(self.config.idle_delay_s)

    def _dispatch(self, message) -> None:
        if isinstance(message, (MatchTask, BatchTask)):
            self._queue.append(message)
            logger.debug(
                f"Worker {self.worker_id} queued {type(message).__name__} "
                f"{message.request_id[:8]} (queue={len(self._queue)})"
            )
        elif isinstance(message, StatusQuery):
            self._outbox.send(
                StatusReply(
                    query_id=message.query_id,
                    worker_id=self.worker_id,
                    is_running=self._running,
                    queue_length=len(self._queue),
                    is_processing=self._processing,
                    state=self.state.value,
                )
            )
        elif isinstance(message, StopCommand):
            logger.info(f"Worker {self.worker_id} stopping ({message.reason})")
            self._running = False
        else:
            logger.warning(f"Worker {self.worker_id}: unknown message type {type(message).__name__}")

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    async def _process(self, task: Task) -> None:
        self._processing = True
        try:
            if isinstance(task, MatchTask):
                reply = await self._run_match(task)
            else:
                reply = await self._run_batch(task)
            self.state = WorkerState.REPORTING
            self._outbox.send(reply)
            self.tasks_completed += 1
        finally:
            self._processing = False
            self.state = WorkerState.RUNNING

    async def _run_match(self, task: MatchTask) -> MatchReply:
        self.state = WorkerState.RECEIVING
        try:
            query = validate(task.descriptor)
        except ShapeError as exc:
            return MatchReply(task.request_id, False, error=str(exc), error_kind=ErrorKind.SHAPE)

        self.state = WorkerState.COMPUTING
        try:
            result = await self._match_with_timeout(
                query, task.candidates, task.threshold, self.config.match_timeout_s
            )
        except MatchTimeoutError as exc:
            logger.warning(f"Worker {self.worker_id}: request {task.request_id[:8]} {exc}")
            return MatchReply(task.request_id, False, error=str(exc), error_kind=ErrorKind.TIMEOUT)
        except Exception as exc:
            logger.exception(f"Worker {self.worker_id}: request {task.request_id[:8]} failed: {exc}")
            return MatchReply(task.request_id, False, error=str(exc), error_kind=ErrorKind.INTERNAL)

        return MatchReply(task.request_id, True, result=result)

    async def _run_batch(self, task: BatchTask) -> BatchReply:
        self.state = WorkerState.RECEIVING
        outcomes: List[BatchItemOutcome] = []
        # Items run strictly in submitted order
        for item in task.items:
            outcomes.append(await self._run_batch_item(item, task.candidates, task.threshold))
        return BatchReply(task.request_id, True, results=outcomes)

    async def _run_batch_item(
        self,
        item: BatchItem,
        candidates: List[Candidate],
        threshold: float,
    ) -> BatchItemOutcome:
        try:
            query = validate(item.descriptor)
        except ShapeError as exc:
            return BatchItemOutcome(index=item.index, success=False, error=str(exc))

        self.state = WorkerState.COMPUTING
        try:
            result = await self._match_with_timeout(
                query, candidates, threshold, self.config.batch_item_timeout_s
            )
        except MatchTimeoutError as exc:
            return BatchItemOutcome(index=item.index, success=False, error=str(exc))
        except Exception as exc:
            logger.exception(f"Worker {self.worker_id}: batch item {item.index} failed: {exc}")
            return BatchItemOutcome(index=item.index, success=False, error=str(exc))
        return BatchItemOutcome(index=item.index, success=True, result=result)

    async def _match_with_timeout(
        self,
        query: np.ndarray,
        candidates: List[Candidate],
        threshold: float,
        timeout_s: float,
    ) -> Optional[MatchResult]:
        try:
            return await asyncio.wait_for(self._scan(query, candidates, threshold), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise MatchTimeoutError(
                f"Match operation timed out after {timeout_s * 1000:.0f} ms", timeout_s
            ) from None

    async def _scan(
        self,
        query: np.ndarray,
        candidates: List[Candidate],
        threshold: float,
    ) -> Optional[MatchResult]:
        tracker = BestMatchTracker(query, threshold)
        every = self.config.yield_every
        for i, candidate in enumerate(candidates):
            if i % every == 0:
                await asyncio.sleep(0)
            tracker.offer(candidate)
        return tracker.result()

    def _reject_queued(self) -> None:
        """Answer every task that never started so no caller waits on it."""
        while self._queue:
            task = self._queue.popleft()
            error = "Worker stopped before processing"
            if isinstance(task, MatchTask):
                reply = MatchReply(task.request_id, False, error=error, error_kind=ErrorKind.STOPPED)
            else:
                reply = BatchReply(task.request_id, False, error=error, error_kind=ErrorKind.STOPPED)
            try:
                self._outbox.send(reply)
            except (OSError, EOFError) as exc:
                logger.warning(f"Worker {self.worker_id}: could not reject {task.request_id[:8]}: {exc}")


# ============================================================
# Process entry point
# ============================================================

def run_worker(worker_id: int, inbox, outbox, config: WorkerConfig) -> None:
    """
    Target of each worker ``multiprocessing.Process``.

    Exits with code 0 after a clean stop. On an unexpected exception
    the worker reports a ``WorkerFault`` and exits with code 1 so the
    manager replaces it.
    """
    # Ctrl-C goes to the whole process group; the parent orchestrates shutdown
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    setup_worker_logger(worker_id, level=config.log_level, json_logs=config.json_logs)

    worker = ExecutionWorker(worker_id, inbox, outbox, config)
    try:
        asyncio.run(worker.run())
    except Exception as exc:
        logger.exception(f"Worker {worker_id} crashed: {exc}")
        try:
            outbox.send(WorkerFault(worker_id=worker_id, error=f"{type(exc).__name__}: {exc}"))
        except (OSError, EOFError):
            logger.error(f"Worker {worker_id} could not report its fault to the manager")
        sys.exit(1)
    finally:
        inbox.close()
        outbox.close()
