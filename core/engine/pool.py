# ============================================================
# Face Watch — descriptor matching engine
# core/engine/pool.py
# ============================================================
# Worker pool manager: owns a fixed set of execution worker
# processes and mediates all access to them.
#
# Features:
#   - Immediate dispatch to a free worker, FIFO overflow queue
#     otherwise (at most one task in flight per worker)
#   - One listener thread per worker that forwards replies and
#     process exits onto the manager's event loop; all manager
#     state is mutated on that loop only, so no locks
#   - In-place replacement of crashed workers; the crashed
#     worker's in-flight request is rejected with
#     WorkerCrashedError (never resubmitted automatically)
#   - Status / per-slot introspection and worker status queries
#   - Graceful shutdown with a bounded grace period
#
# Usage::
#
#     pool = WorkerPoolManager(size=2)
#     await pool.initialize()
#     result = await pool.submit(descriptor, candidates)
#     await pool.shutdown()
# ============================================================

from __future__ import annotations

import asyncio
import multiprocessing
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from multiprocessing import connection as mp_connection
from multiprocessing.reduction import ForkingPickler
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Union

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
    WorkerFault,
)
from core.engine.worker import run_worker
from core.errors import (
    MatchTimeoutError,
    PoolError,
    PoolNotInitializedError,
    PoolShutdownError,
    ShapeError,
    WorkerCrashedError,
    WorkerTaskError,
)
from core.matcher.descriptor_matcher import validate, validate_batch
from core.matcher.types import DEFAULT_THRESHOLD, BatchItem, Candidate, FaceDescriptor
from utils.logger import get_logger

logger = get_logger(__name__)


# ============================================================
# Data Types
# ============================================================

@dataclass(frozen=True)
class PoolStatus:
    """Point-in-time view of the pool."""

    total_workers: int
    available_workers: int
    queued_requests: int
    pending_requests: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalWorkers": self.total_workers,
            "availableWorkers": self.available_workers,
            "queuedRequests": self.queued_requests,
            "pendingRequests": self.pending_requests,
        }


@dataclass(frozen=True)
class SlotInfo:
    """Snapshot of one pool slot."""

    index: int
    busy: bool
    restarts: int
    pid: Optional[int]
    alive: bool
    request_id: Optional[str] = None


@dataclass
class _PendingRequest:
    request_id: str
    kind: str                      # 'match' | 'batch'
    payload: bytes = field(repr=False)
    future: asyncio.Future = field(repr=False)
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass
class _PoolSlot:
    index: int
    process: Any = field(repr=False)
    task_conn: Any = field(repr=False)     # manager → worker (send end)
    reply_conn: Any = field(repr=False)    # worker → manager (recv end)
    listener: Optional[threading.Thread] = field(default=None, repr=False)
    generation: int = 0
    restarts: int = 0
    busy: bool = False
    request_id: Optional[str] = None
    status_waiters: Dict[str, asyncio.Future] = field(default_factory=dict, repr=False)


# ============================================================
# Pool manager
# ============================================================

class WorkerPoolManager:
    """
    Fixed-size pool of matching worker processes.

    The manager lives on one asyncio event loop (the one that calls
    :meth:`initialize`). Its queue, pending map and slot table are only
    ever touched from that loop.

    Args:
        size:             Number of workers.
        worker_config:    Timeouts / pacing handed to every worker.
        threshold:        Default distance threshold for submitted tasks.
        start_method:     multiprocessing start method ('spawn' by default).
        shutdown_grace_s: Seconds to wait for a clean stop before
                          terminating workers.
        worker_target:    Process entry point (``run_worker``).
    """

    def __init__(
        self,
        size: int = 2,
        worker_config: Optional[WorkerConfig] = None,
        threshold: float = DEFAULT_THRESHOLD,
        start_method: str = "spawn",
        shutdown_grace_s: float = 1.0,
        worker_target: Callable[..., None] = run_worker,
    ) -> None:
        if size < 1:
            raise ValueError(f"Pool size must be at least 1, got {size}")
        if not threshold > 0:
            raise ValueError(f"Threshold must be positive, got {threshold!r}")

        self.size = int(size)
        self.worker_config = worker_config or WorkerConfig()
        self.threshold = float(threshold)
        self.start_method = start_method
        self.shutdown_grace_s = float(shutdown_grace_s)

        self._ctx = multiprocessing.get_context(start_method)
        self._worker_target = worker_target
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._slots: List[_PoolSlot] = []
        self._queue: Deque[_PendingRequest] = deque()
        self._pending: Dict[str, _PendingRequest] = {}
        self._initialized = False
        self._closing = False

    @classmethod
    def from_settings(cls, settings) -> "WorkerPoolManager":
        """Build a pool from the application ``Settings`` object."""
        pool_cfg = settings.pool
        return cls(
            size=pool_cfg.size,
            worker_config=WorkerConfig(
                match_timeout_s=pool_cfg.match_timeout_s,
                batch_item_timeout_s=pool_cfg.batch_item_timeout_s,
                idle_delay_s=pool_cfg.idle_delay_s,
                yield_every=pool_cfg.yield_every,
                log_level=settings.logging.level,
                json_logs=settings.logging.json_logs,
            ),
            threshold=settings.matcher.threshold,
            start_method=pool_cfg.start_method,
            shutdown_grace_s=pool_cfg.shutdown_grace_s,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, size: Optional[int] = None) -> None:
        """
        Spawn the workers.

        Args:
            size: Override the pool size given to the constructor.

        Raises:
            RuntimeError: If the pool is already initialised or shut down.
        """
        if self._initialized or self._closing:
            raise RuntimeError("Worker pool has already been initialised.")
        if size is not None:
            if size < 1:
                raise ValueError(f"Pool size must be at least 1, got {size}")
            self.size = int(size)

        self._loop = asyncio.get_running_loop()
        try:
            for index in range(self.size):
                self._slots.append(self._spawn(index, generation=0))
        except Exception:
            logger.exception("Worker pool initialisation failed; stopping spawned workers")
            for slot in self._slots:
                slot.process.kill()
                slot.process.join(timeout=1.0)
                slot.task_conn.close()
                slot.reply_conn.close()
            self._slots.clear()
            raise

        self._initialized = True
        logger.success(
            f"Initialised {self.size} workers | start_method={self.start_method} "
            f"| timeout={self.worker_config.match_timeout_s:.1f}s "
            f"| batch_item_timeout={self.worker_config.batch_item_timeout_s:.1f}s"
        )

    async def shutdown(self) -> None:
        """
        Stop every worker.

        Queued requests are rejected with PoolShutdownError, a stop
        command is broadcast, workers get ``shutdown_grace_s`` to finish
        their in-flight task, and survivors are terminated.
        """
        if not self._initialized or self._closing:
            return
        self._closing = True
        logger.info("Shutting down workers...")

        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(
                    PoolShutdownError("Worker pool shut down before the request was dispatched.")
                )

        for slot in self._slots:
            try:
                slot.task_conn.send(StopCommand(reason="pool shutdown"))
            except OSError as exc:
                logger.debug(f"Worker {slot.index} did not receive stop: {exc}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_grace_s
        while loop.time() < deadline and any(s.process.is_alive() for s in self._slots):
            await asyncio.sleep(0.02)

        for slot in self._slots:
            if slot.process.is_alive():
                logger.warning(f"Worker {slot.index} still alive after grace period; terminating")
                slot.process.terminate()
        for slot in self._slots:
            await loop.run_in_executor(None, slot.process.join, 2.0)
            if slot.listener is not None:
                await loop.run_in_executor(None, slot.listener.join, 2.0)

        # Replies that arrived during the grace period have been resolved by now
        for request in self._pending.values():
            if not request.future.done():
                request.future.set_exception(
                    PoolShutdownError("Worker pool shut down while the request was in flight.")
                )
        self._pending.clear()

        for slot in self._slots:
            self._fail_status_waiters(slot, PoolShutdownError())
            slot.busy = False
            slot.request_id = None
            slot.task_conn.close()
            slot.reply_conn.close()

        self._initialized = False
        logger.success("All workers terminated")

    async def __aenter__(self) -> "WorkerPoolManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        descriptor: FaceDescriptor,
        candidates: Iterable[Candidate],
        threshold: Optional[float] = None,
    ) -> asyncio.Future:
        """
        Queue a single match.

        The descriptor is validated and the candidate snapshot is
        serialised immediately, so later changes to *candidates* by the
        caller never reach the worker.

        Returns:
            Future resolving to ``Optional[MatchResult]`` or failing with
            MatchTimeoutError / WorkerCrashedError / PoolShutdownError /
            WorkerTaskError.

        Raises:
            ShapeError:              Malformed descriptor (nothing queued).
            PoolNotInitializedError: ``initialize()`` has not run.
            PoolShutdownError:       The pool is shut down.
        """
        self._ensure_open()
        query = validate(descriptor)
        request_id = str(uuid.uuid4())
        task = MatchTask(
            request_id=request_id,
            descriptor=query,
            candidates=list(candidates),
            threshold=self._resolve_threshold(threshold),
        )
        return self._enqueue(request_id, "match", task)

    def submit_batch(
        self,
        items: Sequence[Union[BatchItem, Mapping[str, Any]]],
        candidates: Iterable[Candidate],
        threshold: Optional[float] = None,
    ) -> asyncio.Future:
        """
        Queue a batch; one worker processes every item in order.

        Args:
            items:      BatchItems, or mappings with ``index`` and
                        ``descriptor`` keys.
            candidates: Candidate snapshot shared by all items.
            threshold:  Override the pool's default threshold.

        Returns:
            Future resolving to ``List[BatchItemOutcome]``, index-aligned
            with *items*.

        Raises:
            ShapeError: If any descriptor is malformed, naming its index.
            BatchIndexError: Two items share an index.
        """
        self._ensure_open()
        batch = validate_batch(items)

        request_id = str(uuid.uuid4())
        task = BatchTask(
            request_id=request_id,
            items=batch,
            candidates=list(candidates),
            threshold=self._resolve_threshold(threshold),
        )
        return self._enqueue(request_id, "batch", task)

    async def worker_status(self, index: int, timeout: float = 2.0) -> StatusReply:
        """
        Ask worker *index* for its live status.

        The worker answers from its inbox pump, so the reply comes back
        even while it is busy with a long scan.
        """
        self._ensure_open()
        slot = self._slots[index]
        query_id = str(uuid.uuid4())
        waiter = self._loop.create_future()
        slot.status_waiters[query_id] = waiter
        try:
            slot.task_conn.send(StatusQuery(query_id=query_id))
            return await asyncio.wait_for(waiter, timeout=timeout)
        except OSError as exc:
            raise WorkerCrashedError(index) from exc
        finally:
            slot.status_waiters.pop(query_id, None)

    def status(self) -> PoolStatus:
        return PoolStatus(
            total_workers=len(self._slots),
            available_workers=sum(1 for s in self._slots if not s.busy),
            queued_requests=sum(1 for r in self._queue if not r.future.done()),
            pending_requests=len(self._pending),
        )

    def slots(self) -> List[SlotInfo]:
        return [
            SlotInfo(
                index=s.index,
                busy=s.busy,
                restarts=s.restarts,
                pid=s.process.pid,
                alive=s.process.is_alive(),
                request_id=s.request_id,
            )
            for s in self._slots
        ]

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_closing(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _enqueue(self, request_id: str, kind: str, task: Union[MatchTask, BatchTask]) -> asyncio.Future:
        future = self._loop.create_future()
        self._queue.append(
            _PendingRequest(
                request_id=request_id,
                kind=kind,
                payload=bytes(ForkingPickler.dumps(task)),
                future=future,
            )
        )
        self._drain()
        return future

    def _drain(self) -> None:
        """Hand queued requests to free workers, oldest first."""
        if self._closing:
            return
        while self._queue:
            slot = next((s for s in self._slots if not s.busy), None)
            if slot is None:
                break
            request = self._queue.popleft()
            if request.future.done():
                # Cancelled by the caller while it waited
                continue
            self._dispatch(slot, request)

    def _dispatch(self, slot: _PoolSlot, request: _PendingRequest) -> None:
        slot.busy = True
        slot.request_id = request.request_id
        self._pending[request.request_id] = request
        try:
            slot.task_conn.send_bytes(request.payload)
        except OSError as exc:
            # Dead pipe: the slot stays busy until the exit event replaces it
            logger.error(f"Worker {slot.index} unreachable for {request.request_id[:8]}: {exc}")
            self._pending.pop(request.request_id, None)
            request.future.set_exception(WorkerCrashedError(slot.index))
            return
        logger.debug(
            f"Dispatched {request.kind} {request.request_id[:8]} to worker {slot.index} "
            f"(queued={len(self._queue)})"
        )

    # ------------------------------------------------------------------
    # Worker events (always run on the manager loop)
    # ------------------------------------------------------------------

    def _on_message(self, index: int, generation: int, message: Any) -> None:
        slot = self._slots[index]
        if slot.generation != generation:
            logger.debug(f"Dropping message from replaced worker {index} (gen {generation})")
            return

        if isinstance(message, (MatchReply, BatchReply)):
            self._complete(slot, message)
        elif isinstance(message, StatusReply):
            waiter = slot.status_waiters.pop(message.query_id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(message)
        elif isinstance(message, WorkerFault):
            logger.error(f"Worker {index} reported a fault: {message.error}")
        else:
            logger.warning(f"Unknown message from worker {index}: {type(message).__name__}")

    def _complete(self, slot: _PoolSlot, reply: Union[MatchReply, BatchReply]) -> None:
        request = self._pending.pop(reply.request_id, None)
        if slot.request_id == reply.request_id:
            slot.busy = False
            slot.request_id = None

        if request is None:
            logger.debug(f"Reply for unknown request {reply.request_id[:8]} from worker {slot.index}")
        elif request.future.done():
            logger.debug(f"Caller no longer waiting for {reply.request_id[:8]}; reply dropped")
        elif reply.success:
            value = reply.result if isinstance(reply, MatchReply) else reply.results
            request.future.set_result(value)
        else:
            request.future.set_exception(_reply_error(reply))

        if request is not None:
            elapsed_ms = (time.monotonic() - request.submitted_at) * 1000.0
            logger.debug(
                f"Worker {slot.index} finished {request.kind} {reply.request_id[:8]} "
                f"success={reply.success} in {elapsed_ms:.1f}ms"
            )

        self._drain()

    def _on_exit(self, index: int, generation: int, exitcode: Optional[int]) -> None:
        slot = self._slots[index]
        if slot.generation != generation:
            return
        if self._closing:
            logger.info(f"Worker {index} exited with code {exitcode}")
            return

        if exitcode == 0:
            logger.warning(f"Worker {index} exited unexpectedly with code 0; replacing it")
        else:
            logger.error(f"Worker {index} crashed with exit code {exitcode}; replacing it")
        self._replace(slot, exitcode)

    def _replace(self, slot: _PoolSlot, exitcode: Optional[int]) -> None:
        crash = WorkerCrashedError(slot.index, exitcode)
        if slot.request_id is not None:
            request = self._pending.pop(slot.request_id, None)
            if request is not None and not request.future.done():
                request.future.set_exception(crash)
        self._fail_status_waiters(slot, crash)

        slot.task_conn.close()
        slot.reply_conn.close()

        try:
            replacement = self._spawn(slot.index, generation=slot.generation + 1, restarts=slot.restarts + 1)
        except Exception:
            logger.exception(f"Could not restart worker {slot.index}; slot left out of rotation")
            slot.busy = True
            slot.request_id = None
            return

        self._slots[slot.index] = replacement
        logger.warning(f"Worker {slot.index} replaced (restart #{replacement.restarts}, pid={replacement.process.pid})")
        self._drain()

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _spawn(self, index: int, generation: int, restarts: int = 0) -> _PoolSlot:
        task_recv, task_send = self._ctx.Pipe(duplex=False)
        reply_recv, reply_send = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=self._worker_target,
            args=(index, task_recv, reply_send, self.worker_config),
            name=f"facewatch-worker-{index}",
            daemon=True,
        )
        process.start()
        # The child owns these ends now; closing ours lets EOF signal its death
        task_recv.close()
        reply_send.close()

        slot = _PoolSlot(
            index=index,
            process=process,
            task_conn=task_send,
            reply_conn=reply_recv,
            generation=generation,
            restarts=restarts,
        )
        slot.listener = threading.Thread(
            target=self._listen,
            args=(index, generation, reply_recv, process),
            name=f"facewatch-worker-{index}-listener",
            daemon=True,
        )
        slot.listener.start()
        logger.debug(f"Spawned worker {index} (gen {generation}, pid={process.pid})")
        return slot

    def _listen(self, index: int, generation: int, conn, process) -> None:
        """Listener thread: forward replies, then the exit, to the loop."""
        while True:
            ready = mp_connection.wait([conn, process.sentinel])
            if conn in ready:
                try:
                    message = conn.recv()
                except (EOFError, OSError):
                    break
                self._call_in_loop(self._on_message, index, generation, message)
                continue
            break
        # The pipe can close a moment before the process is reaped
        mp_connection.wait([process.sentinel], timeout=5.0)
        self._call_in_loop(self._on_exit, index, generation, process.exitcode)

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug(f"Event loop closed; dropped {callback.__name__}{args[:2]}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closing:
            raise PoolShutdownError()
        if not self._initialized:
            raise PoolNotInitializedError()

    def _resolve_threshold(self, threshold: Optional[float]) -> float:
        if threshold is None:
            return self.threshold
        if not threshold > 0:
            raise ValueError(f"Threshold must be positive, got {threshold!r}")
        return float(threshold)

    @staticmethod
    def _fail_status_waiters(slot: _PoolSlot, exc: PoolError) -> None:
        for waiter in slot.status_waiters.values():
            if not waiter.done():
                waiter.set_exception(exc)
        slot.status_waiters.clear()

    def __repr__(self) -> str:
        s = self.status()
        state = "closing" if self._closing else ("running" if self._initialized else "idle")
        return (
            f"WorkerPoolManager(size={self.size}, state={state}, "
            f"available={s.available_workers}, queued={s.queued_requests}, "
            f"pending={s.pending_requests})"
        )


def _reply_error(reply: Union[MatchReply, BatchReply]) -> Exception:
    message = reply.error or "Worker error"
    if reply.error_kind == ErrorKind.SHAPE:
        return ShapeError(message)
    if reply.error_kind == ErrorKind.TIMEOUT:
        return MatchTimeoutError(message)
    if reply.error_kind == ErrorKind.STOPPED:
        return PoolShutdownError(message)
    return WorkerTaskError(message)
