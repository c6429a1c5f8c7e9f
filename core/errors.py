# ============================================================
# Face Watch — descriptor matching engine
# core/errors.py
# ============================================================
# Exception taxonomy shared by the matcher, the worker pool
# and the detection service.
#
#   ShapeError               — malformed descriptor (never retried)
#   BatchIndexError          — two batch items share an index
#   MatchTimeoutError        — task exceeded its time bound
#   PoolError                — base for worker-pool failures
#       PoolNotInitializedError
#       PoolShutdownError
#       WorkerCrashedError
#       WorkerTaskError
# ============================================================

from __future__ import annotations

from typing import Optional


class ShapeError(ValueError):
    """Raised when a descriptor is not exactly 128 finite real numbers."""


class BatchIndexError(ValueError):
    """Raised when batch items cannot be told apart by their index."""


class MatchTimeoutError(TimeoutError):
    """Raised when a match task exceeds its time bound inside a worker."""

    def __init__(self, message: str = "Match operation timed out", timeout_s: Optional[float] = None) -> None:
        self.timeout_s = timeout_s
        super().__init__(message)


class PoolError(RuntimeError):
    """Base class for worker-pool failures."""


class PoolNotInitializedError(PoolError):
    """Raised when work is submitted before ``initialize()``."""

    def __init__(self) -> None:
        super().__init__("Worker pool is not initialised. Call initialize() first.")


class PoolShutdownError(PoolError):
    """Raised for work submitted to, or still pending in, a pool that is shutting down."""

    def __init__(self, message: str = "Worker pool is shut down.") -> None:
        super().__init__(message)


class WorkerCrashedError(PoolError):
    """
    The worker holding a task died before replying.

    Attributes:
        worker_index: Pool slot of the crashed worker.
        exitcode:     Process exit code, or None if unknown.
    """

    def __init__(self, worker_index: int, exitcode: Optional[int] = None) -> None:
        self.worker_index = worker_index
        self.exitcode = exitcode
        super().__init__(
            f"Worker {worker_index} crashed (exit code {exitcode}) "
            "while processing the request."
        )


class WorkerTaskError(PoolError):
    """An unexpected exception was raised while a worker ran a task."""
