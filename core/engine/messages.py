# ============================================================
# Face Watch — descriptor matching engine
# core/engine/messages.py
# ============================================================
# Typed messages exchanged between the pool manager and its
# worker processes over multiprocessing pipes.
#
#   manager → worker:  MatchTask, BatchTask, StatusQuery, StopCommand
#   worker → manager:  MatchReply, BatchReply, StatusReply, WorkerFault
#
# Messages are pickled, so the candidate snapshot inside a task
# is a private copy on the worker side.
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

import numpy as np

from core.matcher.types import BatchItem, BatchItemOutcome, Candidate, MatchResult


class ErrorKind(str, Enum):
    """Failure category carried by a failed reply."""

    SHAPE = "shape"
    TIMEOUT = "timeout"
    STOPPED = "stopped"
    INTERNAL = "internal"


@dataclass(frozen=True)
class WorkerConfig:
    """
    Per-worker runtime knobs, fixed at process start.

    Attributes:
        match_timeout_s:      Bound for a single match task.
        batch_item_timeout_s: Bound for each item of a batch task.
        idle_delay_s:         Sleep between cooperative loop iterations.
        yield_every:          Candidates compared between yields in a scan.
        log_level:            Loguru level inside the worker process.
        json_logs:            Emit JSON log lines from the worker.
    """

    match_timeout_s: float = 5.0
    batch_item_timeout_s: float = 3.0
    idle_delay_s: float = 0.01
    yield_every: int = 100
    log_level: str = "INFO"
    json_logs: bool = False


# ── Manager → worker ─────────────────────────────────────────────────

@dataclass(frozen=True)
class MatchTask:
    request_id: str
    descriptor: np.ndarray
    candidates: List[Candidate] = field(repr=False)
    threshold: float = 0.6


@dataclass(frozen=True)
class BatchTask:
    request_id: str
    items: List[BatchItem] = field(repr=False)
    candidates: List[Candidate] = field(repr=False)
    threshold: float = 0.6


@dataclass(frozen=True)
class StatusQuery:
    query_id: str


@dataclass(frozen=True)
class StopCommand:
    reason: str = "shutdown"


Task = Union[MatchTask, BatchTask]


# ── Worker → manager ─────────────────────────────────────────────────

@dataclass(frozen=True)
class MatchReply:
    request_id: str
    success: bool
    result: Optional[MatchResult] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class BatchReply:
    request_id: str
    success: bool
    results: List[BatchItemOutcome] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class StatusReply:
    query_id: str
    worker_id: int
    is_running: bool
    queue_length: int
    is_processing: bool
    state: str


@dataclass(frozen=True)
class WorkerFault:
    """Unexpected exception that is about to take the worker down."""

    worker_id: int
    error: str


Reply = Union[MatchReply, BatchReply]
