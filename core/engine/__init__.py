# ============================================================
# Face Watch — Execution Engine Module
# ============================================================

from core.engine.messages import ErrorKind, StatusReply, WorkerConfig
from core.engine.pool import PoolStatus, SlotInfo, WorkerPoolManager
from core.engine.worker import ExecutionWorker, WorkerState, run_worker

__all__ = [
    "ErrorKind",
    "ExecutionWorker",
    "PoolStatus",
    "SlotInfo",
    "StatusReply",
    "WorkerConfig",
    "WorkerPoolManager",
    "WorkerState",
    "run_worker",
]
