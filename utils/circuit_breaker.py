"""Circuit breaker guarding the worker pool.

States:
  CLOSED     — pool calls pass through.
  OPEN       — too many consecutive pool failures; callers skip the
               pool and match directly until the recovery timeout.
  HALF_OPEN  — recovery probe: exactly one call goes to the pool;
               its outcome closes or re-opens the circuit.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

from utils.logger import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected because the circuit is OPEN."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. "
            f"Retry after {retry_after:.1f}s."
        )


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Args:
        name:              Label used in logs and errors (e.g. 'worker-pool').
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout:  Seconds to stay OPEN before letting a probe through.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, pool_settings, name: str = "worker-pool") -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=pool_settings.breaker_failures,
            recovery_timeout=pool_settings.breaker_recovery_s,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._effective_state()

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def check(self) -> None:
        """
        Raise CircuitOpenError unless a call may go through.

        Once the recovery timeout has elapsed the first caller becomes
        the probe; others are rejected until the probe reports back via
        :meth:`record_success` or :meth:`record_failure`.
        """
        with self._lock:
            st = self._effective_state()
            if st == CircuitState.CLOSED:
                return
            if st == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                logger.info(f"Circuit '{self.name}' half-open: probing")
                return
            raise CircuitOpenError(self.name, self._retry_after())

    def allow(self) -> bool:
        """Non-raising form of :meth:`check`."""
        try:
            self.check()
        except CircuitOpenError:
            return False
        return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.success(f"Circuit '{self.name}' closed after successful probe")
            self._failure_count = 0
            self._state = CircuitState.CLOSED
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            probe_failed = self._state == CircuitState.HALF_OPEN
            self._probe_in_flight = False
            if probe_failed or self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN or probe_failed:
                    logger.warning(
                        f"Circuit '{self.name}' OPEN after {self._failure_count} failures; "
                        f"retry in {self.recovery_timeout:.1f}s"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()

    def release_trial(self) -> None:
        """
        Free the HALF_OPEN trial slot without recording an outcome.

        For a call admitted by :meth:`check` that ended without a verdict
        on the pool, e.g. because the caller was cancelled. The next
        caller gets the trial slot.
        """
        with self._lock:
            self._probe_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        """State summary for health reporting."""
        with self._lock:
            st = self._effective_state()
            return {
                "name": self.name,
                "state": st.value,
                "failures": self._failure_count,
                "retry_after": round(self._retry_after(), 1) if st == CircuitState.OPEN else 0.0,
            }

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    def _effective_state(self) -> CircuitState:
        """OPEN turns into HALF_OPEN once the recovery timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state
