"""Unit tests for utils.circuit_breaker."""

from __future__ import annotations

import time

import pytest

from config.settings import WorkerPoolSettings
from utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class TestCircuitBreaker:

    def test_starts_closed(self):
        breaker = CircuitBreaker("t")
        assert breaker.state == CircuitState.CLOSED
        breaker.check()

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("t", failure_threshold=3, recovery_timeout=60.0)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.check()
        assert exc_info.value.name == "t"
        assert 0 < exc_info.value.retry_after <= 60.0

    def test_success_resets_count(self):
        breaker = CircuitBreaker("t", failure_threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_half_open_lets_one_call_through(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0.01)
        breaker.record_failure()
        time.sleep(0.02)
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.check()
        assert breaker.allow() is False

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow() is True

    def test_failed_trial_reopens(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0.01)
        breaker.record_failure()
        time.sleep(0.02)
        breaker.check()
        breaker.record_failure()
        assert breaker._state == CircuitState.OPEN

    def test_release_trial_admits_next_caller(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0.01)
        breaker.record_failure()
        time.sleep(0.02)
        breaker.check()
        assert breaker.allow() is False

        breaker.release_trial()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.failure_count == 1
        assert breaker.allow() is True

    def test_reset(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=60.0)
        breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_snapshot(self):
        breaker = CircuitBreaker("pool", failure_threshold=1, recovery_timeout=60.0)
        assert breaker.snapshot() == {"name": "pool", "state": "closed", "failures": 0, "retry_after": 0.0}
        breaker.record_failure()
        snap = breaker.snapshot()
        assert snap["state"] == "open"
        assert snap["retry_after"] > 0

    def test_from_settings(self):
        breaker = CircuitBreaker.from_settings(
            WorkerPoolSettings(breaker_failures=7, breaker_recovery_s=12.5)
        )
        assert breaker.name == "worker-pool"
        assert breaker.failure_threshold == 7
        assert breaker.recovery_timeout == 12.5

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("t", failure_threshold=0)
