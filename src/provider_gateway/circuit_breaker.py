"""Per-provider circuit breaker.

State machine:
    CLOSED -> (consecutive failures >= threshold) -> OPEN
    OPEN -> (is_available() called after reset timeout) -> HALF_OPEN
    HALF_OPEN / any -> (success) -> CLOSED
    HALF_OPEN -> (failure) -> OPEN

The OPEN -> HALF_OPEN transition happens lazily on read; there is no timer.
State lives in process memory and starts CLOSED on every restart.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from .metrics import circuit_breaker_events_total

log = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        name: str = "default",
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout_seconds = max(0.0, float(reset_timeout_seconds))
        self._clock: Callable[[], float] = clock or time.monotonic
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> float | None:
        return self._last_failure_at

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock() - self._last_failure_at > self.reset_timeout_seconds

    def is_available(self) -> bool:
        """False only while OPEN and still cooling down; may flip OPEN -> HALF_OPEN."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return True
            if not self._cooldown_elapsed():
                return False
            self._state = CircuitState.HALF_OPEN
        circuit_breaker_events_total.labels(provider=self.name, event="half_open").inc()
        log.info("circuit_breaker_half_open", provider=self.name)
        return True

    def retry_after_seconds(self) -> int | None:
        with self._lock:
            if self._state is not CircuitState.OPEN or self._last_failure_at is None:
                return None
            remaining = self.reset_timeout_seconds - (self._clock() - self._last_failure_at)
        if remaining <= 0:
            return None
        return max(1, math.ceil(remaining))

    def record_success(self) -> None:
        with self._lock:
            previous = self._state
            self._failure_count = 0
            self._state = CircuitState.CLOSED
        if previous is not CircuitState.CLOSED:
            circuit_breaker_events_total.labels(provider=self.name, event="close").inc()
            log.info("circuit_breaker_closed", provider=self.name, from_state=previous.value)

    def record_failure(self) -> None:
        with self._lock:
            previous = self._state
            self._failure_count += 1
            self._last_failure_at = self._clock()
            if self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
            failures = self._failure_count
            opened = self._state is CircuitState.OPEN and previous is not CircuitState.OPEN
        if opened:
            circuit_breaker_events_total.labels(provider=self.name, event="open").inc()
            log.warning("circuit_breaker_open", provider=self.name, failures=failures)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "reset_timeout_seconds": self.reset_timeout_seconds,
                "last_failure_at": self._last_failure_at,
            }
