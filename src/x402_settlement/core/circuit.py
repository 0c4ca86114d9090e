"""
Circuit breaker guarding calls to the facilitator.

After ``failure_threshold`` consecutive outages the circuit opens and calls
fail fast with :class:`CircuitOpenError` without touching the network. Once
``recovery_timeout`` seconds have passed the circuit is half-open: calls go
through again, ``success_threshold`` successes close it, and a single
failure opens it for another full timeout.

Only outages count as failures: transport errors and 5xx answers. A 4xx
answer means the facilitator is up and rejected the request, so it counts
as a success.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from .errors import CircuitOpenError, ConfigError, FacilitatorError

__all__ = [
    "CircuitBreaker",
    "CircuitState",
]

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _is_outage(exc: BaseException) -> bool:
    if isinstance(exc, FacilitatorError):
        return exc.status_code is None or exc.status_code >= 500
    return True


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        for name, value in (
            ("failure_threshold", failure_threshold),
            ("recovery_timeout", recovery_timeout),
            ("success_threshold", success_threshold),
        ):
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._open_until = 0.0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def retry_after(self) -> float:
        """Seconds until an open circuit lets calls through again."""
        with self._lock:
            if self._current_state() is not CircuitState.OPEN:
                return 0.0
            return max(self._open_until - self._clock(), 0.0)

    def _current_state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() >= self._open_until:
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logging.info("Facilitator circuit half-open, allowing trial calls")
        return self._state

    def call(self, func: Callable[[], T], *, operation: Optional[str] = None) -> T:
        """Run ``func`` unless the circuit is open, recording how it went."""
        with self._lock:
            if self._current_state() is CircuitState.OPEN:
                retry_after = max(self._open_until - self._clock(), 0.0)
                raise CircuitOpenError(
                    f"Facilitator circuit is open, retry in {retry_after:.0f}s",
                    operation=operation,
                    retry_after=retry_after,
                )
        try:
            result = func()
        except Exception as exc:
            if _is_outage(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            if self._current_state() is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._close()
            else:
                self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._failures += 1
            if state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._trip()

    def reset(self) -> None:
        with self._lock:
            self._close()

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._open_until = self._clock() + self.recovery_timeout
        self._successes = 0
        logging.warning(
            "Facilitator circuit opened after %s failures; retrying in %.0fs",
            self._failures,
            self.recovery_timeout,
        )

    def _close(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logging.info("Facilitator circuit closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
