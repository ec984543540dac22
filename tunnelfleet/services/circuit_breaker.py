"""
Circuit breaker for control-plane calls.

After ``failure_threshold`` consecutive failed reports the agent stops
contacting the control plane for ``recovery_timeout`` seconds, then lets a
single trial report through.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from tunnelfleet.core.logging import tunnel_logger


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"        # reports go through
    OPEN = "open"            # reports are skipped
    HALF_OPEN = "half_open"  # one trial report decides


class CircuitBreakerException(Exception):
    """Raised instead of calling through while the breaker is open."""

    def __init__(self, service_name: str, failure_count: int, retry_in: float = 0.0):
        self.service_name = service_name
        self.failure_count = failure_count
        self.retry_in = retry_in
        super().__init__(
            f"{service_name} unavailable after {failure_count} failure(s), "
            f"next attempt in {retry_in:.0f}s"
        )


class CircuitBreaker:
    def __init__(
        self,
        service_name: str = "control-plane",
        failure_threshold: int = 3,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self._state = CircuitBreakerState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    def retry_in(self) -> float:
        """Seconds until an open breaker lets a trial call through."""
        if self._opened_at is None:
            return 0.0
        return max(self._opened_at + self.recovery_timeout - time.monotonic(), 0.0)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``func`` unless the breaker is open.

        Raises CircuitBreakerException while open; any error from ``func``
        is counted and re-raised unchanged.
        """
        # Created lazily so the breaker can be built outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            if not self._admit():
                raise CircuitBreakerException(self.service_name, self._failures, self.retry_in())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            async with self._lock:
                self._record_failure(e)
            raise

        async with self._lock:
            self._record_success()
        return result

    def _admit(self) -> bool:
        if self._state != CircuitBreakerState.OPEN:
            return True
        if self.retry_in() > 0:
            return False
        self._state = CircuitBreakerState.HALF_OPEN
        self._trial_successes = 0
        tunnel_logger.info(f"Trying {self.service_name} again after {self._failures} failure(s)")
        return True

    def _record_failure(self, error: Exception) -> None:
        self._failures += 1
        self._last_error = str(error) or type(error).__name__
        tripped = (
            self._state == CircuitBreakerState.HALF_OPEN
            or self._failures >= self.failure_threshold
        )
        if tripped and self._state != CircuitBreakerState.OPEN:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = time.monotonic()
            tunnel_logger.warning(
                f"{self.service_name} unreachable ({self._last_error}), "
                f"pausing reports for {self.recovery_timeout}s"
            )

    def _record_success(self) -> None:
        if self._state == CircuitBreakerState.HALF_OPEN:
            self._trial_successes += 1
            if self._trial_successes < self.success_threshold:
                return
            tunnel_logger.info(f"{self.service_name} reachable again")
        self._state = CircuitBreakerState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._last_error = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "last_error": self._last_error,
            "retry_in": round(self.retry_in(), 1) if self.is_open() else None,
        }
