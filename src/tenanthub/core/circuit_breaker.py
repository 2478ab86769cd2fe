"""Circuit breaker for calls to the fleet runner.

States:
- CLOSED: calls pass through, consecutive failures are counted
- OPEN: calls are rejected until ``timeout`` has elapsed
- HALF_OPEN: probe calls pass; enough successes close the circuit again

Breakers are process-wide singletons keyed by name.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

from tenanthub.app.metrics.collector import (
    CIRCUIT_BREAKER_CALLS_TOTAL,
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    CIRCUIT_BREAKER_STATE,
)
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_STATE_GAUGE = {"closed": 0, "half_open": 1, "open": 2}


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when the circuit is open and the call is rejected."""

    def __init__(self, service: str, retry_after: float) -> None:
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {service}, retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Counts consecutive failures of one upstream and short-circuits it.

    Args:
        name: Breaker name, used as the metric label
        failure_threshold: Consecutive failures that open the circuit
        success_threshold: Half-open successes that close it
        timeout: Seconds spent open before probing
        error_classifier: Returns 'permanent', 'retryable' or 'unknown';
            permanent errors are the caller's fault and are not counted
        clock: Monotonic time source
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        error_classifier: Callable[[Exception], str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self._error_classifier = error_classifier
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _set_state(self, state: CircuitState, **fields: object) -> None:
        logger.info(
            "Circuit %s -> %s",
            self._state.value,
            state.value,
            extra={"event": LogEvent.STATE_CHANGED, "circuit": self.name, **fields},
        )
        self._state = state
        CIRCUIT_BREAKER_STATE.labels(circuit=self.name).set(_STATE_GAUGE[state.value])

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.timeout - (self._clock() - self._opened_at))

    async def call[T](self, coro_factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``coro_factory()`` unless the circuit is open.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        async with self._lock:
            if self._state == CircuitState.OPEN and self._retry_after() == 0.0:
                self._successes = 0
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.OPEN:
                retry_after = self._retry_after()
                CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(circuit=self.name).inc()
                logger.warning(
                    "Circuit open, rejecting call",
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "circuit": self.name,
                        "retry_after": retry_after,
                    },
                )
                raise CircuitOpenError(self.name, retry_after)

        try:
            result = await coro_factory()
        except Exception as exc:
            CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="failure").inc()
            if self._error_classifier and self._error_classifier(exc) == "permanent":
                raise
            await self._record_failure()
            raise

        CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="success").inc()
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._failures = 0
                    self._opened_at = None
                    self._set_state(CircuitState.CLOSED, success_count=self._successes)
            else:
                self._failures = 0

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                self._opened_at = self._clock()
                self._set_state(CircuitState.OPEN, failure_count=self._failures)


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str = "default",
    error_classifier: Callable[[Exception], str] | None = None,
) -> CircuitBreaker:
    """Get or create the breaker called ``name``.

    ``error_classifier`` only applies when the breaker is first created.
    """
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name=name, error_classifier=error_classifier)
    return _circuit_breakers[name]


def reset_all_circuit_breakers() -> None:
    """Forget every breaker (tests)."""
    _circuit_breakers.clear()
