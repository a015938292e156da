import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, Tuple

from event_engine.core.exceptions import CircuitOpenError

log = logging.getLogger("circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Sliding-window circuit breaker for one (event name, handler) pair.

    Closed: calls pass; failures older than the window are forgotten.
    Open: calls fail fast until the recovery timeout elapses.
    Half-open: exactly one trial call passes; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        key: str,
        threshold: int,
        window_ms: int,
        recovery_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.threshold = threshold
        self.window_s = window_ms / 1000.0
        self.recovery_s = recovery_ms / 1000.0
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self.state = CircuitState.CLOSED

    def _prune(self, now: float):
        while self._failures and now - self._failures[0] > self.window_s:
            self._failures.popleft()

    @property
    def failure_count(self) -> int:
        self._prune(self._clock())
        return len(self._failures)

    def before_call(self):
        """Raises CircuitOpenError when the call must not reach the handler."""
        now = self._clock()
        if self.state == CircuitState.OPEN:
            retry_at = self._opened_at + self.recovery_s
            if now < retry_at:
                raise CircuitOpenError(self.key, (retry_at - now) * 1000)
            self.state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            log.info(f"[Circuit Breaker] {self.key} - Moving to half-open state")

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.key, 0)
            self._trial_in_flight = True

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            self._trial_in_flight = False
            self._failures.clear()
            log.info(f"[Circuit Breaker] {self.key} - Circuit closed after successful recovery")

    def record_failure(self):
        now = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self._open(now)
            return

        self._failures.append(now)
        self._prune(now)
        if len(self._failures) >= self.threshold:
            self._open(now)

    def _open(self, now: float):
        self.state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        log.error(f"[Circuit Breaker] {self.key} - Circuit opened after {len(self._failures)} failures")


class CircuitBreakerRegistry:
    """Per-bus collection of breakers keyed by (event name, handler id)."""

    def __init__(self, threshold: int, window_ms: int, recovery_ms: int, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.window_ms = window_ms
        self.recovery_ms = recovery_ms
        self._clock = clock
        self._breakers: Dict[Tuple[str, str], CircuitBreaker] = {}

    def get(self, event_name: str, handler_id: str) -> CircuitBreaker:
        key = (event_name, handler_id)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                f"{event_name}/{handler_id}", self.threshold, self.window_ms, self.recovery_ms, clock=self._clock
            )
            self._breakers[key] = breaker
        return breaker

    def states(self) -> Dict[str, str]:
        return {breaker.key: breaker.state.value for breaker in self._breakers.values()}

    def reset(self):
        self._breakers.clear()
