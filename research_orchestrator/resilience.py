"""
Retry backoff and provider circuit breaker.

Transient provider failures are retried per job with exponential backoff
(1s doubling, capped at 60s). Consecutive failures across jobs trip the
circuit; while it is open new work is deferred instead of attempted.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from shared.logging import get_logger

from .clock import Clock
from .config import RetryConfig
from .models import Admission

log = get_logger("research", "resilience")


def backoff_delay_ms(attempt: int, base_ms: int = 1000, cap_ms: int = 60000) -> int:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # Avoid building huge ints for large attempt numbers
    if attempt >= 32:
        return cap_ms
    return min(base_ms * (2 ** attempt), cap_ms)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for the research provider.

    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `reset_seconds` have passed; one trial call
    is then allowed. Success closes the circuit, failure re-opens it.
    """

    def __init__(self, clock: Clock, failure_threshold: int = 5, reset_seconds: float = 300.0):
        self.clock = clock
        self.failure_threshold = failure_threshold
        self.reset_timeout = timedelta(seconds=reset_seconds)

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[datetime] = None
        self._trial_in_flight = False
        self.times_opened = 0

    @classmethod
    def from_config(cls, clock: Clock, config: RetryConfig) -> "CircuitBreaker":
        return cls(
            clock,
            failure_threshold=config.circuit_failure_threshold,
            reset_seconds=config.circuit_reset_seconds,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def refresh(self) -> CircuitState:
        """Move OPEN to HALF_OPEN once the reset timeout has passed."""
        if (self._state == CircuitState.OPEN
                and self.clock.now() - self._opened_at >= self.reset_timeout):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            log.info("research.resilience.circuit_half_open")
        return self._state

    def authorize(self) -> Admission:
        """Admission check used before creating new work."""
        state = self.refresh()
        if state == CircuitState.OPEN:
            return Admission.defer("Provider circuit open", source="circuit")
        if state == CircuitState.HALF_OPEN and self._trial_in_flight:
            return Admission.defer("Provider circuit open", source="circuit")
        return Admission.allow()

    def allow_call(self) -> bool:
        """Whether a provider call may go out now. Claims the half-open trial."""
        state = self.refresh()
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def release_trial(self):
        """Give back a half-open trial whose call never produced an outcome."""
        if self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
            self._trial_in_flight = False
            log.info("research.resilience.trial_released")

    def record_success(self):
        if self._state != CircuitState.CLOSED:
            log.info("research.resilience.circuit_closed")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self):
        self._consecutive_failures += 1

        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return

        if (self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold):
            self._open()

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self.clock.now()
        self._trial_in_flight = False
        self.times_opened += 1
        log.error("research.resilience.circuit_opened",
                  consecutive_failures=self._consecutive_failures,
                  reset_seconds=self.reset_timeout.total_seconds())

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
            "times_opened": self.times_opened,
        }
