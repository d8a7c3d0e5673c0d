"""Circuit breaker for calls to the remote health-records API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from healthsync.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Trial call allowed


@dataclass
class CircuitBreaker:
    """Stops calling a failing dependency for a cooldown period.

    Opens after ``failure_threshold`` consecutive failed calls. Once the
    cooldown has elapsed, one trial call is let through (half-open): success
    closes the circuit, failure re-opens it.
    """

    name: str = "api"
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float | None = None
    _trial_in_flight: bool = field(default=False, repr=False)

    def before_call(self) -> None:
        """Gate a call.

        Raises:
            CircuitOpenError: If the circuit is open (or a half-open trial is
                already in flight). No I/O must be attempted.
        """
        if self.state == CircuitState.CLOSED:
            return

        if self.state == CircuitState.OPEN:
            elapsed = self.clock() - (self.opened_at or 0.0)
            if elapsed < self.cooldown_seconds:
                raise CircuitOpenError(self.name, self.cooldown_seconds - elapsed)
            self.state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit %s: cooldown elapsed, state -> HALF_OPEN", self.name)

        if self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True

    def record_success(self) -> None:
        self.failure_count = 0
        self._trial_in_flight = False
        if self.state != CircuitState.CLOSED:
            self.state = CircuitState.CLOSED
            self.opened_at = None
            logger.info("Circuit %s: recovered, state -> CLOSED", self.name)

    def record_failure(self) -> None:
        self.failure_count += 1
        self._trial_in_flight = False

        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning("Circuit %s: trial call failed, state -> OPEN", self.name)
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()
            logger.warning(
                "Circuit %s: %d consecutive failures, state -> OPEN",
                self.name,
                self.failure_count,
            )

    def release(self) -> None:
        """Free the half-open trial slot once a gated call has ended. Idempotent."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self.clock()
