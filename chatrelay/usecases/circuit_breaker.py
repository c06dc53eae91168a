"""
Circuit breaker protecting calls to the AI backend.

States:
- closed: normal operation, calls pass
- open: backend considered down, calls are blocked
- half_open: reset window elapsed, the next call is let through as a probe

There is no background timer. The open -> half_open transition happens when
can_execute() observes that the reset window has elapsed, so callers must
ask before every protected attempt.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    state: BreakerState = BreakerState.CLOSED


class CircuitBreaker:
    """Failure counter with lazy open/half-open/closed transitions."""

    def __init__(
        self,
        name: str = "ai-backend",
        failure_threshold: int = 5,
        reset_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_window = reset_window
        self._clock = clock
        self._state = CircuitBreakerState()

    @property
    def state(self) -> BreakerState:
        return self._state.state

    def can_execute(self) -> bool:
        """
        Decide whether a protected call may proceed.

        Returns:
            True if the call may be attempted
        """
        current = self._state

        if current.state == BreakerState.CLOSED:
            return True

        if current.state == BreakerState.OPEN:
            elapsed = self._clock() - (current.last_failure_at or 0.0)
            if elapsed > self.reset_window:
                current.state = BreakerState.HALF_OPEN
                logger.info(f"Circuit '{self.name}' half-open after {elapsed:.1f}s, allowing probe")
                return True
            return False

        return True

    def record_success(self) -> None:
        if self._state.state != BreakerState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed after successful call")
        self._state.failure_count = 0
        self._state.state = BreakerState.CLOSED

    def record_failure(self) -> None:
        current = self._state
        current.failure_count += 1
        current.last_failure_at = self._clock()

        if current.failure_count >= self.failure_threshold:
            if current.state != BreakerState.OPEN:
                logger.warning(
                    f"Circuit '{self.name}' opened after {current.failure_count} failures"
                )
            current.state = BreakerState.OPEN

    def snapshot(self) -> CircuitBreakerState:
        """Copy of the current state, for logging and status endpoints."""
        return replace(self._state)

    def reset(self) -> None:
        self._state = CircuitBreakerState()
