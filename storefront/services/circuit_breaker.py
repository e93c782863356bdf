"""
ErrorRateBreaker - stops automated recovery when errors arrive too fast.

States:
- CLOSED: recovery is attempted for each error
- OPEN: more than ``max_errors`` errors inside the rolling window;
  recovery is suppressed

Transitions:
- CLOSED → OPEN: an error pushes the in-window count above max_errors
- OPEN → CLOSED: enough errors age out of the window
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "CLOSED"  # Recovery enabled
    OPEN = "OPEN"  # Recovery suppressed


@dataclass
class ErrorRateConfig:
    """Configuration for the error-rate breaker."""

    max_errors: int = 5  # Errors tolerated inside the window
    window: timedelta = timedelta(seconds=60)


class ErrorRateBreaker:
    """
    Rolling-window error counter.

    Usage:
        breaker = ErrorRateBreaker()

        if breaker.record_error():
            # just tripped: show one critical notice
            ...
        if breaker.state == CircuitState.OPEN:
            return  # skip recovery
    """

    def __init__(
        self,
        config: ErrorRateConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ErrorRateConfig()
        self._clock = clock
        self._errors: deque[datetime] = deque()
        self._state = CircuitState.CLOSED
        self._opened_at: datetime | None = None
        self._last_error_time: datetime | None = None
        self._trips = 0

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.config.window
        while self._errors and self._errors[0] <= cutoff:
            self._errors.popleft()

    @property
    def state(self) -> CircuitState:
        """Current state, closing automatically once the window has drained."""
        if self._state == CircuitState.OPEN:
            self._prune(self._clock())
            if len(self._errors) <= self.config.max_errors:
                self._close()
        return self._state

    @property
    def error_count(self) -> int:
        """Errors inside the current window."""
        self._prune(self._clock())
        return len(self._errors)

    def record_error(self) -> bool:
        """Count one error. Returns True only on the CLOSED → OPEN transition."""
        now = self._clock()
        self._prune(now)
        self._errors.append(now)
        self._last_error_time = now

        if self.state == CircuitState.CLOSED and len(self._errors) > self.config.max_errors:
            self._open(now)
            return True
        return False

    def _open(self, now: datetime) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trips += 1
        logger.warning(
            f"Error-rate breaker OPENED after {len(self._errors)} errors "
            f"in {self.config.window.total_seconds():.0f}s"
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._opened_at = None
        logger.info("Error-rate breaker CLOSED (error rate back to normal)")

    def reset(self) -> None:
        """Manually reset the breaker."""
        self._errors.clear()
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._last_error_time = None
        logger.info("Error-rate breaker manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "state": self.state.value,
            "error_count": self.error_count,
            "max_errors": self.config.max_errors,
            "window_seconds": self.config.window.total_seconds(),
            "trips": self._trips,
            "last_error": (
                self._last_error_time.isoformat() if self._last_error_time else None
            ),
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
        }
