"""
Circuit breaker for the image scoring service.
Stops sending inspection photos to the scoring service while it keeps failing,
so submissions fall back to a provisional score immediately instead of waiting
out the request timeout each time.
"""
import time
import threading
import logging
from typing import Callable, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Probing whether the service recovered


class CircuitBreaker:
    """
    Circuit breaker that opens when the failure rate in a sliding window
    exceeds a threshold.

    The clock is injectable so tests can move time without sleeping.
    """

    def __init__(
        self,
        error_threshold: float = 0.5,
        window_duration: float = 60.0,
        cooldown_duration: float = 30.0,
        half_open_max_attempts: int = 1,
        min_errors_to_open: int = 5,
        min_requests: int = 5,
        name: str = "scoring",
        time_func: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            error_threshold: Failure rate that opens the circuit (0.5 = 50%)
            window_duration: Seconds of history used for the failure rate
            cooldown_duration: Seconds to stay open before probing
            half_open_max_attempts: Successful probes needed to close again
            min_errors_to_open: Minimum absolute failures required before opening
            min_requests: Minimum requests in the window before the rate counts
            name: Name for logging
            time_func: Monotonic clock
        """
        self.error_threshold = error_threshold
        self.window_duration = window_duration
        self.cooldown_duration = cooldown_duration
        self.half_open_max_attempts = half_open_max_attempts
        self.min_errors_to_open = min_errors_to_open
        self.min_requests = min_requests
        self.name = name
        self._time = time_func

        self.state = CircuitState.CLOSED
        self.error_count = 0
        self.success_count = 0
        self.total_requests = 0
        self.window_start = self._time()
        self.open_until: Optional[float] = None
        self.half_open_successes = 0

        self._lock = threading.Lock()

        logger.info(
            f"Circuit breaker '{name}' initialized: "
            f"threshold={error_threshold*100:.1f}%, "
            f"min_errors={min_errors_to_open}, "
            f"window={window_duration}s, "
            f"cooldown={cooldown_duration}s"
        )

    def record_success(self):
        """Record a successful scoring call."""
        with self._lock:
            self._check_window_reset()
            self.total_requests += 1
            self.success_count += 1

            if self.state == CircuitState.HALF_OPEN:
                self.half_open_successes += 1
                if self.half_open_successes >= self.half_open_max_attempts:
                    self._close()
                    logger.info(f"Circuit breaker '{self.name}' CLOSED: service recovered")

    def record_error(self):
        """Record a failed scoring call (timeout, transport error, error payload)."""
        with self._lock:
            self._check_window_reset()
            self.total_requests += 1
            self.error_count += 1

            if self.state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning(
                    f"Circuit breaker '{self.name}' OPEN: probe failed in half-open state"
                )
                return

            self._check_threshold()

    def can_proceed(self) -> bool:
        """Return True when a call may be attempted."""
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.open_until is not None and self._time() >= self.open_until:
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_successes = 0
                    logger.info(
                        f"Circuit breaker '{self.name}' HALF_OPEN: probing service"
                    )
                    return True
                return False
            return True

    def _open(self):
        self.state = CircuitState.OPEN
        self.open_until = self._time() + self.cooldown_duration
        self.half_open_successes = 0

    def _close(self):
        self.state = CircuitState.CLOSED
        self.open_until = None
        self.half_open_successes = 0
        self.error_count = 0
        self.success_count = 0
        self.total_requests = 0
        self.window_start = self._time()

    def _check_threshold(self):
        if self.state == CircuitState.OPEN or self.total_requests < self.min_requests:
            return

        error_rate = self.error_count / self.total_requests
        if error_rate >= self.error_threshold and self.error_count >= self.min_errors_to_open:
            self._open()
            logger.warning(
                f"Circuit breaker '{self.name}' OPEN: "
                f"error rate {error_rate*100:.1f}% >= threshold {self.error_threshold*100:.1f}% "
                f"({self.error_count}/{self.total_requests} errors)"
            )

    def _check_window_reset(self):
        if self._time() - self.window_start > self.window_duration:
            logger.debug(
                f"Circuit breaker '{self.name}': resetting window "
                f"(errors: {self.error_count}/{self.total_requests})"
            )
            self.error_count = 0
            self.success_count = 0
            self.total_requests = 0
            self.window_start = self._time()

    def get_state(self) -> CircuitState:
        with self._lock:
            return self.state

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        with self._lock:
            error_rate = self.error_count / self.total_requests if self.total_requests else 0.0
            return {
                "state": self.state.value,
                "error_count": self.error_count,
                "success_count": self.success_count,
                "total_requests": self.total_requests,
                "error_rate": error_rate,
                "window_elapsed": self._time() - self.window_start,
            }

    def reset(self):
        """Manually reset circuit breaker to CLOSED state."""
        with self._lock:
            self._close()
            logger.info(f"Circuit breaker '{self.name}' manually reset")
