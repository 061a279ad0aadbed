"""
Concurrency control for scoring-service calls.
Limits how many inspection photos are in flight to the scoring service at once.
"""
import threading
import logging
from contextlib import contextmanager
from typing import Optional

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Semaphore wrapper that counts in-flight calls for diagnostics."""

    def __init__(self, max_concurrent: int = 4, name: str = "scoring"):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.name = name
        self._semaphore = threading.Semaphore(max_concurrent)
        self._lock = threading.Lock()
        self._in_flight = 0
        logger.info(f"Concurrency guard '{name}' initialized: max {max_concurrent} concurrent calls")

    @contextmanager
    def slot(self, timeout: Optional[float] = None):
        """
        Hold one slot for the duration of the block.

        Usage:
            with guard.slot(timeout=5) as acquired:
                if acquired:
                    transport.generate(...)

        Yields False when no slot became free within ``timeout``.
        """
        acquired = self._semaphore.acquire(timeout=timeout) if timeout is not None else self._semaphore.acquire()
        if not acquired:
            logger.warning(f"Concurrency guard '{self.name}': no free slot within {timeout}s")
            yield False
            return
        with self._lock:
            self._in_flight += 1
        try:
            yield True
        finally:
            with self._lock:
                self._in_flight -= 1
            self._semaphore.release()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def get_stats(self) -> dict:
        return {
            "max_concurrent": self.max_concurrent,
            "in_flight": self.in_flight,
        }
