"""Clock abstraction for age and window timing.

Buffers and aggregators read time through a Clock so tests can inject
MockClock and step time deterministically.
"""

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source in seconds."""

    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by time.monotonic()."""

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Manually advanced clock for tests.

    Example:
        clock = MockClock(start=100.0)
        clock.advance(2.5)
        assert clock.monotonic() == 102.5
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        """Move time forward."""
        if seconds < 0:
            raise ValueError(f"Cannot move clock backwards by {seconds}s")
        with self._lock:
            self._now += seconds

    def set(self, now: float) -> None:
        with self._lock:
            self._now = now


DEFAULT_CLOCK: Clock = SystemClock()
