"""Monotonic logical clock for last-modified timestamps."""

import threading
import time
from typing import Callable, Optional


def wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class LogicalClock:
    """
    Epoch-millisecond timestamps that never go backwards.

    Each call returns a value strictly greater than the previous one, even if
    the wall clock stalls or steps back. `observe` pulls the clock forward
    past timestamps seen from other nodes, so later local stamps sort after
    them.
    """

    def __init__(self, time_source: Optional[Callable[[], int]] = None):
        self._source = time_source or wall_clock_ms
        self._last = 0
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            self._last = max(self._source(), self._last + 1)
            return self._last

    def observe(self, timestamp: int) -> None:
        with self._lock:
            self._last = max(self._last, timestamp)
