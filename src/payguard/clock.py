"""Time sources. The engine reads the clock once per call; it never sleeps."""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall clock in whole unix seconds, never moving backwards."""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            self._last = max(self._last, int(time.time()))
            return self._last


class ManualClock:
    """Clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        self._now += int(seconds)
        return self._now

    def set(self, timestamp: int) -> int:
        if timestamp < self._now:
            raise ValueError("Clock cannot move backwards")
        self._now = int(timestamp)
        return self._now
