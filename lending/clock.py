"""
clock.py - Clock Sources

ManualClock drives simulations and tests; SystemClock reads wall time.
Both return integer seconds.
"""

from __future__ import annotations
import time

from .core import InvalidTimestamp


class ManualClock:
    """
    Logical clock that only moves forward.

    Example:
        clock = ManualClock(1_700_000_000)
        clock.advance(3600)
    """

    def __init__(self, start: int = 0):
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        """Move forward by `seconds` and return the new time."""
        if seconds < 0:
            raise InvalidTimestamp(f"Cannot move time backwards by {seconds}s")
        self._now += seconds
        return self._now

    def set(self, new_time: int) -> None:
        if new_time < self._now:
            raise InvalidTimestamp(f"Cannot move time backwards: {new_time} < {self._now}")
        self._now = new_time

    def __repr__(self):
        return f"ManualClock({self._now})"


class SystemClock:
    def now(self) -> int:
        return int(time.time())
