"""Millisecond clocks used by the breaker, cache and health tracking."""
import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> float: ...


class SystemClock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> float:
        return time.time() * 1000


class ManualClock:
    """Clock that only moves when told to. Used to fast-forward backoff and TTLs."""

    def __init__(self, start_ms: float = 1_700_000_000_000):
        self._now = float(start_ms)

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> None:
        if ms < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += ms
