"""Per-source call telemetry: success/timeout rates, p95 latency, last success.

Counters are plain in-memory values. The recorder itself does no locking;
SignalRegistry serializes access so that a telemetry update and the breaker
decision it triggers happen in one critical section.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from engine.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

RESPONSE_TIME_CAPACITY = 100


class ResponseTimeBuffer:
    """Fixed-capacity circular buffer of latencies; oldest sample is overwritten first."""

    def __init__(self, capacity: int = RESPONSE_TIME_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._slots: List[float] = [0.0] * capacity
        self._capacity = capacity
        self._next = 0
        self._size = 0

    def append(self, value: float) -> None:
        self._slots[self._next] = value
        self._next = (self._next + 1) % self._capacity
        if self._size < self._capacity:
            self._size += 1

    def values(self) -> List[float]:
        """Samples in insertion order, oldest first."""
        if self._size < self._capacity:
            return self._slots[: self._size]
        return self._slots[self._next:] + self._slots[: self._next]

    def __len__(self) -> int:
        return self._size


def nearest_rank_p95(samples: List[float]) -> float:
    """Nearest-rank 95th percentile; a rank landing exactly on .5 rounds down (10 samples -> 9th)."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    rank = math.ceil(0.95 * len(ordered) - 0.5)
    return ordered[max(rank, 1) - 1]


@dataclass
class TelemetrySample:
    total_calls: int = 0
    success_calls: int = 0
    timeout_calls: int = 0
    response_times: ResponseTimeBuffer = field(default_factory=ResponseTimeBuffer)
    success_rate: float = 0.0
    timeout_rate: float = 0.0
    p95_ms: float = 0.0
    last_ok_ts: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "total_calls": self.total_calls,
            "success_calls": self.success_calls,
            "timeout_calls": self.timeout_calls,
            "response_times": list(self.response_times.values()),
            "success_rate": self.success_rate,
            "timeout_rate": self.timeout_rate,
            "p95_ms": self.p95_ms,
            "last_ok_ts": _iso(self.last_ok_ts),
        }


@dataclass(frozen=True)
class TelemetryToken:
    source: str
    started_at_ms: float


def _iso(ts_ms: Optional[float]) -> Optional[str]:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat()


class TelemetryRecorder:
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._samples: Dict[str, TelemetrySample] = {}

    def start(self, source: str) -> TelemetryToken:
        return TelemetryToken(source=source, started_at_ms=self._clock.now_ms())

    def elapsed_ms(self, token: TelemetryToken) -> float:
        return max(0.0, self._clock.now_ms() - token.started_at_ms)

    def end(self, source: str, ok: bool, timed_out: bool, elapsed_ms: float) -> TelemetrySample:
        sample = self._samples.setdefault(source, TelemetrySample())
        sample.total_calls += 1
        if ok:
            sample.success_calls += 1
            sample.last_ok_ts = self._clock.now_ms()
        if timed_out:
            sample.timeout_calls += 1
        sample.response_times.append(float(elapsed_ms))

        sample.success_rate = sample.success_calls / sample.total_calls
        sample.timeout_rate = sample.timeout_calls / sample.total_calls
        sample.p95_ms = nearest_rank_p95(sample.response_times.values())
        return sample

    def get_metrics(self, source: str) -> Optional[Dict]:
        sample = self._samples.get(source)
        return sample.to_dict() if sample else None

    def get_all_metrics(self) -> Dict[str, Dict]:
        return {name: sample.to_dict() for name, sample in self._samples.items()}

    def clear(self, source: Optional[str] = None) -> None:
        if source is None:
            self._samples.clear()
        else:
            self._samples.pop(source, None)
        logger.info("Telemetry cleared for %s", source or "all sources")
