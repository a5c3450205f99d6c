"""Process-wide handle on source telemetry and circuit breakers.

Built once at startup and passed to the aggregator and the ops endpoints.
A single lock guards both structures so that recording an outcome and the
breaker transition it causes are one read-decide-write step, even when sync
FastAPI handlers run on the threadpool.
"""
import logging
import threading
from typing import Dict, Iterable, Optional

from engine.circuit_breaker import BreakerConfig, BreakerState, CircuitBreakerRegistry
from engine.clock import Clock, SystemClock
from engine.telemetry import TelemetryRecorder, TelemetryToken

logger = logging.getLogger(__name__)


class SignalRegistry:
    def __init__(
        self,
        sources: Iterable[str] = (),
        breaker_config: Optional[BreakerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.clock = clock or SystemClock()
        self.telemetry = TelemetryRecorder(self.clock)
        self.breakers = CircuitBreakerRegistry(breaker_config, self.clock)
        self._lock = threading.Lock()
        for name in sources:
            self.breakers.register(name)

    def register(self, source: str) -> None:
        with self._lock:
            self.breakers.register(source)

    def should_attempt(self, source: str) -> bool:
        with self._lock:
            return self.breakers.should_attempt(source)

    def start(self, source: str) -> TelemetryToken:
        return self.telemetry.start(source)

    def elapsed_ms(self, token: TelemetryToken) -> float:
        return self.telemetry.elapsed_ms(token)

    def record(self, source: str, ok: bool, timed_out: bool, elapsed_ms: float) -> None:
        with self._lock:
            self.telemetry.end(source, ok=ok, timed_out=timed_out, elapsed_ms=elapsed_ms)
            if ok:
                self.breakers.record_success(source)
            else:
                self.breakers.record_failure(source)

    def get_states(self) -> Dict[str, BreakerState]:
        with self._lock:
            return self.breakers.get_states()

    def get_all_metrics(self) -> Dict[str, Dict]:
        with self._lock:
            return self.telemetry.get_all_metrics()

    def knows(self, source: str) -> bool:
        with self._lock:
            return self.breakers.knows(source)

    def reset(self, source: str) -> None:
        with self._lock:
            self.breakers.reset(source)

    def abandon(self, source: str) -> None:
        with self._lock:
            self.breakers.abandon_trial(source)

    def clear_telemetry(self) -> None:
        with self._lock:
            self.telemetry.clear()
