"""Per-source circuit breakers with exponential backoff.

closed -> open after `failure_threshold` consecutive failures.
open -> half-open on the first request after `backoff_ms` has elapsed.
half-open lets exactly one trial call through: success closes the breaker and
resets the backoff, failure reopens it with the backoff doubled (capped).

Transitions depend only on the injected clock and recorded outcomes.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from engine.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 10
    base_backoff_ms: float = 500
    max_backoff_ms: float = 5 * 60 * 1000

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.base_backoff_ms <= 0:
            raise ValueError("base_backoff_ms must be positive")
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")

    @classmethod
    def from_env(cls) -> "BreakerConfig":
        return cls(
            failure_threshold=int(os.getenv("SIGNALS_CB_FAILURE_THRESHOLD", "10")),
            base_backoff_ms=float(os.getenv("SIGNALS_CB_BASE_BACKOFF_MS", "500")),
            max_backoff_ms=float(os.getenv("SIGNALS_CB_MAX_BACKOFF_MS", "300000")),
        )


@dataclass
class BreakerState:
    state: BreakerStatus
    failure_count: int
    backoff_ms: float
    opened_at: Optional[float] = None
    trial_in_flight: bool = False

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "backoffMs": self.backoff_ms,
            "failureCount": self.failure_count,
            "openedAt": self.opened_at,
        }


class CircuitBreakerRegistry:
    """One breaker per source name, created lazily on first use."""

    def __init__(self, config: Optional[BreakerConfig] = None, clock: Optional[Clock] = None):
        self.config = config or BreakerConfig()
        self._clock = clock or SystemClock()
        self._breakers: Dict[str, BreakerState] = {}

    def _get(self, source: str) -> BreakerState:
        breaker = self._breakers.get(source)
        if breaker is None:
            breaker = BreakerState(
                state=BreakerStatus.CLOSED,
                failure_count=0,
                backoff_ms=self.config.base_backoff_ms,
            )
            self._breakers[source] = breaker
        return breaker

    def register(self, source: str) -> None:
        self._get(source)

    def should_attempt(self, source: str) -> bool:
        breaker = self._get(source)

        if breaker.state == BreakerStatus.CLOSED:
            return True

        if breaker.state == BreakerStatus.OPEN:
            elapsed = self._clock.now_ms() - (breaker.opened_at or 0)
            if elapsed < breaker.backoff_ms:
                return False
            breaker.state = BreakerStatus.HALF_OPEN
            breaker.trial_in_flight = True
            logger.info("Circuit breaker %s: OPEN -> HALF_OPEN after %.0fms", source, elapsed)
            return True

        # half-open: the single trial call is already out
        if breaker.trial_in_flight:
            return False
        breaker.trial_in_flight = True
        return True

    def record_success(self, source: str) -> None:
        breaker = self._get(source)
        if breaker.state == BreakerStatus.HALF_OPEN:
            breaker.state = BreakerStatus.CLOSED
            breaker.failure_count = 0
            breaker.backoff_ms = self.config.base_backoff_ms
            breaker.opened_at = None
            breaker.trial_in_flight = False
            logger.info("Circuit breaker %s: HALF_OPEN -> CLOSED", source)
        elif breaker.state == BreakerStatus.CLOSED:
            breaker.failure_count = 0

    def record_failure(self, source: str) -> None:
        breaker = self._get(source)
        now = self._clock.now_ms()

        if breaker.state == BreakerStatus.HALF_OPEN:
            breaker.state = BreakerStatus.OPEN
            breaker.backoff_ms = min(breaker.backoff_ms * 2, self.config.max_backoff_ms)
            breaker.opened_at = now
            breaker.trial_in_flight = False
            logger.warning(
                "Circuit breaker %s: HALF_OPEN -> OPEN (backoff %.0fms)", source, breaker.backoff_ms
            )
        elif breaker.state == BreakerStatus.CLOSED:
            breaker.failure_count += 1
            if breaker.failure_count >= self.config.failure_threshold:
                breaker.state = BreakerStatus.OPEN
                breaker.backoff_ms = self.config.base_backoff_ms
                breaker.opened_at = now
                logger.warning(
                    "Circuit breaker %s: CLOSED -> OPEN (failures=%d, threshold=%d)",
                    source, breaker.failure_count, self.config.failure_threshold,
                )

    def abandon_trial(self, source: str) -> None:
        """Release a half-open trial whose caller went away before reporting an outcome."""
        breaker = self._get(source)
        if breaker.state == BreakerStatus.HALF_OPEN and breaker.trial_in_flight:
            breaker.trial_in_flight = False
            logger.info("Circuit breaker %s: half-open trial abandoned", source)

    def get_states(self) -> Dict[str, BreakerState]:
        return {
            name: BreakerState(
                state=b.state,
                failure_count=b.failure_count,
                backoff_ms=b.backoff_ms,
                opened_at=b.opened_at,
                trial_in_flight=b.trial_in_flight,
            )
            for name, b in self._breakers.items()
        }

    def get_state(self, source: str) -> BreakerStatus:
        return self._get(source).state

    def knows(self, source: str) -> bool:
        return source in self._breakers

    def reset(self, source: str) -> None:
        self._breakers[source] = BreakerState(
            state=BreakerStatus.CLOSED,
            failure_count=0,
            backoff_ms=self.config.base_backoff_ms,
        )
        logger.info("Circuit breaker %s: manually reset to CLOSED", source)
