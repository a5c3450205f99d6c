"""Ops health report over source telemetry, breakers and the signals cache"""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from engine.clock import Clock, SystemClock
from engine.registry import SignalRegistry
from engine.signals_cache import SignalsCache

logger = logging.getLogger(__name__)

P95_RED_MS = 200
RATE_5XX_RED = 0.005


def rate_5xx(metrics: Dict) -> float:
    """Share of calls that failed without timing out."""
    total = metrics.get("total_calls", 0)
    if not total:
        return 0.0
    failed = total - metrics.get("success_calls", 0) - metrics.get("timeout_calls", 0)
    return max(0, failed) / total


class HealthTracker:
    """Remembers green/red status between reports and measures time to recovery."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self.status = "green"
        self.red_since_ms: Optional[float] = None
        self.last_mttr_minutes: Optional[float] = None

    def observe(self, sources: Dict[str, Dict]) -> str:
        unhealthy = [
            name for name, s in sources.items()
            if s["p95_ms"] > P95_RED_MS or s["rate_5xx"] > RATE_5XX_RED
        ]
        with self._lock:
            now = self._clock.now_ms()
            if unhealthy and self.status == "green":
                self.status = "red"
                self.red_since_ms = now
                logger.warning("Signals health red: %s", ", ".join(unhealthy))
            elif not unhealthy and self.status == "red":
                self.status = "green"
                if self.red_since_ms is not None:
                    self.last_mttr_minutes = round((now - self.red_since_ms) / 60_000, 2)
                self.red_since_ms = None
                logger.info("Signals health recovered (MTTR %s min)", self.last_mttr_minutes)
            return self.status


def build_health_report(
    registry: SignalRegistry,
    cache: SignalsCache,
    tracker: Optional[HealthTracker] = None,
) -> Dict:
    metrics = registry.get_all_metrics()
    states = registry.get_states()

    sources = {}
    for name in sorted(set(metrics) | set(states)):
        m = metrics.get(name, {})
        state = states.get(name)
        sources[name] = {
            "success_rate": m.get("success_rate", 0.0),
            "timeout_rate": m.get("timeout_rate", 0.0),
            "p95_ms": m.get("p95_ms", 0.0),
            "rate_5xx": rate_5xx(m),
            "total_calls": m.get("total_calls", 0),
            "last_ok_ts": m.get("last_ok_ts"),
            "breaker_state": state.state.value if state else "closed",
        }

    n = len(sources)
    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sources": sources,
        "p95_ms": sum(s["p95_ms"] for s in sources.values()) / n if n else 0.0,
        "rate_5xx": sum(s["rate_5xx"] for s in sources.values()) / n if n else 0.0,
        "cache": {"has_fresh": cache.has_fresh(), "has_stale": cache.has_any()},
    }
    if tracker is not None:
        report["status"] = tracker.observe(sources)
        report["mttr_minutes"] = tracker.last_mttr_minutes
    return report
