"""Merge all permitted signal sources into one snapshot, falling back to cache.

Per request:
  1. skip sources whose breaker refuses the call
  2. call the rest concurrently, each under its own timeout, and record the
     outcome in telemetry + breaker
  3. merge successful items in source registration order, dropping duplicates
  4. nothing merged -> serve the cached snapshot (marked stale) or an empty one
  5. something merged -> overwrite the cache
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from collectors.base import SourceAdapter, SourceResult
from engine.circuit_breaker import BreakerState
from engine.registry import SignalRegistry
from engine.signals_cache import SignalsCache

logger = logging.getLogger(__name__)

# Extra time granted on top of an adapter's own timeout before the
# aggregator gives up on it
TIMEOUT_GRACE_MS = 50


@dataclass(frozen=True)
class AggregatorConfig:
    source_timeout_ms: float = 800
    fresh_ttl_ms: float = 180_000
    serve_stale_ms: float = 24 * 60 * 60 * 1000

    def __post_init__(self):
        if self.source_timeout_ms <= 0:
            raise ValueError("source_timeout_ms must be positive")
        if self.fresh_ttl_ms <= 0:
            raise ValueError("fresh_ttl_ms must be positive")
        if self.serve_stale_ms < self.fresh_ttl_ms:
            raise ValueError("serve_stale_ms must be >= fresh_ttl_ms")

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        return cls(
            source_timeout_ms=float(os.getenv("SIGNALS_SOURCE_TIMEOUT_MS", "800")),
            fresh_ttl_ms=float(os.getenv("SIGNALS_FRESH_TTL_MS", "180000")),
            serve_stale_ms=float(os.getenv("SIGNALS_SERVE_STALE_MS", "86400000")),
        )


@dataclass
class SignalSnapshot:
    items: List[Dict]
    updated_at: Optional[str]
    origin: str  # live | cache | empty
    stale: bool = False
    age_ms: float = 0.0
    etag: Optional[str] = None
    sources: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "items": self.items,
            "updatedAt": self.updated_at,
            "origin": self.origin,
            "stale": self.stale,
            "ageMs": round(self.age_ms),
            "sources": self.sources,
        }


def merge_items(results: Sequence[SourceResult]) -> List[Dict]:
    merged: List[Dict] = []
    seen = set()
    for result in results:
        if not result.ok:
            continue
        for item in result.items:
            key = (item.type, item.label)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item.to_dict())
    return merged


class SignalAggregator:
    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        registry: SignalRegistry,
        cache: SignalsCache,
        config: Optional[AggregatorConfig] = None,
    ):
        names = [a.name for a in adapters]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate source names: {names}")
        self.adapters = list(adapters)
        self.registry = registry
        self.cache = cache
        self.config = config or AggregatorConfig()
        for name in names:
            registry.register(name)

    async def aggregate(self, cache_key: str = "default") -> SignalSnapshot:
        sources: Dict[str, str] = {}
        attempted = []
        for adapter in self.adapters:
            if self.registry.should_attempt(adapter.name):
                attempted.append(adapter)
            else:
                sources[adapter.name] = "skipped"

        results = await asyncio.gather(*(self._call(adapter) for adapter in attempted))
        for result in results:
            sources[result.source_name] = result.outcome.value

        # keep registration order in the per-source report
        sources = {a.name: sources[a.name] for a in self.adapters}

        items = merge_items(results)
        if items:
            updated_at = datetime.now(timezone.utc).isoformat()
            cached = self.cache.set({"items": items, "updatedAt": updated_at}, key=cache_key)
            return SignalSnapshot(
                items=items,
                updated_at=updated_at,
                origin="live",
                etag=cached.etag,
                sources=sources,
            )

        return self._fallback(cache_key, sources)

    def _fallback(self, cache_key: str, sources: Dict[str, str]) -> SignalSnapshot:
        cached = self.cache.get_stale_but_serveable(cache_key)
        if cached is None:
            logger.warning("No signal source produced items and nothing is cached (%s)", cache_key)
            return SignalSnapshot(items=[], updated_at=None, origin="empty", sources=sources)

        if cached.age_ms > self.config.serve_stale_ms:
            logger.warning(
                "Cached signals for %s are %.0fs old, past the serve-stale window",
                cache_key, cached.age_ms / 1000,
            )
            return SignalSnapshot(items=[], updated_at=None, origin="empty", sources=sources)

        logger.info(
            "Serving cached signals for %s (age %.0fs, past TTL: %s)",
            cache_key, cached.age_ms / 1000, cached.age_ms > self.config.fresh_ttl_ms,
        )
        return SignalSnapshot(
            items=list(cached.payload.get("items", [])),
            updated_at=cached.payload.get("updatedAt"),
            origin="cache",
            stale=True,
            age_ms=cached.age_ms,
            etag=cached.etag,
            sources=sources,
        )

    async def _call(self, adapter: SourceAdapter) -> SourceResult:
        timeout_ms = self.config.source_timeout_ms
        token = self.registry.start(adapter.name)
        try:
            result = await asyncio.wait_for(
                adapter.fetch(timeout_ms),
                timeout=(timeout_ms + TIMEOUT_GRACE_MS) / 1000,
            )
        except asyncio.CancelledError:
            # no outcome to record; a pending half-open trial must not stay claimed
            self.registry.abandon(adapter.name)
            raise
        except asyncio.TimeoutError:
            logger.warning("%s did not honour its %.0fms timeout", adapter.name, timeout_ms)
            result = SourceResult.timeout(adapter.name, self.registry.elapsed_ms(token))
        except Exception:
            logger.error("Adapter %s raised instead of returning a result", adapter.name, exc_info=True)
            result = SourceResult.failure(adapter.name, "adapter error", self.registry.elapsed_ms(token))

        self.registry.record(adapter.name, result.ok, result.timed_out, result.elapsed_ms)
        return result

    # -- operations exposed to the HTTP layer --

    async def get_market_signals(self, pair: Optional[str] = None) -> SignalSnapshot:
        return await self.aggregate(cache_key=pair or "default")

    def get_circuit_breaker_states(self) -> Dict[str, BreakerState]:
        return self.registry.get_states()

    def reset_circuit_breaker(self, source: str) -> bool:
        if not self.registry.knows(source):
            return False
        self.registry.reset(source)
        return True

    def clear_signals_cache(self) -> None:
        self.cache.clear()
