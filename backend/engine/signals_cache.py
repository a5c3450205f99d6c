"""L2 snapshot cache: last known good signals per cache key.

Writes are last-write-wins. Reads return the latest snapshot whatever its age;
freshness policy belongs to the caller.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from engine.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def compute_etag(payload) -> str:
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f'"{hashlib.md5(body.encode()).hexdigest()[:12]}"'


def _etag_basis(payload: Dict):
    """Items without their fetch timestamps, so an unchanged signal set keeps its etag."""
    items = payload.get("items")
    if not isinstance(items, list):
        return payload
    return [
        {k: v for k, v in item.items() if k != "ts"} if isinstance(item, dict) else item
        for item in items
    ]


@dataclass(frozen=True)
class CachedSnapshot:
    etag: str
    payload: Dict
    cached_at_ms: float


@dataclass(frozen=True)
class StaleRead:
    etag: str
    payload: Dict
    age_ms: float


class SignalsCache:
    def __init__(self, fresh_ttl_ms: float = 180_000, clock: Optional[Clock] = None):
        self.fresh_ttl_ms = fresh_ttl_ms
        self._clock = clock or SystemClock()
        self._entries: Dict[str, CachedSnapshot] = {}

    def set(self, payload: Dict, key: str = "default") -> CachedSnapshot:
        snapshot = CachedSnapshot(
            etag=compute_etag(_etag_basis(payload)),
            payload=payload,
            cached_at_ms=self._clock.now_ms(),
        )
        self._entries[key] = snapshot
        return snapshot

    def get_stale_but_serveable(self, key: str = "default") -> Optional[StaleRead]:
        snapshot = self._entries.get(key)
        if snapshot is None:
            return None
        age = self._clock.now_ms() - snapshot.cached_at_ms
        return StaleRead(etag=snapshot.etag, payload=snapshot.payload, age_ms=age)

    def get_fresh(self, key: str = "default") -> Optional[CachedSnapshot]:
        snapshot = self._entries.get(key)
        if snapshot is None:
            return None
        if self._clock.now_ms() - snapshot.cached_at_ms > self.fresh_ttl_ms:
            return None
        return snapshot

    def has_any(self) -> bool:
        return bool(self._entries)

    def has_fresh(self) -> bool:
        return any(self.get_fresh(key) for key in list(self._entries))

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Signals cache cleared")
