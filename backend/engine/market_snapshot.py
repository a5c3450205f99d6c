"""Market snapshot with a staleness envelope.

Keeps the last good snapshot and serves it marked stale when a refresh fails,
so callers always see how old the numbers are.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

import httpx

from collectors.base import SourceError
from collectors.coingecko_collector import fetch_market_snapshot
from engine.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

MARKET_TTL_HOURS = float(os.getenv("MARKET_SNAPSHOT_TTL_HOURS", "1"))
HOUR_MS = 60 * 60 * 1000


class MarketDataUnavailable(Exception):
    """No snapshot has ever been fetched and the refresh failed."""


class MarketDataService:
    def __init__(
        self,
        fetcher: Callable[[], Awaitable[Dict]] = fetch_market_snapshot,
        ttl_hours: float = MARKET_TTL_HOURS,
        clock: Optional[Clock] = None,
    ):
        if ttl_hours <= 0:
            raise ValueError("ttl_hours must be positive")
        self._fetcher = fetcher
        self.ttl_hours = ttl_hours
        self._clock = clock or SystemClock()
        self._last: Optional[Dict] = None
        self._fetched_at_ms: Optional[float] = None

    def _age_hours(self) -> float:
        return (self._clock.now_ms() - self._fetched_at_ms) / HOUR_MS

    def _envelope(self, stale: bool) -> Dict:
        age = self._age_hours()
        data = dict(self._last)
        data.update({
            "fetchedAt": datetime.fromtimestamp(self._fetched_at_ms / 1000, tz=timezone.utc).isoformat(),
            "stalenessHours": round(age, 2),
            "ttlHours": self.ttl_hours,
            "isStale": stale or age > self.ttl_hours,
        })
        return data

    async def get_snapshot(self, force_refresh: bool = False) -> Dict:
        if self._last is not None and not force_refresh and self._age_hours() <= self.ttl_hours:
            return self._envelope(stale=False)

        try:
            snapshot = await self._fetcher()
        except (httpx.HTTPError, SourceError) as e:
            if self._last is None:
                raise MarketDataUnavailable(str(e)) from e
            logger.warning("Market snapshot refresh failed, serving last good: %s", e)
            return self._envelope(stale=True)

        self._last = snapshot
        self._fetched_at_ms = self._clock.now_ms()
        return self._envelope(stale=False)
