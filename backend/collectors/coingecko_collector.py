"""Global crypto market context from CoinGecko (no API key needed)"""
import logging
from datetime import datetime, timezone
from typing import Dict, List

import httpx

from collectors.base import USER_AGENT, HttpSourceAdapter, SignalItem, SourceError

logger = logging.getLogger(__name__)

GLOBAL_URL = "https://api.coingecko.com/api/v3/global"
SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
# Market cap moves smaller than this (in percent) count as flat
TREND_FLAT_PCT = 0.5


def trend_direction(change_pct: float) -> str:
    if change_pct > TREND_FLAT_PCT:
        return "up"
    if change_pct < -TREND_FLAT_PCT:
        return "down"
    return "neutral"


class CoinGeckoTrendAdapter(HttpSourceAdapter):
    name = "coingecko"
    url = GLOBAL_URL

    def parse(self, data, ts: str) -> List[SignalItem]:
        market = data.get("data") if isinstance(data, dict) else None
        if not isinstance(market, dict):
            raise SourceError("coingecko payload has no data")

        change = float(market["market_cap_change_percentage_24h_usd"])
        return [
            SignalItem(
                type="trend",
                label=f"Crypto market cap 24h {change:+.1f}%",
                source=self.name,
                ts=ts,
                value=round(change, 2),
                direction=trend_direction(change),
            )
        ]


async def fetch_market_snapshot(timeout_s: float = 10) -> Dict:
    """BTC price, BTC dominance and total 24h volume as one snapshot.

    Raises httpx.HTTPError or SourceError; MarketDataService decides what to
    serve when this fails.
    """
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        price_resp = await client.get(
            SIMPLE_PRICE_URL,
            params={"ids": "bitcoin", "vs_currencies": "usd"},
            headers=headers,
        )
        global_resp = await client.get(GLOBAL_URL, headers=headers)

    if price_resp.status_code != 200:
        raise SourceError(f"CoinGecko price returned HTTP {price_resp.status_code}")
    if global_resp.status_code != 200:
        raise SourceError(f"CoinGecko global returned HTTP {global_resp.status_code}")

    try:
        price = float(price_resp.json()["bitcoin"]["usd"])
        market = global_resp.json()["data"]
        dominance = float(market["market_cap_percentage"]["btc"])
        volume = float(market["total_volume"]["usd"])
    except (KeyError, TypeError, ValueError) as e:
        raise SourceError(f"CoinGecko payload invalid: {e}") from e

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "price": price,
        "dominance": dominance,
        "volume": volume,
        "source": "coingecko",
    }
