"""Top Polymarket prediction markets by 24h volume (gamma API, no auth)"""
import json
import logging
from typing import List

from collectors.base import HttpSourceAdapter, SignalItem, SourceError

logger = logging.getLogger(__name__)

MARKETS_URL = "https://gamma-api.polymarket.com/markets"
MAX_MARKETS = 3


def _yes_probability(market: dict) -> float:
    prices = market.get("outcomePrices")
    # gamma returns the price list as a JSON encoded string
    if isinstance(prices, str):
        prices = json.loads(prices)
    prob = float(prices[0])
    if not 0.0 <= prob <= 1.0:
        raise ValueError(f"probability out of range: {prob}")
    return prob


class PolymarketAdapter(HttpSourceAdapter):
    name = "polymarket"
    url = MARKETS_URL

    def params(self):
        return {
            "active": "true",
            "closed": "false",
            "order": "volume24hr",
            "ascending": "false",
            "limit": MAX_MARKETS,
        }

    def parse(self, data, ts: str) -> List[SignalItem]:
        if not isinstance(data, list):
            raise SourceError("polymarket payload is not a list")

        items = []
        for market in data[:MAX_MARKETS]:
            question = (market.get("question") or "").strip()
            if not question:
                continue
            try:
                prob = _yes_probability(market)
            except (IndexError, TypeError, ValueError) as e:
                logger.debug("Skipping polymarket market %r: %s", question, e)
                continue
            items.append(SignalItem(
                type="polymarket",
                label=question,
                source=self.name,
                ts=ts,
                prob=round(prob, 4),
            ))
        return items
