"""Perpetual funding rate direction from Binance USD-M futures (public endpoint)"""
import logging
import os
from typing import List

from collectors.base import HttpSourceAdapter, SignalItem, SourceError

logger = logging.getLogger(__name__)

PREMIUM_INDEX_URL = "https://fapi.binance.com/fapi/v1/premiumIndex"
FUNDING_SYMBOLS = [
    s.strip().upper()
    for s in os.getenv("SIGNALS_FUNDING_SYMBOLS", "SOLUSDT,ETHUSDT,BTCUSDT").split(",")
    if s.strip()
]
# Funding rates inside +/- this band are reported as neutral
NEUTRAL_BAND = 0.00005

ARROWS = {"up": "↑", "down": "↓", "neutral": "→"}


def funding_direction(rate: float) -> str:
    if rate > NEUTRAL_BAND:
        return "up"
    if rate < -NEUTRAL_BAND:
        return "down"
    return "neutral"


class FundingAdapter(HttpSourceAdapter):
    name = "funding"
    url = PREMIUM_INDEX_URL

    def __init__(self, etag_store=None, symbols: List[str] = None):
        super().__init__(etag_store)
        self.symbols = symbols or FUNDING_SYMBOLS

    def parse(self, data, ts: str) -> List[SignalItem]:
        if not isinstance(data, list):
            raise SourceError("funding payload is not a list")

        by_symbol = {row.get("symbol"): row for row in data if isinstance(row, dict)}
        items = []
        for symbol in self.symbols:
            row = by_symbol.get(symbol)
            if row is None:
                continue
            rate = float(row["lastFundingRate"])
            direction = funding_direction(rate)
            base = symbol.replace("USDT", "")
            items.append(SignalItem(
                type="funding",
                label=f"{base} funding {ARROWS[direction]}",
                source=self.name,
                ts=ts,
                value=rate,
                direction=direction,
            ))

        if not items:
            raise SourceError("funding payload had none of the tracked symbols")
        return items
