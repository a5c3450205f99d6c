"""Crypto Fear & Greed index from alternative.me (no API key needed)"""
import logging
from typing import List

from collectors.base import HttpSourceAdapter, SignalItem, SourceError

logger = logging.getLogger(__name__)

FNG_URL = "https://api.alternative.me/fng/"


def classify(value: int) -> str:
    if value <= 24:
        return "Extreme Fear"
    if value <= 44:
        return "Fear"
    if value <= 55:
        return "Neutral"
    if value <= 75:
        return "Greed"
    return "Extreme Greed"


class FearGreedAdapter(HttpSourceAdapter):
    name = "fear_greed"
    url = FNG_URL

    def params(self):
        return {"limit": 1, "format": "json"}

    def parse(self, data, ts: str) -> List[SignalItem]:
        if not isinstance(data, dict):
            raise SourceError("fear_greed payload is not an object")
        entries = data.get("data") or []
        if not entries:
            raise SourceError("fear_greed payload has no data")

        entry = entries[0]
        value = int(entry["value"])
        if not 0 <= value <= 100:
            raise SourceError(f"fear_greed value out of range: {value}")

        classification = entry.get("value_classification") or classify(value)
        return [
            SignalItem(
                type="fear_greed",
                label=f"{classification} ({value})",
                source=self.name,
                ts=ts,
                value=value,
            )
        ]
