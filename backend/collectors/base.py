"""Shared pieces for signal source adapters.

An adapter turns one external endpoint into a list of SignalItem values.
`fetch` never raises for expected failure modes: it returns a SourceResult
tagged success, failure or timeout, with the elapsed time measured.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "PrediktSignals/1.0"


@dataclass(frozen=True)
class SignalItem:
    type: str
    label: str
    source: str
    ts: str
    value: Optional[float] = None
    prob: Optional[float] = None
    direction: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {"type": self.type, "label": self.label, "source": self.source, "ts": self.ts}
        if self.value is not None:
            data["value"] = self.value
        if self.prob is not None:
            data["prob"] = self.prob
        if self.direction is not None:
            data["direction"] = self.direction
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "SignalItem":
        return cls(
            type=data["type"],
            label=data["label"],
            source=data.get("source", data["type"]),
            ts=data["ts"],
            value=data.get("value"),
            prob=data.get("prob"),
            direction=data.get("direction"),
        )


class SourceOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class SourceResult:
    source_name: str
    outcome: SourceOutcome
    items: Tuple[SignalItem, ...] = ()
    elapsed_ms: float = 0.0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == SourceOutcome.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.outcome == SourceOutcome.TIMEOUT

    @classmethod
    def success(cls, source: str, items: List[SignalItem], elapsed_ms: float) -> "SourceResult":
        return cls(source, SourceOutcome.SUCCESS, tuple(items), elapsed_ms)

    @classmethod
    def failure(cls, source: str, reason: str, elapsed_ms: float) -> "SourceResult":
        return cls(source, SourceOutcome.FAILURE, (), elapsed_ms, reason)

    @classmethod
    def timeout(cls, source: str, elapsed_ms: float) -> "SourceResult":
        return cls(source, SourceOutcome.TIMEOUT, (), elapsed_ms, "timeout")


class SourceAdapter(Protocol):
    name: str

    async def fetch(self, timeout_ms: float) -> SourceResult: ...


class SourceError(Exception):
    """Non-2xx response or unusable payload from a source."""


@dataclass
class _EtagEntry:
    etag: str
    items: List[SignalItem] = field(default_factory=list)


class EtagStore:
    """Remembers the last ETag and the items it validated, per source."""

    def __init__(self):
        self._entries: Dict[str, _EtagEntry] = {}

    def get(self, source: str) -> Optional[_EtagEntry]:
        return self._entries.get(source)

    def set(self, source: str, etag: str, items: List[SignalItem]) -> None:
        self._entries[source] = _EtagEntry(etag=etag, items=list(items))

    def clear(self) -> None:
        self._entries.clear()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HttpSourceAdapter:
    """GET one JSON endpoint with a hard timeout and optional conditional request."""

    name = "http"
    url = ""

    def __init__(self, etag_store: Optional[EtagStore] = None):
        self.etag_store = etag_store

    def params(self) -> Optional[Dict]:
        return None

    def parse(self, data, ts: str) -> List[SignalItem]:
        raise NotImplementedError

    async def fetch(self, timeout_ms: float) -> SourceResult:
        started = time.perf_counter()
        try:
            items = await asyncio.wait_for(self._fetch_items(timeout_ms), timeout=timeout_ms / 1000)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("%s timed out after %.0fms", self.name, elapsed)
            return SourceResult.timeout(self.name, elapsed)
        except (SourceError, httpx.HTTPError) as e:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("%s failed: %s", self.name, e)
            return SourceResult.failure(self.name, str(e) or type(e).__name__, elapsed)

        elapsed = (time.perf_counter() - started) * 1000
        logger.debug("%s: %d items in %.0fms", self.name, len(items), elapsed)
        return SourceResult.success(self.name, items, elapsed)

    async def _fetch_items(self, timeout_ms: float) -> List[SignalItem]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        remembered = self.etag_store.get(self.name) if self.etag_store else None
        if remembered:
            headers["If-None-Match"] = remembered.etag

        async with httpx.AsyncClient(timeout=timeout_ms / 1000) as client:
            resp = await client.get(self.url, params=self.params(), headers=headers)

        if resp.status_code == 304 and remembered:
            return list(remembered.items)
        if resp.status_code != 200:
            raise SourceError(f"{self.name} returned HTTP {resp.status_code}")

        try:
            items = self.parse(resp.json(), utc_now_iso())
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            raise SourceError(f"{self.name} payload invalid: {e}") from e

        etag = resp.headers.get("ETag")
        if etag and self.etag_store is not None:
            self.etag_store.set(self.name, etag, items)
        return items
