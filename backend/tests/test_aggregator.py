"""Tests for the signal aggregator: breaker gating, concurrency, merge and cache fallback"""
import asyncio
import time
import pytest

from collectors.base import SignalItem, SourceResult
from engine.aggregator import AggregatorConfig, SignalAggregator, merge_items
from engine.circuit_breaker import BreakerConfig, BreakerStatus
from engine.clock import ManualClock
from engine.registry import SignalRegistry
from engine.signals_cache import SignalsCache


def _item(source, label, type_=None):
    return SignalItem(type=type_ or source, label=label, source=source, ts="2024-01-01T00:00:00+00:00")


class FakeAdapter:
    def __init__(self, name, mode="ok", items=None, delay=0.0):
        self.name = name
        self.mode = mode
        self.items = items if items is not None else [_item(name, f"{name} signal")]
        self.delay = delay
        self.calls = 0

    async def fetch(self, timeout_ms):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.mode == "ok":
            return SourceResult.success(self.name, self.items, 5.0)
        if self.mode == "error":
            return SourceResult.failure(self.name, "HTTP 500", 3.0)
        if self.mode == "hang":
            await asyncio.sleep(10)
        raise RuntimeError("adapter bug")


def _build(adapters, threshold=3, clock=None, fresh_ttl_ms=1000, serve_stale_ms=5000):
    clock = clock or ManualClock()
    registry = SignalRegistry(breaker_config=BreakerConfig(threshold, 500, 4000), clock=clock)
    cache = SignalsCache(fresh_ttl_ms=fresh_ttl_ms, clock=clock)
    config = AggregatorConfig(source_timeout_ms=20, fresh_ttl_ms=fresh_ttl_ms, serve_stale_ms=serve_stale_ms)
    return SignalAggregator(adapters, registry, cache, config), clock


class TestMergeItems:
    def test_registration_order_and_dedupe(self):
        results = [
            SourceResult.success("a", [_item("a", "x", "trend"), _item("a", "y")], 1),
            SourceResult.failure("b", "HTTP 500", 1),
            SourceResult.success("c", [_item("c", "x", "trend"), _item("c", "z")], 1),
        ]
        merged = merge_items(results)
        assert [(m["source"], m["label"]) for m in merged] == [("a", "x"), ("a", "y"), ("c", "z")]


class TestAggregatorConfig:
    def test_rejects_serve_stale_below_ttl(self):
        with pytest.raises(ValueError):
            AggregatorConfig(source_timeout_ms=800, fresh_ttl_ms=1000, serve_stale_ms=500)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            AggregatorConfig(source_timeout_ms=0)

    def test_duplicate_source_names_rejected(self):
        with pytest.raises(ValueError):
            _build([FakeAdapter("a"), FakeAdapter("a")])


class TestAggregate:
    @pytest.mark.asyncio
    async def test_live_merge(self):
        agg, _ = _build([FakeAdapter("a"), FakeAdapter("b", mode="error"), FakeAdapter("c")])
        snap = await agg.aggregate()
        assert snap.origin == "live"
        assert not snap.stale
        assert [i["source"] for i in snap.items] == ["a", "c"]
        assert snap.sources == {"a": "success", "b": "failure", "c": "success"}
        assert snap.etag

    @pytest.mark.asyncio
    async def test_sources_called_concurrently(self):
        agg, _ = _build([FakeAdapter("a", delay=0.05), FakeAdapter("b", delay=0.05), FakeAdapter("c", delay=0.05)])
        agg.config = AggregatorConfig(source_timeout_ms=500, fresh_ttl_ms=1000, serve_stale_ms=5000)
        started = time.perf_counter()
        snap = await agg.aggregate()
        assert len(snap.items) == 3
        assert time.perf_counter() - started < 0.12

    @pytest.mark.asyncio
    async def test_hanging_adapter_becomes_timeout(self):
        agg, _ = _build([FakeAdapter("a"), FakeAdapter("slow", mode="hang")])
        snap = await agg.aggregate()
        assert snap.sources["slow"] == "timeout"
        metrics = agg.registry.get_all_metrics()
        assert metrics["slow"]["timeout_calls"] == 1

    @pytest.mark.asyncio
    async def test_raising_adapter_becomes_failure(self):
        agg, _ = _build([FakeAdapter("a"), FakeAdapter("bug", mode="raise")])
        snap = await agg.aggregate()
        assert snap.origin == "live"
        assert snap.sources["bug"] == "failure"

    @pytest.mark.asyncio
    async def test_outcomes_recorded_in_telemetry(self):
        agg, _ = _build([FakeAdapter("a"), FakeAdapter("b", mode="error")])
        await agg.aggregate()
        metrics = agg.registry.get_all_metrics()
        assert metrics["a"]["success_rate"] == 1.0
        assert metrics["b"]["success_rate"] == 0.0


class TestFallback:
    @pytest.mark.asyncio
    async def test_no_cache_returns_empty(self):
        agg, _ = _build([FakeAdapter("a", mode="error")])
        snap = await agg.aggregate()
        assert snap.items == []
        assert snap.origin == "empty"
        assert snap.etag is None

    @pytest.mark.asyncio
    async def test_all_failing_serves_cached_items_marked_stale(self):
        good = FakeAdapter("a")
        agg, clock = _build([good])
        live = await agg.aggregate()

        good.mode = "error"
        clock.advance(2000)
        snap = await agg.aggregate()
        assert snap.origin == "cache"
        assert snap.stale
        assert snap.items == live.items
        assert snap.age_ms == 2000
        assert snap.etag == live.etag

    @pytest.mark.asyncio
    async def test_cache_within_ttl_still_marked_stale(self):
        good = FakeAdapter("a")
        agg, clock = _build([good])
        await agg.aggregate()
        good.mode = "error"
        clock.advance(10)
        snap = await agg.aggregate()
        assert snap.stale

    @pytest.mark.asyncio
    async def test_cache_past_serve_window_is_dropped(self):
        good = FakeAdapter("a")
        agg, clock = _build([good], serve_stale_ms=5000)
        await agg.aggregate()
        good.mode = "error"
        clock.advance(5001)
        snap = await agg.aggregate()
        assert snap.origin == "empty"
        assert snap.items == []

    @pytest.mark.asyncio
    async def test_cache_keys_per_pair(self):
        good = FakeAdapter("a")
        agg, _ = _build([good])
        await agg.get_market_signals("SOL")
        good.mode = "error"
        assert (await agg.get_market_signals("ETH")).origin == "empty"
        assert (await agg.get_market_signals("SOL")).origin == "cache"


class TestBreakerGating:
    @pytest.mark.asyncio
    async def test_three_source_scenario(self):
        healthy = FakeAdapter("healthy")
        slow = FakeAdapter("slow", mode="hang")
        broken = FakeAdapter("broken", mode="error")
        agg, _ = _build([healthy, slow, broken], threshold=3)

        for _ in range(3):
            await agg.aggregate()

        states = agg.get_circuit_breaker_states()
        assert states["slow"].state == BreakerStatus.OPEN
        assert states["broken"].state == BreakerStatus.OPEN
        assert states["healthy"].state == BreakerStatus.CLOSED

        calls = (healthy.calls, slow.calls, broken.calls)
        for _ in range(5):
            snap = await agg.aggregate()
            assert [i["source"] for i in snap.items] == ["healthy"]
            assert snap.sources["slow"] == "skipped"
            assert snap.sources["broken"] == "skipped"

        assert healthy.calls == calls[0] + 5
        assert slow.calls == calls[1]
        assert broken.calls == calls[2]

    @pytest.mark.asyncio
    async def test_default_threshold_trips_after_ten(self):
        broken = FakeAdapter("broken", mode="error")
        clock = ManualClock()
        registry = SignalRegistry(clock=clock)
        agg = SignalAggregator([broken], registry, SignalsCache(clock=clock))
        for _ in range(10):
            await agg.aggregate()
        await agg.aggregate()
        assert broken.calls == 10

    @pytest.mark.asyncio
    async def test_half_open_trial_recovers(self):
        flaky = FakeAdapter("flaky", mode="error")
        agg, clock = _build([flaky], threshold=3)
        for _ in range(3):
            await agg.aggregate()
        clock.advance(500)
        flaky.mode = "ok"
        snap = await agg.aggregate()
        assert snap.origin == "live"
        assert agg.get_circuit_breaker_states()["flaky"].state == BreakerStatus.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_half_open_slot(self):
        flaky = FakeAdapter("flaky", mode="error")
        agg, clock = _build([flaky], threshold=3)
        for _ in range(3):
            await agg.aggregate()
        clock.advance(500)
        flaky.mode = "hang"

        task = asyncio.create_task(agg.aggregate())
        await asyncio.sleep(0.005)
        assert agg.get_circuit_breaker_states()["flaky"].trial_in_flight
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = agg.get_circuit_breaker_states()["flaky"]
        assert state.state == BreakerStatus.HALF_OPEN
        assert not state.trial_in_flight
        assert agg.registry.get_all_metrics()["flaky"]["timeout_calls"] == 0

        flaky.mode = "ok"
        snap = await agg.aggregate()
        assert snap.sources["flaky"] == "success"
        assert agg.get_circuit_breaker_states()["flaky"].state == BreakerStatus.CLOSED

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self):
        broken = FakeAdapter("broken", mode="error")
        agg, _ = _build([broken], threshold=3)
        for _ in range(3):
            await agg.aggregate()
        assert agg.reset_circuit_breaker("broken")
        assert agg.get_circuit_breaker_states()["broken"].state == BreakerStatus.CLOSED
        assert not agg.reset_circuit_breaker("unknown")

    @pytest.mark.asyncio
    async def test_clear_signals_cache(self):
        good = FakeAdapter("a")
        agg, _ = _build([good])
        await agg.aggregate()
        agg.clear_signals_cache()
        good.mode = "error"
        assert (await agg.aggregate()).origin == "empty"
