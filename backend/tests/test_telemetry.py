"""Tests for per-source telemetry"""
import pytest
from engine.clock import ManualClock
from engine.telemetry import RESPONSE_TIME_CAPACITY, ResponseTimeBuffer, TelemetryRecorder, nearest_rank_p95


class TestResponseTimeBuffer:
    def test_keeps_insertion_order(self):
        buf = ResponseTimeBuffer(3)
        for v in (1, 2):
            buf.append(v)
        assert buf.values() == [1, 2]
        assert len(buf) == 2

    def test_overwrites_oldest(self):
        buf = ResponseTimeBuffer(3)
        for v in (1, 2, 3, 4, 5):
            buf.append(v)
        assert buf.values() == [3, 4, 5]
        assert len(buf) == 3

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ResponseTimeBuffer(0)


class TestNearestRankP95:
    def test_ten_samples(self):
        assert nearest_rank_p95([10, 20, 30, 40, 50, 60, 70, 80, 90, 100]) == 90

    def test_twenty_samples(self):
        assert nearest_rank_p95(list(range(1, 21))) == 19

    def test_single_sample(self):
        assert nearest_rank_p95([42]) == 42

    def test_hundred_samples(self):
        assert nearest_rank_p95(list(range(1, 101))) == 95

    def test_unsorted_input(self):
        assert nearest_rank_p95([300, 5, 10]) == 300

    def test_empty(self):
        assert nearest_rank_p95([]) == 0.0


class TestTelemetryRecorder:
    def test_rates_and_last_ok(self):
        clock = ManualClock()
        rec = TelemetryRecorder(clock)
        rec.end("a", ok=True, timed_out=False, elapsed_ms=10)
        clock.advance(1000)
        rec.end("a", ok=False, timed_out=True, elapsed_ms=800)
        rec.end("a", ok=False, timed_out=False, elapsed_ms=20)
        rec.end("a", ok=True, timed_out=False, elapsed_ms=30)

        m = rec.get_metrics("a")
        assert m["total_calls"] == 4
        assert m["success_calls"] == 2
        assert m["timeout_calls"] == 1
        assert m["success_rate"] == 0.5
        assert m["timeout_rate"] == 0.25
        assert m["p95_ms"] == 800
        assert m["last_ok_ts"] is not None

    def test_last_ok_stays_none_without_success(self):
        rec = TelemetryRecorder(ManualClock())
        rec.end("a", ok=False, timed_out=False, elapsed_ms=5)
        assert rec.get_metrics("a")["last_ok_ts"] is None

    def test_window_bounded(self):
        rec = TelemetryRecorder(ManualClock())
        for i in range(RESPONSE_TIME_CAPACITY + 20):
            rec.end("a", ok=True, timed_out=False, elapsed_ms=i)
        m = rec.get_metrics("a")
        assert len(m["response_times"]) == RESPONSE_TIME_CAPACITY
        assert m["response_times"][0] == 20
        assert m["total_calls"] == RESPONSE_TIME_CAPACITY + 20

    def test_elapsed_uses_clock(self):
        clock = ManualClock()
        rec = TelemetryRecorder(clock)
        token = rec.start("a")
        clock.advance(250)
        assert rec.elapsed_ms(token) == 250

    def test_unknown_source(self):
        assert TelemetryRecorder(ManualClock()).get_metrics("nope") is None

    def test_clear_one_and_all(self):
        rec = TelemetryRecorder(ManualClock())
        rec.end("a", ok=True, timed_out=False, elapsed_ms=1)
        rec.end("b", ok=True, timed_out=False, elapsed_ms=1)
        rec.clear("a")
        assert set(rec.get_all_metrics()) == {"b"}
        rec.clear()
        assert rec.get_all_metrics() == {}
