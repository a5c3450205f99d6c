"""Tests for the HTTP routes, with fake sources wired into the app state"""
import pytest
from fastapi.testclient import TestClient

from collectors.base import SignalItem, SourceResult
from engine.aggregator import AggregatorConfig, SignalAggregator
from engine.circuit_breaker import BreakerConfig
from engine.clock import ManualClock
from engine.registry import SignalRegistry
from engine.signals_cache import SignalsCache
from engine.signals_health import HealthTracker
from main import app


class StubAdapter:
    def __init__(self, name, ok=True):
        self.name = name
        self.ok = ok

    async def fetch(self, timeout_ms):
        if not self.ok:
            return SourceResult.failure(self.name, "HTTP 500", 1.0)
        item = SignalItem(type=self.name, label=f"{self.name} up", source=self.name, ts="t")
        return SourceResult.success(self.name, [item], 1.0)


@pytest.fixture
def client():
    with TestClient(app) as c:
        clock = ManualClock()
        registry = SignalRegistry(breaker_config=BreakerConfig(2, 500, 4000), clock=clock)
        adapters = [StubAdapter("fear_greed"), StubAdapter("funding", ok=False)]
        app.state.aggregator = SignalAggregator(
            adapters, registry, SignalsCache(fresh_ttl_ms=1000, clock=clock),
            AggregatorConfig(source_timeout_ms=200, fresh_ttl_ms=1000, serve_stale_ms=5000),
        )
        app.state.health_tracker = HealthTracker(clock)
        c.adapters = adapters
        c.clock = clock
        yield c


class TestSignalsEndpoint:
    def test_live_snapshot(self, client):
        resp = client.get("/api/signals")
        assert resp.status_code == 200
        body = resp.json()
        assert [i["label"] for i in body["items"]] == ["fear_greed up"]
        assert body["origin"] == "live"
        assert resp.headers["X-Cache"] == "live"
        assert resp.headers["ETag"]

    def test_if_none_match_returns_304(self, client):
        etag = client.get("/api/signals").headers["ETag"]
        resp = client.get("/api/signals", headers={"If-None-Match": etag})
        assert resp.status_code == 304
        assert resp.content == b""

    def test_weak_validator_returns_304(self, client):
        etag = client.get("/api/signals").headers["ETag"]
        resp = client.get("/api/signals", headers={"If-None-Match": f"W/{etag}"})
        assert resp.status_code == 304

    def test_etag_list_returns_304(self, client):
        etag = client.get("/api/signals").headers["ETag"]
        resp = client.get("/api/signals", headers={"If-None-Match": f'"other", {etag}'})
        assert resp.status_code == 304

    def test_star_returns_304(self, client):
        client.get("/api/signals")
        assert client.get("/api/signals", headers={"If-None-Match": "*"}).status_code == 304

    def test_non_matching_etag_returns_body(self, client):
        client.get("/api/signals")
        resp = client.get("/api/signals", headers={"If-None-Match": '"other", W/"another"'})
        assert resp.status_code == 200

    def test_stale_fallback_header(self, client):
        client.get("/api/signals")
        client.adapters[0].ok = False
        client.clock.advance(2000)
        resp = client.get("/api/signals")
        assert resp.status_code == 200
        assert resp.json()["stale"] is True
        assert resp.headers["X-Cache"] == "stale"

    def test_empty_when_nothing_cached(self, client):
        client.adapters[0].ok = False
        resp = client.get("/api/signals")
        assert resp.json()["items"] == []
        assert resp.headers["X-Cache"] == "empty"
        assert "ETag" not in resp.headers


class TestOpsEndpoints:
    def test_circuit_breakers_and_reset(self, client):
        client.get("/api/signals")
        client.get("/api/signals")
        states = client.get("/api/ops/circuit-breakers").json()
        assert states["funding"]["state"] == "open"
        assert states["fear_greed"]["state"] == "closed"

        assert client.post("/api/ops/circuit-breakers/funding/reset").status_code == 200
        assert client.get("/api/ops/circuit-breakers").json()["funding"]["state"] == "closed"

    def test_reset_unknown_source(self, client):
        assert client.post("/api/ops/circuit-breakers/nope/reset").status_code == 404

    def test_clear_cache(self, client):
        client.get("/api/signals")
        assert client.post("/api/ops/signals-cache/clear").json() == {"cleared": True}
        client.adapters[0].ok = False
        assert client.get("/api/signals").headers["X-Cache"] == "empty"

    def test_signals_health(self, client):
        client.get("/api/signals")
        body = client.get("/api/ops/signals-health").json()
        assert set(body["sources"]) == {"fear_greed", "funding"}
        assert body["status"] == "red"
        assert body["cache"]["has_fresh"] is True

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"


class TestScoringEndpoints:
    def test_score(self, client):
        resp = client.post("/api/creators/score", json={
            "accuracy": 1, "consistency": 1, "volumeScore": 1, "recencyScore": 1,
        })
        assert resp.status_code == 200
        assert resp.json()["score"] == pytest.approx(1.0)

    def test_score_out_of_range(self, client):
        resp = client.post("/api/creators/score", json={
            "accuracy": 1.5, "consistency": 1, "volumeScore": 1, "recencyScore": 1,
        })
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "accuracy"

    def test_invalid_json(self, client):
        resp = client.post("/api/creators/score", content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_breakdown(self, client):
        resp = client.post("/api/creators/score/breakdown", json={
            "maturedN": 10, "brierMean": 0.2, "retStd30d": None, "notional30d": 0,
        })
        body = resp.json()
        assert body["accuracy"] == pytest.approx(0.8)
        assert body["isProvisional"] is True

    def test_breakdown_missing_brier(self, client):
        assert client.post("/api/creators/score/breakdown", json={"maturedN": 10}).status_code == 400

    def test_breakdown_out_of_range_daily_accuracy(self, client):
        resp = client.post("/api/creators/score/breakdown", json={
            "maturedN": 10, "brierMean": 0.2, "notional30d": 0, "dailyAccuracy": [5.0],
        })
        assert resp.status_code == 400

    def test_calibration(self, client):
        resp = client.post("/api/models/calibration", json={"predictions": [
            {"predictedP": 0.7, "actualOutcome": 1},
            {"predictedP": 0.3, "actualOutcome": 0},
            {"predictedP": 0.5, "actualOutcome": 1},
        ]})
        body = resp.json()
        assert body["brierScore"] == pytest.approx(0.143333, abs=1e-5)
        assert body["status"] == "Good"
        assert body["note"] == "provisional"

    def test_calibration_invalid_prediction(self, client):
        resp = client.post("/api/models/calibration", json={"predictions": [{"predictedP": 2, "actualOutcome": 1}]})
        assert resp.status_code == 400

    def test_creator_dq(self, client):
        resp = client.post("/api/ops/creator-dq", json={"records": [{"creatorId": "c1", "day": "2024-03-09"}]})
        body = resp.json()
        assert body["ok"] is False
        assert body["summary"]["totalRecords"] == 1

    def test_creator_dq_rejects_boolean_days(self, client):
        resp = client.post("/api/ops/creator-dq", json={"records": [], "days": True})
        assert resp.status_code == 400

    def test_rollup(self, client):
        resp = client.post("/api/creators/rollup", json={"creators": [
            {"creatorId": "c1", "day": "2024-03-09", "predictions": [{"predictedP": 0.6, "actualOutcome": 1}]},
        ]})
        body = resp.json()
        assert body["processed"] == 1
        assert body["records"][0]["maturedN"] == 1

    def test_rollup_counts_out_of_range_daily_accuracy_as_error(self, client):
        resp = client.post("/api/creators/rollup", json={"creators": [
            {"creatorId": "c1", "day": "2024-03-09", "dailyAccuracy": [5.0],
             "predictions": [{"predictedP": 0.6, "actualOutcome": 1}]},
        ]})
        body = resp.json()
        assert body["errors"] == 1
        assert body["records"] == []
