from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from typing import Optional
import logging

from engine.aggregator import SignalAggregator
from engine.calibration import Prediction, evaluate_calibration
from engine.creator_rollup import CreatorInputs, rollup_creators
from engine.creator_score import ScoreComponents, ScoreRangeError, calculate_creator_score, compute_creator_score
from engine.dq_sentinel import run_data_quality_checks
from engine.market_snapshot import MarketDataUnavailable
from engine.signals_health import build_health_report

logger = logging.getLogger(__name__)

router = APIRouter()


def _aggregator(request: Request) -> SignalAggregator:
    return request.app.state.aggregator


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Weak comparison against an If-None-Match list (RFC 9110 13.1.2)."""
    if not if_none_match:
        return False
    if if_none_match.strip() == "*":
        return True
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def _cache_header(snapshot, fresh_ttl_ms: float) -> str:
    if snapshot.origin == "live":
        return "live"
    if snapshot.origin == "empty":
        return "empty"
    return "fallback" if snapshot.age_ms <= fresh_ttl_ms else "stale"


# ── Signals ──

@router.get("/signals")
async def get_signals(request: Request, pair: Optional[str] = None):
    """Aggregated market signals. Honours If-None-Match."""
    aggregator = _aggregator(request)
    snapshot = await aggregator.get_market_signals(pair)

    headers = {
        "X-Cache": _cache_header(snapshot, aggregator.config.fresh_ttl_ms),
        "Cache-Control": "no-cache",
    }
    if snapshot.etag:
        headers["ETag"] = snapshot.etag
        if etag_matches(request.headers.get("if-none-match"), snapshot.etag):
            return Response(status_code=304, headers=headers)

    return JSONResponse(content=snapshot.to_dict(), headers=headers)


@router.get("/ops/signals-health")
async def signals_health(request: Request):
    aggregator = _aggregator(request)
    return build_health_report(aggregator.registry, aggregator.cache, request.app.state.health_tracker)


@router.get("/ops/circuit-breakers")
async def circuit_breakers(request: Request):
    states = _aggregator(request).get_circuit_breaker_states()
    return {name: state.to_dict() for name, state in states.items()}


@router.post("/ops/circuit-breakers/{source}/reset")
async def reset_circuit_breaker(source: str, request: Request):
    if not _aggregator(request).reset_circuit_breaker(source):
        raise HTTPException(status_code=404, detail=f"Unknown source '{source}'")
    logger.info("Circuit breaker for %s reset via ops endpoint", source)
    return {"source": source, "state": "closed"}


@router.post("/ops/signals-cache/clear")
async def clear_signals_cache(request: Request):
    _aggregator(request).clear_signals_cache()
    return {"cleared": True}


@router.get("/market/snapshot")
async def market_snapshot(request: Request, refresh: bool = False):
    try:
        return await request.app.state.market_data.get_snapshot(force_refresh=refresh)
    except MarketDataUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Market data unavailable: {e}")


# ── Scoring ──

@router.post("/creators/score")
async def creator_score(request: Request):
    body = await _json_body(request)
    try:
        components = ScoreComponents.from_dict(body)
    except ScoreRangeError as e:
        raise HTTPException(status_code=400, detail={"field": e.field, "value": e.value, "message": str(e)})
    return {"score": compute_creator_score(components)}


@router.post("/creators/score/breakdown")
async def creator_score_breakdown(request: Request):
    body = await _json_body(request)
    try:
        breakdown = calculate_creator_score(
            matured_n=int(body.get("maturedN", 0)),
            brier_mean=float(body["brierMean"]),
            ret_std_30d=None if body.get("retStd30d") is None else float(body["retStd30d"]),
            notional_30d=float(body.get("notional30d", 0.0)),
            daily_accuracy=[float(a) for a in body.get("dailyAccuracy", [])],
        )
    except KeyError as e:
        raise HTTPException(status_code=400, detail=f"Missing field {e}")
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return breakdown.to_dict()


@router.post("/creators/rollup")
async def creator_rollup(request: Request):
    body = await _json_body(request)
    try:
        inputs = [CreatorInputs.from_dict(c) for c in body.get("creators", [])]
    except KeyError as e:
        raise HTTPException(status_code=400, detail=f"Missing field {e}")
    except (TypeError, ValueError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await rollup_creators(inputs)


@router.post("/models/calibration")
async def model_calibration(request: Request):
    body = await _json_body(request)
    raw = body.get("predictions")
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="Missing 'predictions' list")
    try:
        predictions = [Prediction.from_dict(p) for p in raw]
    except (TypeError, ValueError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid prediction: {e}")
    return evaluate_calibration(predictions).to_dict()


@router.post("/ops/creator-dq")
async def creator_dq(request: Request):
    body = await _json_body(request)
    records = body.get("records")
    if not isinstance(records, list):
        raise HTTPException(status_code=400, detail="Missing 'records' list")
    days = body.get("days")
    if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days <= 0):
        raise HTTPException(status_code=400, detail="'days' must be a positive integer")
    return run_data_quality_checks(records, days=days).to_dict()
