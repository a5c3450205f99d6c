"""Daily creator rollup: raw predictions/trades -> CreatorDaily records"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from engine.calibration import Prediction
from engine.creator_score import calculate_creator_score

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
BATCH_PAUSE_S = 0.05
SMALL_SAMPLE = 20


@dataclass
class CreatorInputs:
    creator_id: str
    day: str
    predictions: List[Prediction] = field(default_factory=list)
    returns_by_pair: Dict[str, List[float]] = field(default_factory=dict)
    notional_30d: float = 0.0
    daily_accuracy: List[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "CreatorInputs":
        returns = data.get("returnsByPair") or {}
        if isinstance(data.get("returns"), list):
            returns = {"all": data["returns"]}
        return cls(
            creator_id=str(data["creatorId"]),
            day=str(data["day"]),
            predictions=[Prediction.from_dict(p) for p in data.get("predictions", [])],
            returns_by_pair={k: [float(r) for r in v] for k, v in returns.items()},
            notional_30d=float(data.get("notional30d", 0.0)),
            daily_accuracy=[float(a) for a in data.get("dailyAccuracy", [])],
        )


def alpha_for_sample_size(n: int) -> float:
    return 0.10 if n < SMALL_SAMPLE else 0.05


def _quantile(sorted_values: Sequence[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("quantile of empty sequence")
    pos = (len(sorted_values) - 1) * q
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return sorted_values[lo]
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * (pos - lo)


def winsorize(values: Sequence[float], alpha: float) -> List[float]:
    """Clip values to the [alpha, 1 - alpha] quantiles."""
    if not values or alpha <= 0:
        return list(values)
    ordered = sorted(values)
    lower = _quantile(ordered, alpha)
    upper = _quantile(ordered, 1 - alpha)
    return [min(max(v, lower), upper) for v in values]


def std(values: Sequence[float]) -> float:
    """Population standard deviation."""
    n = len(values)
    if n == 0:
        return 0.0
    mean = sum(values) / n
    return math.sqrt(sum((v - mean) ** 2 for v in values) / n)


def brier_summary(predictions: Sequence[Prediction]) -> Dict:
    matured = [p for p in predictions if p.matured]
    if not matured:
        return {"brierMean": 1.0, "maturedN": 0}
    total = sum((p.predicted_p - p.outcome) ** 2 for p in matured)
    return {"brierMean": total / len(matured), "maturedN": len(matured)}


def return_std(returns_by_pair: Dict[str, List[float]]) -> Optional[float]:
    pooled: List[float] = []
    for returns in returns_by_pair.values():
        pooled.extend(winsorize(returns, alpha_for_sample_size(len(returns))))
    if not pooled:
        return None
    return std(pooled)


def build_creator_daily(inputs: CreatorInputs) -> Dict:
    brier = brier_summary(inputs.predictions)
    ret_std = return_std(inputs.returns_by_pair)
    breakdown = calculate_creator_score(
        matured_n=brier["maturedN"],
        brier_mean=brier["brierMean"],
        ret_std_30d=ret_std,
        notional_30d=inputs.notional_30d,
        daily_accuracy=inputs.daily_accuracy,
    )
    record = {
        "creatorId": inputs.creator_id,
        "day": inputs.day,
        "brierMean": brier["brierMean"],
        "retStd30d": ret_std,
        "notional30d": inputs.notional_30d,
    }
    record.update(breakdown.to_dict())
    return record


async def rollup_creators(inputs: Sequence[CreatorInputs], batch_size: int = BATCH_SIZE) -> Dict:
    """Roll up every creator, pausing between batches to keep the event loop responsive.

    A creator whose inputs fail to score is counted in `errors` and skipped.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    started = time.monotonic()
    records: List[Dict] = []
    errors = 0
    creators = {i.creator_id for i in inputs}

    for offset in range(0, len(inputs), batch_size):
        if offset:
            await asyncio.sleep(BATCH_PAUSE_S)
        for item in inputs[offset:offset + batch_size]:
            try:
                records.append(build_creator_daily(item))
            except ValueError as e:
                errors += 1
                logger.warning("Rollup failed for creator %s on %s: %s", item.creator_id, item.day, e)

    duration_ms = round((time.monotonic() - started) * 1000)
    logger.info(
        "Creator rollup: %d records, %d errors, %d creators in %dms",
        len(records), errors, len(creators), duration_ms,
    )
    return {
        "processed": len(records),
        "errors": errors,
        "durationMs": duration_ms,
        "creators": len(creators),
        "records": records,
    }
