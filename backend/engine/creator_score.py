"""Creator / model composite score from accuracy, consistency, volume and recency"""
import logging
import math
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

W_ACC = 0.4
W_CONS = 0.3
W_VOL = 0.2
W_REC = 0.1

HALF_LIFE_DAYS = 14
VOL_NORM = float(os.getenv("CREATOR_VOL_NORM", "50000"))
PROVISIONAL_THRESHOLD = 50  # matured predictions needed for a stable score
TOLERANCE = 1e-6
TREND_FLAT_THRESHOLD = 0.01  # 1pp


class ScoreRangeError(ValueError):
    """A score input outside its valid range by more than float drift."""

    def __init__(self, field: str, value: float, expected: str = "[0,1]"):
        self.field = field
        self.value = value
        self.expected = expected
        super().__init__(f"{field} must be in {expected}, got {value}")


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def check_unit_interval(field: str, value: float) -> float:
    """Return value inside [0,1]; drift up to TOLERANCE is clamped, anything else rejected."""
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScoreRangeError(field, value)
    if math.isnan(value) or value < -TOLERANCE or value > 1 + TOLERANCE:
        raise ScoreRangeError(field, value)
    return clamp01(float(value))


@dataclass(frozen=True)
class ScoreComponents:
    accuracy: float
    consistency: float
    volume_score: float
    recency_score: float

    def __post_init__(self):
        for name in ("accuracy", "consistency", "volume_score", "recency_score"):
            object.__setattr__(self, name, check_unit_interval(name, getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Dict) -> "ScoreComponents":
        return cls(
            accuracy=data.get("accuracy"),
            consistency=data.get("consistency"),
            volume_score=data.get("volumeScore", data.get("volume_score")),
            recency_score=data.get("recencyScore", data.get("recency_score")),
        )


def compute_score(accuracy: float, consistency: float, volume_score: float, recency_score: float) -> float:
    """Weighted composite in [0,1]. Raises ScoreRangeError on out-of-range input."""
    c = ScoreComponents(accuracy, consistency, volume_score, recency_score)
    return W_ACC * c.accuracy + W_CONS * c.consistency + W_VOL * c.volume_score + W_REC * c.recency_score


def compute_creator_score(components: ScoreComponents) -> float:
    return compute_score(
        components.accuracy, components.consistency, components.volume_score, components.recency_score
    )


# ── Sub-score derivations ──

def accuracy_from_brier(brier_mean: float) -> float:
    return clamp01(1 - brier_mean)


def consistency_from_std(ret_std: float) -> float:
    if ret_std < 0:
        raise ScoreRangeError("retStd30d", ret_std, ">= 0")
    return clamp01(1 / (1 + ret_std))


def volume_score_from_notional(notional: float, norm: float = VOL_NORM) -> float:
    if notional < 0:
        raise ScoreRangeError("notional30d", notional, ">= 0")
    return clamp01(math.log1p(notional) / math.log1p(norm))


def recency_weights(days_ago: Sequence[float], half_life: float = HALF_LIFE_DAYS) -> List[float]:
    """exp(-k * d) with k = ln2 / half_life, normalized to sum to 1."""
    k = math.log(2) / half_life
    weights = [math.exp(-k * d) for d in days_ago]
    total = sum(weights)
    return [w / total for w in weights] if total > 0 else weights


def recency_score(daily_accuracy: Sequence[float], days_ago: Optional[Sequence[float]] = None) -> float:
    """Decay-weighted accuracy; daily_accuracy[0] is today unless days_ago says otherwise."""
    if not daily_accuracy:
        return 0.0
    if days_ago is None:
        days_ago = list(range(len(daily_accuracy)))
    if len(days_ago) != len(daily_accuracy):
        raise ValueError("daily_accuracy and days_ago must have the same length")
    accuracies = [check_unit_interval(f"dailyAccuracy[{i}]", a) for i, a in enumerate(daily_accuracy)]
    weights = recency_weights(days_ago)
    return clamp01(sum(w * a for w, a in zip(weights, accuracies)))


def is_provisional(matured_n: int) -> bool:
    return matured_n < PROVISIONAL_THRESHOLD


def calculate_trend(current: float, previous: float) -> str:
    diff = current - previous
    if abs(diff) < TREND_FLAT_THRESHOLD:
        return "flat"
    return "up" if diff > 0 else "down"


@dataclass(frozen=True)
class ScoreBreakdown:
    accuracy: float
    consistency: float
    volume_score: float
    recency_score: float
    total_score: float
    is_provisional: bool
    matured_n: int

    def to_dict(self) -> Dict:
        return {
            "accuracy": self.accuracy,
            "consistency": self.consistency,
            "volumeScore": self.volume_score,
            "recencyScore": self.recency_score,
            "score": self.total_score,
            "isProvisional": self.is_provisional,
            "maturedN": self.matured_n,
        }


def calculate_creator_score(
    matured_n: int,
    brier_mean: float,
    ret_std_30d: Optional[float],
    notional_30d: float,
    daily_accuracy: Optional[Sequence[float]] = None,
) -> ScoreBreakdown:
    """Full breakdown for one creator/day. A creator with no return history gets zero consistency."""
    if matured_n < 0:
        raise ScoreRangeError("maturedN", matured_n, ">= 0")

    accuracy = accuracy_from_brier(brier_mean)
    consistency = consistency_from_std(ret_std_30d) if ret_std_30d is not None else 0.0
    volume = volume_score_from_notional(notional_30d)
    recency = recency_score(daily_accuracy or [])

    return ScoreBreakdown(
        accuracy=accuracy,
        consistency=consistency,
        volume_score=volume,
        recency_score=recency,
        total_score=compute_score(accuracy, consistency, volume, recency),
        is_provisional=is_provisional(matured_n),
        matured_n=matured_n,
    )
