"""Calibration of predicted probabilities against realized outcomes.

Only matured predictions count. Predictions are bucketed into fixed-width
bins over [0,1]; each bin reports the mean predicted probability, the hit
rate and its size. The Brier score over all matured predictions maps to a
status through BRIER_GOOD / BRIER_FAIR.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

BRIER_GOOD = 0.18
BRIER_FAIR = 0.22
BIN_COUNT = 10
MATURED_MIN_N = 50

NOTE_INSUFFICIENT = "insufficient_data"
NOTE_PROVISIONAL = "provisional"


class CalibrationStatus(str, Enum):
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


@dataclass(frozen=True)
class Prediction:
    predicted_p: float
    outcome: int
    matured: bool = True

    def __post_init__(self):
        if not 0.0 <= self.predicted_p <= 1.0:
            raise ValueError(f"predicted probability must be in [0,1], got {self.predicted_p}")
        if self.outcome not in (0, 1):
            raise ValueError(f"outcome must be 0 or 1, got {self.outcome}")

    @classmethod
    def from_dict(cls, data: Dict) -> "Prediction":
        outcome = data.get("actualOutcome", data.get("outcome"))
        if isinstance(outcome, bool):
            outcome = int(outcome)
        return cls(
            predicted_p=float(data.get("predictedP", data.get("predicted_p"))),
            outcome=outcome,
            matured=bool(data.get("matured", True)),
        )


@dataclass(frozen=True)
class CalibrationBin:
    p: float
    hit_rate: float
    n: int

    def to_dict(self) -> Dict:
        return {"p": self.p, "hit_rate": self.hit_rate, "n": self.n}


@dataclass(frozen=True)
class CalibrationResult:
    bins: List[CalibrationBin]
    brier_score: Optional[float]
    status: Optional[CalibrationStatus]
    matured_n: int
    matured_coverage: float
    note: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "bins": [b.to_dict() for b in self.bins],
            "brierScore": self.brier_score,
            "status": self.status.value if self.status else None,
            "maturedN": self.matured_n,
            "maturedCoverage": self.matured_coverage,
            "note": self.note,
        }


def brier_score(predictions: Sequence[Prediction]) -> float:
    if not predictions:
        raise ValueError("brier score needs at least one prediction")
    return sum((p.predicted_p - p.outcome) ** 2 for p in predictions) / len(predictions)


def calibration_status(brier: float) -> CalibrationStatus:
    if brier <= BRIER_GOOD:
        return CalibrationStatus.GOOD
    if brier <= BRIER_FAIR:
        return CalibrationStatus.FAIR
    return CalibrationStatus.POOR


def bin_index(p: float, bin_count: int = BIN_COUNT) -> int:
    return min(int(p * bin_count), bin_count - 1)


def calibration_bins(predictions: Sequence[Prediction], bin_count: int = BIN_COUNT) -> List[CalibrationBin]:
    buckets: List[List[Prediction]] = [[] for _ in range(bin_count)]
    for pred in predictions:
        buckets[bin_index(pred.predicted_p, bin_count)].append(pred)

    bins = []
    for bucket in buckets:
        if not bucket:
            continue
        n = len(bucket)
        bins.append(CalibrationBin(
            p=sum(p.predicted_p for p in bucket) / n,
            hit_rate=sum(p.outcome for p in bucket) / n,
            n=n,
        ))
    return bins


def evaluate_calibration(predictions: Sequence[Prediction]) -> CalibrationResult:
    total = len(predictions)
    matured = [p for p in predictions if p.matured]
    coverage = round(len(matured) / total, 4) if total else 0.0

    if not matured:
        return CalibrationResult(
            bins=[],
            brier_score=None,
            status=None,
            matured_n=0,
            matured_coverage=coverage,
            note=NOTE_INSUFFICIENT,
        )

    brier = brier_score(matured)
    note = NOTE_PROVISIONAL if len(matured) < MATURED_MIN_N else None
    return CalibrationResult(
        bins=calibration_bins(matured),
        brier_score=brier,
        status=calibration_status(brier),
        matured_n=len(matured),
        matured_coverage=coverage,
        note=note,
    )


def has_sufficient_calibration_data(matured_n: int) -> bool:
    return matured_n >= MATURED_MIN_N
