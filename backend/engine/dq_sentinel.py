"""Data quality sentinel for CreatorDaily records.

Runs over persisted daily score rows and reports invariant violations with
enough context for triage. Bad records never raise: every problem, including
an unreadable record, becomes a violation in the report.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from engine.creator_score import TOLERANCE, W_ACC, W_CONS, W_REC, W_VOL, clamp01

logger = logging.getLogger(__name__)

COMPONENT_FIELDS = ("accuracy", "consistency", "volumeScore", "recencyScore", "score")
REQUIRED_FIELDS = (
    "creatorId", "day", "score", "accuracy", "consistency", "volumeScore",
    "recencyScore", "maturedN", "brierMean", "notional30d",
)

KIND_RANGE = "range"
KIND_MISMATCH = "calculation_mismatch"
KIND_MALFORMED = "malformed"


@dataclass(frozen=True)
class DataQualityViolation:
    creator_id: str
    field: str
    value: Any
    expected: Any
    day: str
    kind: str
    message: str
    severity: str = "error"

    @property
    def creator_id_hashed(self) -> str:
        return hash_creator_id(self.creator_id)

    def to_dict(self) -> Dict:
        return {
            "creatorId": self.creator_id,
            "creatorIdHashed": self.creator_id_hashed,
            "field": self.field,
            "value": self.value,
            "expected": self.expected,
            "day": self.day,
            "severity": self.severity,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass(frozen=True)
class DataQualityReport:
    violations: List[DataQualityViolation]
    total_records: int
    checked_at: str

    @property
    def ok(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict:
        errors = sum(1 for v in self.violations if v.severity == "error")
        return {
            "ok": self.ok,
            "violations": [v.to_dict() for v in self.violations],
            "summary": {
                "totalRecords": self.total_records,
                "violationCount": len(self.violations),
                "errorCount": errors,
                "warningCount": len(self.violations) - errors,
            },
            "checkedAt": self.checked_at,
        }


def hash_creator_id(creator_id: str) -> str:
    return hashlib.sha256(str(creator_id).encode()).hexdigest()[:8]


def _within_tolerance(actual: float, expected: float) -> bool:
    return abs(actual - expected) <= TOLERANCE


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_component_range(value: float, field: str, creator_id: str, day: str) -> Optional[DataQualityViolation]:
    if value < 0 or value > 1:
        return DataQualityViolation(
            creator_id, field, value, "[0,1]", day, KIND_RANGE,
            f"{field} must be in range [0,1], got {value}",
        )
    return None


def validate_accuracy(accuracy: float, brier_mean: float, creator_id: str, day: str) -> Optional[DataQualityViolation]:
    expected = clamp01(1 - brier_mean)
    if not _within_tolerance(accuracy, expected):
        return DataQualityViolation(
            creator_id, "accuracy", accuracy, expected, day, KIND_MISMATCH,
            f"accuracy ({accuracy}) should equal 1 - brierMean ({expected})",
        )
    return None


def validate_score(record: Dict, creator_id: str, day: str) -> Optional[DataQualityViolation]:
    expected = (
        W_ACC * record["accuracy"]
        + W_CONS * record["consistency"]
        + W_VOL * record["volumeScore"]
        + W_REC * record["recencyScore"]
    )
    if not _within_tolerance(record["score"], expected):
        return DataQualityViolation(
            creator_id, "score", record["score"], expected, day, KIND_MISMATCH,
            f"score ({record['score']}) should equal weighted sum of components ({expected})",
        )
    return None


def validate_non_negative(value: float, field: str, creator_id: str, day: str) -> Optional[DataQualityViolation]:
    if value < 0:
        return DataQualityViolation(
            creator_id, field, value, ">= 0", day, KIND_RANGE,
            f"{field} must be non-negative, got {value}",
        )
    return None


def validate_ret_std(ret_std: Optional[float], creator_id: str, day: str) -> Optional[DataQualityViolation]:
    if ret_std is not None and ret_std < 0:
        return DataQualityViolation(
            creator_id, "retStd30d", ret_std, ">= 0 or null", day, KIND_RANGE,
            f"retStd30d must be non-negative or null, got {ret_std}",
        )
    return None


def _day_str(day) -> str:
    if isinstance(day, (datetime, date)):
        return day.isoformat()[:10]
    return str(day)[:10] if day is not None else ""


def _parse_day(day) -> Optional[date]:
    if isinstance(day, datetime):
        return day.date()
    if isinstance(day, date):
        return day
    try:
        return date.fromisoformat(str(day)[:10])
    except ValueError:
        return None


def check_record(record: Dict) -> List[DataQualityViolation]:
    creator_id = str(record.get("creatorId", "unknown"))
    day = _day_str(record.get("day"))

    malformed = []
    for field in REQUIRED_FIELDS:
        if field not in record:
            malformed.append(field)
        elif field not in ("creatorId", "day") and not _is_number(record[field]):
            malformed.append(field)
    if "retStd30d" in record and record["retStd30d"] is not None and not _is_number(record["retStd30d"]):
        malformed.append("retStd30d")
    if malformed:
        return [
            DataQualityViolation(
                creator_id, field, record.get(field), "number", day, KIND_MALFORMED,
                f"{field} is missing or not numeric",
            )
            for field in malformed
        ]

    checks = [validate_component_range(record[f], f, creator_id, day) for f in COMPONENT_FIELDS]
    checks += [
        validate_accuracy(record["accuracy"], record["brierMean"], creator_id, day),
        validate_score(record, creator_id, day),
        validate_non_negative(record["maturedN"], "maturedN", creator_id, day),
        validate_non_negative(record["notional30d"], "notional30d", creator_id, day),
        validate_ret_std(record.get("retStd30d"), creator_id, day),
    ]
    return [v for v in checks if v is not None]


def run_data_quality_checks(
    records: Iterable[Dict],
    days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DataQualityReport:
    """Check every record (optionally only those from the last `days` days)."""
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(days=days)).date() if days is not None else None

    violations: List[DataQualityViolation] = []
    total = 0
    for record in records:
        if not isinstance(record, dict):
            total += 1
            violations.append(DataQualityViolation(
                "unknown", "record", repr(record)[:80], "object", "", KIND_MALFORMED,
                "record is not an object",
            ))
            continue
        if cutoff is not None:
            record_day = _parse_day(record.get("day"))
            if record_day is not None and record_day < cutoff:
                continue
        total += 1
        violations.extend(check_record(record))

    if violations:
        logger.warning("Data quality: %d violations across %d records", len(violations), total)
    else:
        logger.info("Data quality: %d records clean", total)

    return DataQualityReport(violations=violations, total_records=total, checked_at=now.isoformat())
