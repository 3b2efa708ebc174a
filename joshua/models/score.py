"""
Assessment score model.

ComprehensiveRiskScore is the terminal artifact of one pipeline run. It is
created once, never mutated, and handed to storage/rendering collaborators.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from joshua.models.factor import ConfidenceLevel, TrendDirection

MAX_SECONDS_TO_MIDNIGHT: int = 1440  # noon
MIN_SECONDS_TO_MIDNIGHT: int = 0     # midnight


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    SEVERE = "severe"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


def score_to_seconds(score: float) -> int:
    """Map a [0, 1] risk score onto the 0..1440 seconds-to-midnight scale."""
    clipped = min(1.0, max(0.0, score))
    return int(round((1.0 - clipped) * MAX_SECONDS_TO_MIDNIGHT))


def seconds_to_score(seconds: int) -> float:
    clipped = min(MAX_SECONDS_TO_MIDNIGHT, max(MIN_SECONDS_TO_MIDNIGHT, seconds))
    return 1.0 - clipped / MAX_SECONDS_TO_MIDNIGHT


def classify_risk_level(
    seconds: int,
    critical: int = 100,
    severe: int = 200,
    high: int = 400,
    moderate: int = 600,
) -> RiskLevel:
    if seconds <= critical:
        return RiskLevel.CRITICAL
    if seconds <= severe:
        return RiskLevel.SEVERE
    if seconds <= high:
        return RiskLevel.HIGH
    if seconds <= moderate:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


@dataclass(frozen=True)
class AssessmentRecord:
    """
    Minimal record of a past assessment, as supplied by the storage layer.

    bayesian_adjusted_score is the pre-simulation posterior; the historical
    prior is built from it so that past simulation boosts are not fed back.
    """
    raw_score: float
    seconds_to_midnight: Optional[int] = None
    assessed_at: Optional[datetime] = None
    bayesian_adjusted_score: Optional[float] = None

    def __post_init__(self):
        if self.seconds_to_midnight is None:
            object.__setattr__(self, "seconds_to_midnight", score_to_seconds(self.raw_score))


@dataclass(frozen=True)
class PrimaryDriver:
    """A factor ranked by its share of the weighted base score."""
    name: str
    category: str
    value: float
    contribution: float       # applied weight × confidence × value
    pct_contribution: float   # share of all contributions, in %


@dataclass(frozen=True)
class ComprehensiveRiskScore:
    """
    Complete output of one risk calculation.

    - seconds_to_midnight / raw_score: final answer
    - base_score: weighted scorer output before any adjustment
    - bayesian_adjusted_score: after network adjustment and historical prior
    - confidence_interval: 95% interval from uncertainty propagation
    - flags: every fallback taken during the run (never silent)
    """
    seconds_to_midnight: int
    raw_score: float
    base_score: float
    bayesian_adjusted_score: float
    confidence_interval: tuple[float, float]
    trend: TrendDirection
    risk_level: RiskLevel
    overall_confidence: ConfidenceLevel
    simulation_results: Any = None
    trend_analysis: Any = None
    bayesian_adjustment: Any = None
    uncertainty_analysis: Any = None
    primary_drivers: tuple[PrimaryDriver, ...] = ()
    delta_from_previous: Optional[int] = None
    critical_warnings: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    assessed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not MIN_SECONDS_TO_MIDNIGHT <= self.seconds_to_midnight <= MAX_SECONDS_TO_MIDNIGHT:
            raise ValueError(f"seconds_to_midnight out of range: {self.seconds_to_midnight}")
        if not 0.0 <= self.raw_score <= 1.0:
            raise ValueError(f"raw_score out of range: {self.raw_score}")

    def to_record(self) -> AssessmentRecord:
        return AssessmentRecord(
            raw_score=self.raw_score,
            seconds_to_midnight=self.seconds_to_midnight,
            assessed_at=self.assessed_at,
            bayesian_adjusted_score=self.bayesian_adjusted_score,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-data view for storage and rendering collaborators."""
        def _plain(obj: Any) -> Any:
            if obj is None:
                return None
            if hasattr(obj, "__dataclass_fields__"):
                return {k: _plain(v) for k, v in asdict(obj).items()}
            if hasattr(obj, "model_dump"):
                return _plain(obj.model_dump())
            if isinstance(obj, dict):
                return {(k.value if isinstance(k, Enum) else str(k)): _plain(v) for k, v in obj.items()}
            if isinstance(obj, (list, tuple)):
                return [_plain(v) for v in obj]
            if isinstance(obj, (set, frozenset)):
                return sorted(_plain(v) for v in obj)
            if isinstance(obj, Enum):
                return obj.value
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, uuid.UUID):
                return str(obj)
            return obj

        return {
            "id": str(self.id),
            "assessed_at": self.assessed_at.isoformat(),
            "seconds_to_midnight": self.seconds_to_midnight,
            "raw_score": self.raw_score,
            "base_score": self.base_score,
            "bayesian_adjusted_score": self.bayesian_adjusted_score,
            "confidence_interval": list(self.confidence_interval),
            "trend": self.trend.value,
            "risk_level": self.risk_level.value,
            "overall_confidence": self.overall_confidence.value,
            "delta_from_previous": self.delta_from_previous,
            "primary_drivers": _plain(self.primary_drivers),
            "critical_warnings": list(self.critical_warnings),
            "flags": list(self.flags),
            "simulation_results": _plain(self.simulation_results),
            "trend_analysis": _plain(self.trend_analysis),
            "bayesian_adjustment": _plain(self.bayesian_adjustment),
            "uncertainty_analysis": _plain(self.uncertainty_analysis),
        }
