"""
Risk factor data model.

A RiskFactor is one normalized, confidence-tagged observation. Factors are
produced upstream once per assessment cycle and never mutated by the engine.
"""

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from joshua.core.exceptions import InvalidFactorValueError


class RiskCategory(str, Enum):
    """The eight fixed risk categories."""
    ARSENAL_CHANGES = "arsenal_changes"
    DOCTRINE_AND_POSTURE = "doctrine_and_posture"
    REGIONAL_CONFLICTS = "regional_conflicts"
    LEADERSHIP_AND_RHETORIC = "leadership_and_rhetoric"
    TECHNICAL_INCIDENTS = "technical_incidents"
    COMMUNICATION_BREAKDOWN = "communication_breakdown"
    EMERGING_TECHNOLOGY = "emerging_technology"
    ECONOMIC_FACTORS = "economic_factors"

    @property
    def default_weight(self) -> float:
        return DEFAULT_CATEGORY_WEIGHTS[self]


DEFAULT_CATEGORY_WEIGHTS: dict[RiskCategory, float] = {
    RiskCategory.ARSENAL_CHANGES: 0.15,
    RiskCategory.DOCTRINE_AND_POSTURE: 0.15,
    RiskCategory.REGIONAL_CONFLICTS: 0.20,
    RiskCategory.LEADERSHIP_AND_RHETORIC: 0.10,
    RiskCategory.TECHNICAL_INCIDENTS: 0.15,
    RiskCategory.COMMUNICATION_BREAKDOWN: 0.10,
    RiskCategory.EMERGING_TECHNOLOGY: 0.10,
    RiskCategory.ECONOMIC_FACTORS: 0.05,
}


class ConfidenceLevel(str, Enum):
    """Ordinal confidence attached to every factor."""
    VERY_LOW = "very_low"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def multiplier(self) -> float:
        return CONFIDENCE_MULTIPLIERS[self]

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        """Nearest ordinal for a numeric confidence (midpoints between multipliers)."""
        if score < 0.5:
            return cls.VERY_LOW
        if score < 0.6875:
            return cls.LOW
        if score < 0.8375:
            return cls.MODERATE
        if score < 0.9375:
            return cls.HIGH
        return cls.VERY_HIGH


# Fixed for the whole process; not configurable per instance.
CONFIDENCE_MULTIPLIERS: dict[ConfidenceLevel, float] = {
    ConfidenceLevel.VERY_LOW: 0.40,
    ConfidenceLevel.LOW: 0.60,
    ConfidenceLevel.MODERATE: 0.775,
    ConfidenceLevel.HIGH: 0.90,
    ConfidenceLevel.VERY_HIGH: 0.975,
}


class TrendDirection(str, Enum):
    """Direction of risk compared to the historical baseline."""
    IMPROVING = "improving"
    STABLE = "stable"
    DETERIORATING = "deteriorating"
    UNCERTAIN = "uncertain"


@dataclass(frozen=True)
class RiskFactor:
    """
    One risk indicator.

    value is a normalized risk level in [0, 1]. Out-of-range values are
    rejected at construction, never clamped.
    weight is the optional within-category weight; when omitted the scorer
    spreads the category evenly across its factors.
    """
    category: RiskCategory
    name: str
    value: float
    confidence: ConfidenceLevel = ConfidenceLevel.MODERATE
    sources: frozenset[str] = frozenset()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trend: TrendDirection = TrendDirection.STABLE
    weight: Optional[float] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self):
        try:
            object.__setattr__(self, "category", RiskCategory(self.category))
        except ValueError:
            raise InvalidFactorValueError(
                f"Unknown risk category {self.category!r}",
                field="category",
                value=self.category,
            ) from None
        try:
            object.__setattr__(self, "confidence", ConfidenceLevel(self.confidence))
        except ValueError:
            raise InvalidFactorValueError(
                f"Unknown confidence level {self.confidence!r}",
                field="confidence",
                value=self.confidence,
            ) from None
        object.__setattr__(self, "trend", TrendDirection(self.trend))
        object.__setattr__(self, "sources", frozenset(self.sources))

        validate_factor_value(self.name, self.value)
        if self.weight is not None and not (self.weight > 0 and math.isfinite(self.weight)):
            raise InvalidFactorValueError(
                f"Factor {self.name!r} weight must be positive, got {self.weight}",
                field="weight",
                value=self.weight,
            )

    @property
    def confidence_multiplier(self) -> float:
        return self.confidence.multiplier

    @property
    def weighted_value(self) -> float:
        """Value scaled by the category default weight."""
        return self.value * self.category.default_weight

    def with_value(self, value: float) -> "RiskFactor":
        """Copy of this factor carrying a different value (re-validated)."""
        return replace(self, value=value)


def validate_factor_value(name: str, value: float) -> None:
    """Reject anything that is not a finite number within [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidFactorValueError(
            f"Factor {name!r} value must be numeric, got {type(value).__name__}",
            field="value",
            value=value,
        )
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise InvalidFactorValueError(
            f"Factor {name!r} value {value} is outside [0, 1]",
            field="value",
            value=value,
        )

