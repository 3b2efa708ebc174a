"""Data model: risk factors in, one comprehensive score out."""

from joshua.models.factor import (
    CONFIDENCE_MULTIPLIERS,
    DEFAULT_CATEGORY_WEIGHTS,
    ConfidenceLevel,
    RiskCategory,
    RiskFactor,
    TrendDirection,
)
from joshua.models.score import (
    AssessmentRecord,
    ComprehensiveRiskScore,
    PrimaryDriver,
    RiskLevel,
    classify_risk_level,
    score_to_seconds,
    seconds_to_score,
)

__all__ = [
    "CONFIDENCE_MULTIPLIERS",
    "DEFAULT_CATEGORY_WEIGHTS",
    "AssessmentRecord",
    "ComprehensiveRiskScore",
    "ConfidenceLevel",
    "PrimaryDriver",
    "RiskCategory",
    "RiskFactor",
    "RiskLevel",
    "TrendDirection",
    "classify_risk_level",
    "score_to_seconds",
    "seconds_to_score",
]
