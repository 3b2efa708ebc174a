"""
Weighted Risk Scorer.

Aggregates risk factors into a single base score in [0, 1]:

    category_score_c = Σ(w_i × conf_i × v_i) / Σ(w_i × conf_i)
    applied_weight_c = category_weight_c × mean(conf_i)
    base_score       = Σ(applied_weight_c × category_score_c) / Σ applied_weight_c

w_i is the factor's own weight or 1/len(category). Low-confidence
categories therefore pull less on the composite.

Validation happens on the whole input before any aggregation starts.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import structlog

from joshua.config import Settings, settings as default_settings
from joshua.core.exceptions import InvalidFactorValueError
from joshua.models.factor import RiskCategory, RiskFactor, validate_factor_value
from joshua.models.score import PrimaryDriver

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FactorContribution:
    """How a single factor contributed to the base score."""
    name: str
    category: RiskCategory
    value: float
    confidence: float
    factor_weight: float          # within-category weight
    contribution: float           # share of the normalized base score


@dataclass(frozen=True)
class CategoryScore:
    category: RiskCategory
    score: float                  # confidence-weighted mean of factor values
    mean_confidence: float
    applied_weight: float         # category weight × mean confidence
    n_factors: int


@dataclass(frozen=True)
class ScoreBreakdown:
    """Full trace of a base score computation."""
    base_score: float
    total_applied_weight: float
    categories: dict[RiskCategory, CategoryScore] = field(default_factory=dict)
    contributions: tuple[FactorContribution, ...] = ()

    def primary_drivers(self, top_n: int = 3) -> tuple[PrimaryDriver, ...]:
        """Factors ranked by their share of the base score."""
        total = sum(c.contribution for c in self.contributions)
        ranked = sorted(self.contributions, key=lambda c: (-c.contribution, c.name))
        return tuple(
            PrimaryDriver(
                name=c.name,
                category=c.category.value,
                value=c.value,
                contribution=round(c.contribution, 6),
                pct_contribution=round(c.contribution / total * 100, 1) if total > 0 else 0.0,
            )
            for c in ranked[:top_n]
        )


@dataclass(frozen=True)
class CategoryEvaluator:
    """Evaluation parameters for one risk category."""
    category: RiskCategory
    weight: float

    def evaluate(self, factors: Sequence[RiskFactor]) -> CategoryScore:
        default_w = 1.0 / len(factors)
        num = 0.0
        den = 0.0
        for f in factors:
            w = f.weight if f.weight is not None else default_w
            c = f.confidence_multiplier
            num += w * c * f.value
            den += w * c
        mean_conf = sum(f.confidence_multiplier for f in factors) / len(factors)
        return CategoryScore(
            category=self.category,
            score=num / den if den > 0 else 0.0,
            mean_confidence=mean_conf,
            applied_weight=self.weight * mean_conf,
            n_factors=len(factors),
        )


def build_evaluators(config: Settings) -> dict[RiskCategory, CategoryEvaluator]:
    weights = config.category_weights
    return {
        category: CategoryEvaluator(category=category, weight=weights[category.value])
        for category in RiskCategory
    }


def validate_factors(factors: Iterable[RiskFactor]) -> list[RiskFactor]:
    """
    Check every factor before aggregation begins.

    RiskFactor already validates on construction; this guards against
    objects built around that (duck-typed inputs, object.__setattr__).
    """
    checked = []
    for f in factors:
        if not isinstance(f.category, RiskCategory):
            raise InvalidFactorValueError(
                f"Unknown risk category {f.category!r}", field="category", value=f.category
            )
        validate_factor_value(f.name, f.value)
        checked.append(f)
    return checked


class WeightedScorer:
    """
    Expert-weighted aggregation of risk factors.

    Deterministic: identical input gives an identical score.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.evaluators = build_evaluators(self.config)

    def calculate_base_score(self, factors: Sequence[RiskFactor]) -> float:
        """Base score in [0, 1]; 0.0 for an empty factor set."""
        return self.breakdown(factors).base_score

    def breakdown(self, factors: Sequence[RiskFactor]) -> ScoreBreakdown:
        checked = validate_factors(factors)
        if not checked:
            return ScoreBreakdown(base_score=0.0, total_applied_weight=0.0)

        by_category: dict[RiskCategory, list[RiskFactor]] = defaultdict(list)
        for f in checked:
            by_category[f.category].append(f)

        categories: dict[RiskCategory, CategoryScore] = {}
        weighted_sum = 0.0
        total_weight = 0.0
        # Iterate in enum order so float summation order is stable
        for category in RiskCategory:
            members = by_category.get(category)
            if not members:
                continue
            result = self.evaluators[category].evaluate(members)
            categories[category] = result
            weighted_sum += result.applied_weight * result.score
            total_weight += result.applied_weight

        if total_weight <= 0:
            logger.warning("base_score_zero_weight", n_factors=len(checked))
            return ScoreBreakdown(base_score=0.0, total_applied_weight=0.0, categories=categories)

        base = min(1.0, max(0.0, weighted_sum / total_weight))

        contributions = []
        for category, members in by_category.items():
            cat = categories[category]
            default_w = 1.0 / len(members)
            den = sum(
                (f.weight if f.weight is not None else default_w) * f.confidence_multiplier
                for f in members
            )
            for f in members:
                w = f.weight if f.weight is not None else default_w
                share = w * f.confidence_multiplier / den if den > 0 else 0.0
                contributions.append(FactorContribution(
                    name=f.name,
                    category=category,
                    value=f.value,
                    confidence=f.confidence_multiplier,
                    factor_weight=w,
                    contribution=cat.applied_weight * share * f.value / total_weight,
                ))

        logger.debug(
            "base_score_calculated",
            base_score=round(base, 6),
            n_factors=len(checked),
            n_categories=len(categories),
        )
        return ScoreBreakdown(
            base_score=base,
            total_applied_weight=total_weight,
            categories=categories,
            contributions=tuple(contributions),
        )
