"""
Uncertainty Propagation.

Generic Monte Carlo error propagation: draw M joint samples of the
uncertain inputs, evaluate an arbitrary deterministic function on each,
and summarize the empirical output distribution (mean, median, std and
the 2.5 / 97.5 percentiles as a 95% interval).

Usage:
    inputs = [UncertainInput(name="x", distribution=Distribution.beta(8, 2))]
    analysis = UncertaintyPropagator().propagate(inputs, lambda s: s["x"] ** 2, seed=7)
    print(analysis.ci_lower, analysis.ci_upper)
"""

from enum import Enum
from typing import Callable, Mapping, Optional, Sequence

import numpy as np
import structlog
from pydantic import BaseModel, ConfigDict, Field

from joshua.config import Settings, settings as default_settings
from joshua.core.exceptions import ConfigurationError
from joshua.models.factor import RiskFactor

logger = structlog.get_logger(__name__)

CI_LEVEL: float = 0.95
# Beta concentration per unit of confidence multiplier
CONCENTRATION_SCALE: float = 50.0
MIN_CONCENTRATION: float = 2.0
BETA_MEAN_EPSILON: float = 0.01


class DistributionType(str, Enum):
    """Supported distribution types."""
    NORMAL = "normal"
    BETA = "beta"
    UNIFORM = "uniform"
    TRIANGULAR = "triangular"
    EMPIRICAL = "empirical"
    POINT = "point"  # Degenerate distribution (known value)


class Distribution(BaseModel):
    """
    A sampling distribution for one uncertain input.
    """
    model_config = ConfigDict(frozen=True)

    type: DistributionType = Field(description="Distribution type")
    parameters: dict = Field(default_factory=dict, description="Distribution parameters")

    @classmethod
    def normal(cls, mean: float, std: float) -> "Distribution":
        return cls(type=DistributionType.NORMAL, parameters={"mean": mean, "std": std})

    @classmethod
    def beta(cls, alpha: float, beta: float) -> "Distribution":
        return cls(type=DistributionType.BETA, parameters={"alpha": alpha, "beta": beta})

    @classmethod
    def uniform(cls, low: float, high: float) -> "Distribution":
        return cls(type=DistributionType.UNIFORM, parameters={"low": low, "high": high})

    @classmethod
    def point(cls, value: float) -> "Distribution":
        return cls(type=DistributionType.POINT, parameters={"value": value})

    def sample(self, n: int, rng: np.random.Generator) -> np.ndarray:
        """Draw n samples with the caller's generator."""
        p = self.parameters
        if self.type == DistributionType.NORMAL:
            return rng.normal(p.get("mean", 0.0), p.get("std", 1.0), size=n)
        elif self.type == DistributionType.BETA:
            return rng.beta(p.get("alpha", 2.0), p.get("beta", 2.0), size=n)
        elif self.type == DistributionType.UNIFORM:
            return rng.uniform(p.get("low", 0.0), p.get("high", 1.0), size=n)
        elif self.type == DistributionType.TRIANGULAR:
            low = p.get("low", 0.0)
            high = p.get("high", 1.0)
            return rng.triangular(low, p.get("mode", (low + high) / 2), high, size=n)
        elif self.type == DistributionType.EMPIRICAL:
            return rng.choice(np.asarray(p.get("samples", [0.0]), dtype=float), size=n)
        elif self.type == DistributionType.POINT:
            return np.full(n, float(p.get("value", 0.0)))
        else:
            raise ConfigurationError(f"Unknown distribution type: {self.type}", config_key="distribution")

    def mean(self) -> float:
        """Calculate expected value."""
        p = self.parameters
        if self.type == DistributionType.NORMAL:
            return p.get("mean", 0.0)
        elif self.type == DistributionType.BETA:
            a = p.get("alpha", 2.0)
            b = p.get("beta", 2.0)
            return a / (a + b)
        elif self.type == DistributionType.UNIFORM:
            return (p.get("low", 0.0) + p.get("high", 1.0)) / 2
        elif self.type == DistributionType.TRIANGULAR:
            low = p.get("low", 0.0)
            high = p.get("high", 1.0)
            return (low + p.get("mode", (low + high) / 2) + high) / 3
        elif self.type == DistributionType.EMPIRICAL:
            return float(np.mean(p.get("samples", [0.0])))
        return p.get("value", 0.0)


class UncertainInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Key under which samples are passed to the function")
    distribution: Distribution


class UncertaintyAnalysis(BaseModel):
    """Empirical output distribution of a propagated calculation."""
    model_config = ConfigDict(frozen=True)

    mean: float
    median: float
    std: float
    ci_lower: float = Field(description="2.5th percentile")
    ci_upper: float = Field(description="97.5th percentile")
    ci_level: float = CI_LEVEL
    n_samples: int
    seed: Optional[int] = None

    @property
    def interval(self) -> tuple[float, float]:
        return (self.ci_lower, self.ci_upper)

    @property
    def width(self) -> float:
        return self.ci_upper - self.ci_lower


class UncertaintyPropagator:
    """Monte Carlo error propagation over any deterministic function."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def propagate(
        self,
        inputs: Sequence[UncertainInput],
        fn: Callable[[Mapping[str, float]], float],
        n_samples: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> UncertaintyAnalysis:
        n = n_samples or self.config.uncertainty_samples
        names = [i.name for i in inputs]
        if len(set(names)) != len(names):
            raise ConfigurationError("uncertain input names must be unique", config_key="inputs")

        rng = np.random.default_rng(seed)
        draws = {i.name: i.distribution.sample(n, rng) for i in inputs}
        outputs = np.array([
            fn({name: float(draws[name][k]) for name in names})
            for k in range(n)
        ])

        lower, upper = np.percentile(outputs, [2.5, 97.5])
        analysis = UncertaintyAnalysis(
            mean=float(outputs.mean()),
            median=float(np.median(outputs)),
            std=float(outputs.std(ddof=1)) if n > 1 else 0.0,
            ci_lower=float(lower),
            ci_upper=float(upper),
            n_samples=n,
            seed=seed,
        )
        logger.debug(
            "uncertainty_propagated",
            n_inputs=len(inputs),
            n_samples=n,
            mean=round(analysis.mean, 6),
            ci_lower=round(analysis.ci_lower, 6),
            ci_upper=round(analysis.ci_upper, 6),
        )
        return analysis


def beta_for_factor(factor: RiskFactor) -> Distribution:
    """
    Beta centred on the factor value; higher confidence means a tighter
    distribution (concentration = 50 × confidence multiplier).
    """
    mu = min(1.0 - BETA_MEAN_EPSILON, max(BETA_MEAN_EPSILON, factor.value))
    kappa = max(MIN_CONCENTRATION, CONCENTRATION_SCALE * factor.confidence_multiplier)
    return Distribution.beta(alpha=mu * kappa, beta=(1.0 - mu) * kappa)
