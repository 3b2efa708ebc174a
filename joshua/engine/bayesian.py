"""
Bayesian Score Adjustment.

Two independent Bayesian steps applied to the weighted base score:

1. Network adjustment: every factor becomes soft evidence on its network
   node; belief propagation yields posterior marginals, and the
   confidence-weighted divergence between posterior and prior P(high)
   moves the score, bounded so it stays in [0, 1]:

       d        = Σ w_i (post_i − prior_i) / Σ w_i
       adjusted = base + s·d·(1 − base)   if d ≥ 0
                  base + s·d·base         otherwise

2. Historical prior: the past score distribution is a Normal prior, the
   network-adjusted score one observation; Normal-Normal conjugate update.

Every fallback taken is reported in BayesianAdjustment.flags.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import structlog

from joshua.config import Settings, settings as default_settings
from joshua.engine.network import BayesianNetwork
from joshua.models.factor import RiskCategory, RiskFactor

logger = structlog.get_logger(__name__)

# ── Configuration (no magic numbers) ─────────────────────────────────────

CREDIBLE_INTERVAL_LEVEL: float = 0.95
MIN_HISTORY_FOR_PRIOR: int = 2
UNINFORMED_PRIOR: float = 0.5

FLAG_NOT_CONVERGED = "belief_propagation_not_converged"
FLAG_PRIOR_SKIPPED = "historical_prior_skipped"
FLAG_OUTSIDE_NETWORK = "factors_outside_network"


@dataclass(frozen=True)
class FactorEvidence:
    """Evidence for one network node, merged across same-named factors."""
    name: str
    category: RiskCategory
    value: float
    confidence: float

    @property
    def likelihood(self) -> tuple[float, float]:
        """Soft evidence over (low, high), tempered toward flat by confidence."""
        c = self.confidence
        return (c * (1.0 - self.value) + (1.0 - c) * 0.5, c * self.value + (1.0 - c) * 0.5)


@dataclass(frozen=True)
class NodeBelief:
    """Prior and posterior P(high) for one evidenced node."""
    name: str
    category: RiskCategory
    prior: float
    posterior: float
    weight: float            # category weight × confidence
    in_network: bool

    @property
    def shift(self) -> float:
        return self.posterior - self.prior


@dataclass(frozen=True)
class NormalPosterior:
    """
    Result of a Normal-Normal Bayesian update of the score.
    """
    mean: float
    std: float
    ci_lower: float
    ci_upper: float
    ci_level: float
    n_observations: int
    prior_mean: float
    prior_std: float
    data_influence: float


@dataclass(frozen=True)
class BayesianAdjustment:
    """Full trace of the Bayesian stage."""
    base_score: float
    network_adjusted_score: float
    adjusted_score: float
    divergence: float
    beliefs: tuple[NodeBelief, ...] = ()
    historical_prior: Optional[NormalPosterior] = None
    propagation_iterations: int = 0
    converged: bool = True
    flags: tuple[str, ...] = ()


class BayesianAdjuster:
    """
    Applies network evidence and the historical prior to a base score.

    Stateless apart from configuration; safe to share across concurrent
    requests as long as each passes its own network snapshot.
    """

    def __init__(self, config: Optional[Settings] = None, ci_level: float = CREDIBLE_INTERVAL_LEVEL):
        self.config = config or default_settings
        self.ci_level = ci_level

    def evidence_from_factors(self, factors: Sequence[RiskFactor]) -> dict[str, FactorEvidence]:
        """Merge factors by name (confidence-weighted mean value, mean confidence)."""
        grouped: dict[str, list[RiskFactor]] = {}
        for f in factors:
            grouped.setdefault(f.name, []).append(f)

        evidence = {}
        for name, members in grouped.items():
            total_conf = sum(f.confidence_multiplier for f in members)
            value = sum(f.value * f.confidence_multiplier for f in members) / total_conf
            evidence[name] = FactorEvidence(
                name=name,
                category=members[0].category,
                value=min(1.0, max(0.0, value)),
                confidence=total_conf / len(members),
            )
        return evidence

    def adjust(
        self,
        base_score: float,
        factors: Sequence[RiskFactor],
        network: Optional[BayesianNetwork] = None,
        max_iterations: Optional[int] = None,
    ) -> BayesianAdjustment:
        """Network step only: divergence between prior and posterior marginals."""
        flags: list[str] = []
        evidence = self.evidence_from_factors(factors)
        if not evidence:
            return BayesianAdjustment(
                base_score=base_score,
                network_adjusted_score=base_score,
                adjusted_score=base_score,
                divergence=0.0,
            )

        network = network or BayesianNetwork().freeze()
        cap = max_iterations if max_iterations is not None else self.config.bp_max_iterations
        known = {n: e for n, e in evidence.items() if n in network}
        outside = sorted(n for n in evidence if n not in network)

        iterations = 0
        converged = True
        posteriors: dict[str, float] = {}
        priors: dict[str, float] = {}
        if known:
            prior_result = network.prior_marginals(max_iterations=cap, tolerance=self.config.bp_tolerance)
            posterior_result = network.junction_tree().propagate(
                {n: e.likelihood for n, e in known.items()},
                max_iterations=cap,
                tolerance=self.config.bp_tolerance,
            )
            iterations = posterior_result.iterations
            converged = posterior_result.converged and prior_result.converged
            for n in known:
                priors[n] = prior_result.probability(n)
                posteriors[n] = posterior_result.probability(n)
        if not converged:
            flags.append(FLAG_NOT_CONVERGED)

        # Isolated node with a flat prior: posterior is the normalized likelihood
        for n in outside:
            low, high = evidence[n].likelihood
            priors[n] = UNINFORMED_PRIOR
            posteriors[n] = high / (low + high)
        if outside:
            flags.append(FLAG_OUTSIDE_NETWORK)
            logger.debug("factors_outside_network", names=outside, n_nodes=len(network))

        weights = self.config.category_weights
        beliefs = []
        for name in sorted(evidence):
            e = evidence[name]
            beliefs.append(NodeBelief(
                name=name,
                category=e.category,
                prior=priors[name],
                posterior=posteriors[name],
                weight=weights[e.category.value] * e.confidence,
                in_network=name in known,
            ))

        total_w = sum(b.weight for b in beliefs)
        divergence = sum(b.weight * b.shift for b in beliefs) / total_w if total_w > 0 else 0.0
        adjusted = _bounded_shift(base_score, divergence, self.config.adjustment_strength)

        logger.debug(
            "bayesian_network_adjustment",
            base_score=round(base_score, 6),
            divergence=round(divergence, 6),
            adjusted_score=round(adjusted, 6),
            iterations=iterations,
            converged=converged,
        )
        return BayesianAdjustment(
            base_score=base_score,
            network_adjusted_score=adjusted,
            adjusted_score=adjusted,
            divergence=divergence,
            beliefs=tuple(beliefs),
            propagation_iterations=iterations,
            converged=converged,
            flags=tuple(flags),
        )

    def normal_update(
        self,
        data_mean: float,
        data_std: float,
        n_observations: int,
        prior_mean: float,
        prior_std: float,
    ) -> NormalPosterior:
        """
        Normal-Normal conjugate update.

        prior: N(μ₀, σ₀²)
        data: sample mean x̄, std s, n observations
        posterior: N(μ₁, σ₁²) where:
          σ₁² = 1 / (1/σ₀² + n/s²)
          μ₁ = σ₁² × (μ₀/σ₀² + n×x̄/s²)
        """
        z = 1.96 if self.ci_level == 0.95 else 2.576  # 95% or 99%
        if n_observations == 0 or data_std <= 0:
            return NormalPosterior(
                mean=prior_mean,
                std=prior_std,
                ci_lower=prior_mean - z * prior_std,
                ci_upper=prior_mean + z * prior_std,
                ci_level=self.ci_level,
                n_observations=0,
                prior_mean=prior_mean,
                prior_std=prior_std,
                data_influence=0.0,
            )

        prior_var = prior_std ** 2
        data_var = data_std ** 2

        post_var = 1.0 / (1.0 / prior_var + n_observations / data_var)
        post_mean = post_var * (prior_mean / prior_var + n_observations * data_mean / data_var)
        post_std = math.sqrt(post_var)

        return NormalPosterior(
            mean=post_mean,
            std=post_std,
            ci_lower=post_mean - z * post_std,
            ci_upper=post_mean + z * post_std,
            ci_level=self.ci_level,
            n_observations=n_observations,
            prior_mean=prior_mean,
            prior_std=prior_std,
            # Share of the posterior precision contributed by the data
            data_influence=round(1.0 - post_var / prior_var, 4),
        )

    def blend_historical_prior(
        self,
        score: float,
        past_scores: Sequence[float],
    ) -> Optional[NormalPosterior]:
        """Update the historical score distribution with the current score; None if too little history."""
        if len(past_scores) < MIN_HISTORY_FOR_PRIOR:
            return None
        arr = np.asarray(past_scores, dtype=float)
        prior_std = max(float(np.std(arr, ddof=1)), self.config.prior_std_floor)
        return self.normal_update(
            data_mean=score,
            data_std=self.config.observation_std,
            n_observations=1,
            prior_mean=float(np.mean(arr)),
            prior_std=prior_std,
        )

    def apply(
        self,
        base_score: float,
        factors: Sequence[RiskFactor],
        network: Optional[BayesianNetwork] = None,
        past_scores: Sequence[float] = (),
        max_iterations: Optional[int] = None,
    ) -> BayesianAdjustment:
        """Network adjustment followed by the historical prior blend."""
        result = self.adjust(base_score, factors, network, max_iterations=max_iterations)
        posterior = self.blend_historical_prior(result.network_adjusted_score, past_scores)
        if posterior is None:
            logger.debug("historical_prior_skipped", n_history=len(past_scores))
            return BayesianAdjustment(
                base_score=result.base_score,
                network_adjusted_score=result.network_adjusted_score,
                adjusted_score=result.adjusted_score,
                divergence=result.divergence,
                beliefs=result.beliefs,
                propagation_iterations=result.propagation_iterations,
                converged=result.converged,
                flags=result.flags + (FLAG_PRIOR_SKIPPED,),
            )

        return BayesianAdjustment(
            base_score=result.base_score,
            network_adjusted_score=result.network_adjusted_score,
            adjusted_score=min(1.0, max(0.0, posterior.mean)),
            divergence=result.divergence,
            beliefs=result.beliefs,
            historical_prior=posterior,
            propagation_iterations=result.propagation_iterations,
            converged=result.converged,
            flags=result.flags,
        )


def _bounded_shift(base: float, divergence: float, strength: float) -> float:
    if divergence >= 0:
        shifted = base + strength * divergence * (1.0 - base)
    else:
        shifted = base + strength * divergence * base
    return min(1.0, max(0.0, shifted))
