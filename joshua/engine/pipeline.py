"""
Risk Calculation Pipeline: orchestrates all engine components.

This is the single entry point for a risk assessment. It:
1. Aggregates factors into a weighted base score
2. Adjusts the score through the dependency network and historical prior
3. Simulates escalation trajectories forward in time
4. Analyzes the final-score series for trends and change points
5. Propagates factor uncertainty into a 95% interval
6. Assembles one immutable ComprehensiveRiskScore

Final score:
    raw = posterior + (1 − posterior) × simulation_weight × P(war)

Every fallback taken along the way is listed in ComprehensiveRiskScore.flags.
"""

from typing import Mapping, Optional, Sequence, Union

import structlog

from joshua.config import Settings, settings as default_settings
from joshua.core.logging import ensure_logging
from joshua.core.telemetry import PipelineContext
from joshua.engine.bayesian import BayesianAdjuster
from joshua.engine.calibration import (
    BacktestPeriod,
    BacktestSummary,
    CalibrationReport,
    HistoricalCalibrator,
    HistoricalEvent,
    WalkForwardBacktester,
)
from joshua.engine.network import BayesianNetwork, NetworkRegistry
from joshua.engine.scorer import WeightedScorer
from joshua.engine.simulation import MonteCarloSimulator, initial_state_from_factors
from joshua.engine.trend import TrendAnalyzer
from joshua.engine.uncertainty import UncertainInput, UncertaintyPropagator, beta_for_factor
from joshua.models.factor import ConfidenceLevel, RiskFactor
from joshua.models.score import (
    AssessmentRecord,
    ComprehensiveRiskScore,
    RiskLevel,
    classify_risk_level,
    score_to_seconds,
)

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

HIGH_FACTOR_VALUE: float = 0.9
WAR_PROBABILITY_WARNING: float = 0.05
RAPID_DETERIORATION_SECONDS: int = 60
WIDE_INTERVAL: float = 0.2

FLAG_SIMULATION_BUDGET = "simulation_budget_capped"
FLAG_PROPAGATION_BUDGET = "propagation_budget_capped"
FLAG_NO_FACTORS = "no_factors"
FLAG_PRIOR_FROM_RAW = "historical_prior_from_raw_scores"

HistoryItem = Union[AssessmentRecord, ComprehensiveRiskScore]


class RiskCalculationPipeline:
    """
    Production risk calculation pipeline.

    Orchestrates: Scorer → Bayesian → Monte Carlo → Trend → Uncertainty

    The network is read from a NetworkRegistry snapshot per request, so
    concurrent calculate() calls never observe a half-relearned network.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        network: Optional[Union[BayesianNetwork, NetworkRegistry]] = None,
        simulator: Optional[MonteCarloSimulator] = None,
    ):
        self.config = config or default_settings
        ensure_logging(self.config.log_level, self.config.log_format)
        if isinstance(network, NetworkRegistry):
            self.registry = network
        else:
            self.registry = NetworkRegistry(network, self.config)
        self.scorer = WeightedScorer(self.config)
        self.adjuster = BayesianAdjuster(self.config)
        self.trend = TrendAnalyzer(self.config)
        self.simulator = simulator or MonteCarloSimulator(self.config)
        self.uncertainty = UncertaintyPropagator(self.config)

    # ── Offline maintenance ───────────────────────────────────────────────

    def relearn_network(
        self,
        history: Mapping[str, Sequence[float]],
        context: Optional[PipelineContext] = None,
    ) -> BayesianNetwork:
        """Rebuild the dependency network from the historical corpus (exclusive)."""
        context = context or PipelineContext()
        with context.telemetry.stage("structure_learning"):
            network = self.registry.relearn(history)
        for rejected in network.rejected_edges:
            context.telemetry.edges_rejected_total.labels(reason=rejected.reason).inc()
        return network

    # ── Scoring ───────────────────────────────────────────────────────────

    def score_point(
        self,
        factors: Sequence[RiskFactor],
        network: Optional[BayesianNetwork] = None,
        past_scores: Sequence[float] = (),
        max_iterations: Optional[int] = None,
    ) -> float:
        """Deterministic score: weighted base + Bayesian adjustment, no simulation."""
        base = self.scorer.calculate_base_score(factors)
        network = network if network is not None else self.registry.snapshot()
        return self.adjuster.apply(
            base, factors, network, past_scores, max_iterations=max_iterations
        ).adjusted_score

    def calculate(
        self,
        factors: Sequence[RiskFactor],
        history: Sequence[HistoryItem] = (),
        context: Optional[PipelineContext] = None,
    ) -> ComprehensiveRiskScore:
        """Run the full pipeline for one assessment cycle."""
        context = context or PipelineContext()
        telemetry = context.telemetry
        log = logger.bind(run_id=context.run_id)
        flags: list[str] = []

        mc_iterations, bp_cap, budget_flags = self._budget_caps(context.budget_seconds)
        flags.extend(budget_flags)
        seed = context.seed if context.seed is not None else self.config.random_seed
        network = self.registry.snapshot()
        past_scores = [h.raw_score for h in history]
        past_posteriors = self._past_posteriors(history)
        if any(h.bayesian_adjusted_score is None for h in history):
            flags.append(FLAG_PRIOR_FROM_RAW)
        if not factors:
            flags.append(FLAG_NO_FACTORS)

        # ── 1. Weighted base score ───────────────────────────────────
        with telemetry.stage("weighted_scoring"):
            breakdown = self.scorer.breakdown(factors)

        # ── 2. Bayesian adjustment ───────────────────────────────────
        with telemetry.stage("bayesian_adjustment"):
            adjustment = self.adjuster.apply(
                breakdown.base_score, factors, network, past_posteriors, max_iterations=bp_cap
            )
        if not adjustment.converged:
            telemetry.bp_non_converged_total.inc()
        flags.extend(adjustment.flags)
        posterior = adjustment.adjusted_score

        # ── 3. Monte Carlo simulation ────────────────────────────────
        with telemetry.stage("monte_carlo"):
            simulation = self.simulator.simulate(
                initial_state_from_factors(factors),
                iterations=mc_iterations,
                seed=seed,
            )
        p_war = simulation.nuclear_war_probability
        raw = self._final_score(posterior, p_war)

        # ── 4. Trend analysis (final scores only) ────────────────────
        with telemetry.stage("trend_analysis"):
            trend = self.trend.analyze(past_scores + [raw])
        flags.extend(trend.flags)

        # ── 5. Uncertainty propagation ───────────────────────────────
        uncertainty = None
        if factors:
            with telemetry.stage("uncertainty"):
                uncertainty = self._propagate_uncertainty(factors, network, past_posteriors, bp_cap, seed)
            interval = (
                min(raw, self._final_score(uncertainty.ci_lower, p_war)),
                max(raw, self._final_score(uncertainty.ci_upper, p_war)),
            )
        else:
            interval = (raw, raw)

        # ── 6. Assemble ──────────────────────────────────────────────
        seconds = score_to_seconds(raw)
        risk_level = classify_risk_level(
            seconds,
            critical=self.config.threshold_critical,
            severe=self.config.threshold_severe,
            high=self.config.threshold_high,
            moderate=self.config.threshold_moderate,
        )
        delta = seconds - history[-1].seconds_to_midnight if history else None

        result = ComprehensiveRiskScore(
            seconds_to_midnight=seconds,
            raw_score=raw,
            base_score=breakdown.base_score,
            bayesian_adjusted_score=posterior,
            confidence_interval=interval,
            trend=trend.direction,
            risk_level=risk_level,
            overall_confidence=self._overall_confidence(factors, adjustment.converged, interval),
            simulation_results=simulation,
            trend_analysis=trend,
            bayesian_adjustment=adjustment,
            uncertainty_analysis=uncertainty,
            primary_drivers=breakdown.primary_drivers(),
            delta_from_previous=delta,
            critical_warnings=self._critical_warnings(factors, risk_level, delta, p_war, trend),
            flags=tuple(dict.fromkeys(flags)),
        )

        telemetry.assessments_total.labels(risk_level=risk_level.value).inc()
        telemetry.last_seconds_to_midnight.set(seconds)
        log.info(
            "risk_assessment_complete",
            seconds_to_midnight=seconds,
            risk_level=risk_level.value,
            base_score=round(breakdown.base_score, 4),
            adjusted_score=round(posterior, 4),
            war_probability=round(p_war, 4),
            n_factors=len(factors),
            flags=list(result.flags),
        )
        return result

    # ── Validation entry points ───────────────────────────────────────────

    def calibrate(self, events: Sequence[HistoricalEvent], strict: bool = True) -> CalibrationReport:
        """Check the deterministic score against labeled historical events."""
        return HistoricalCalibrator(self.score_point, self.config).calibrate(events, strict=strict)

    def backtest(self, periods: Sequence[BacktestPeriod], strict: bool = False) -> BacktestSummary:
        def predict(factors, network, past_scores):
            return self.score_point(factors, network, past_scores)

        return WalkForwardBacktester(predict, self.config).run(periods, strict=strict)

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _past_posteriors(history: Sequence[HistoryItem]) -> list[float]:
        """Past pre-simulation posteriors; raw_score where a record predates the field."""
        return [
            h.raw_score if h.bayesian_adjusted_score is None else h.bayesian_adjusted_score
            for h in history
        ]

    def _final_score(self, posterior: float, p_war: float) -> float:
        score = posterior + (1.0 - posterior) * self.config.simulation_weight * p_war
        return min(1.0, max(0.0, score))

    def _budget_caps(self, budget_seconds: Optional[float]) -> tuple[int, int, tuple[str, ...]]:
        """Iteration caps implied by a wall-clock budget (never above the configured caps)."""
        mc = self.config.simulation_iterations
        bp = self.config.bp_max_iterations
        if budget_seconds is None:
            return mc, bp, ()

        mc_capped = max(1, min(mc, int(budget_seconds * self.config.budget_iterations_per_second)))
        bp_capped = max(1, min(bp, int(budget_seconds * self.config.budget_bp_iterations_per_second)))
        flags = []
        if mc_capped < mc:
            flags.append(FLAG_SIMULATION_BUDGET)
        if bp_capped < bp:
            flags.append(FLAG_PROPAGATION_BUDGET)
        if flags:
            logger.info(
                "pipeline_budget_applied",
                budget_seconds=budget_seconds,
                simulation_iterations=mc_capped,
                bp_max_iterations=bp_capped,
            )
        return mc_capped, bp_capped, tuple(flags)

    def _propagate_uncertainty(self, factors, network, past_scores, bp_cap, seed):
        inputs = [
            UncertainInput(name=f"{i}:{f.name}", distribution=beta_for_factor(f))
            for i, f in enumerate(factors)
        ]

        def score(sample):
            perturbed = [f.with_value(sample[inp.name]) for f, inp in zip(factors, inputs)]
            return self.score_point(perturbed, network, past_scores, max_iterations=bp_cap)

        return self.uncertainty.propagate(inputs, score, seed=seed)

    @staticmethod
    def _overall_confidence(
        factors: Sequence[RiskFactor],
        converged: bool,
        interval: tuple[float, float],
    ) -> ConfidenceLevel:
        if not factors:
            return ConfidenceLevel.VERY_LOW
        mean_conf = sum(f.confidence_multiplier for f in factors) / len(factors)
        level = ConfidenceLevel.from_score(mean_conf)
        # One ordinal step down per degradation
        order = list(ConfidenceLevel)
        steps = int(not converged) + int(interval[1] - interval[0] > WIDE_INTERVAL)
        return order[max(0, order.index(level) - steps)]

    @staticmethod
    def _critical_warnings(factors, risk_level, delta, p_war, trend) -> tuple[str, ...]:
        warnings = []
        if risk_level is RiskLevel.CRITICAL:
            warnings.append("Risk level is CRITICAL")
        if delta is not None and delta <= -RAPID_DETERIORATION_SECONDS:
            warnings.append(f"Clock moved {-delta} seconds closer to midnight since the last assessment")
        if p_war > WAR_PROBABILITY_WARNING:
            warnings.append(f"Simulated probability of nuclear use is {p_war:.1%}")
        for f in sorted(factors, key=lambda f: (-f.value, f.name)):
            if f.value >= HIGH_FACTOR_VALUE and f.confidence_multiplier >= ConfidenceLevel.HIGH.multiplier:
                warnings.append(f"{f.name} at {f.value:.2f} ({f.category.value}, {f.confidence.value} confidence)")
        recent = [cp for cp in trend.change_points if cp.direction == "increase" and cp.index >= trend.n_points - 3]
        if recent:
            warnings.append("Abrupt upward shift detected in recent scores")
        return tuple(warnings)
