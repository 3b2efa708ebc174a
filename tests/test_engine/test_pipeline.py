"""
Risk Calculation Pipeline Tests.

End-to-end runs of calculate() on small, seeded settings.
"""

import json
import threading

import numpy as np
import pytest

from conftest import make_factor
from joshua.core.telemetry import PipelineContext, PipelineTelemetry
from joshua.engine.bayesian import FLAG_OUTSIDE_NETWORK, FLAG_PRIOR_SKIPPED
from joshua.engine.network import NetworkRegistry
from joshua.engine.pipeline import (
    FLAG_NO_FACTORS,
    FLAG_PRIOR_FROM_RAW,
    FLAG_PROPAGATION_BUDGET,
    FLAG_SIMULATION_BUDGET,
    RiskCalculationPipeline,
)
from joshua.engine.simulation import MonteCarloSimulator
from joshua.engine.trend import FLAG_TREND_INSUFFICIENT
from joshua.models.factor import ConfidenceLevel, RiskCategory, TrendDirection
from joshua.models.score import AssessmentRecord, RiskLevel

STAGES = ("weighted_scoring", "bayesian_adjustment", "trend_analysis", "monte_carlo", "uncertainty")


def correlated_history(n=120, seed=21):
    """regional and arsenal both lead leadership by one step; doctrine is unrelated."""
    rng = np.random.default_rng(seed)
    a, e, d = rng.random(n), rng.random(n), rng.random(n)
    leadership = np.empty(n)
    leadership[0] = (a[0] + e[0]) / 2
    leadership[1:] = (a[1:] + a[:-1] + e[1:] + e[:-1]) / 4
    return {
        "regional": a.tolist(),
        "arsenal": e.tolist(),
        "leadership": leadership.tolist(),
        "doctrine": d.tolist(),
    }


class TestCalculate:
    def test_cuban_missile_crisis(self, pipeline, cuban_missile_crisis, context):
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        assert result.base_score == pytest.approx(0.88227, abs=1e-4)
        assert result.bayesian_adjusted_score == pytest.approx(0.92562, abs=1e-4)
        assert result.raw_score >= result.bayesian_adjusted_score
        assert result.seconds_to_midnight < 120
        assert result.risk_level in (RiskLevel.CRITICAL, RiskLevel.SEVERE)
        assert result.primary_drivers[0].name == "caribbean_blockade"

    def test_interval_contains_raw_score(self, pipeline, cuban_missile_crisis, context):
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        lo, hi = result.confidence_interval
        assert 0.0 <= lo <= result.raw_score <= hi <= 1.0
        assert result.uncertainty_analysis.n_samples == 100

    def test_fallbacks_are_flagged(self, pipeline, cuban_missile_crisis, context):
        flags = pipeline.calculate(cuban_missile_crisis, context=context).flags
        assert FLAG_PRIOR_SKIPPED in flags
        assert FLAG_OUTSIDE_NETWORK in flags
        assert FLAG_TREND_INSUFFICIENT in flags
        assert len(flags) == len(set(flags))

    def test_high_confidence_factors_warned(self, pipeline, cuban_missile_crisis, context):
        warnings = pipeline.calculate(cuban_missile_crisis, context=context).critical_warnings
        assert any(w.startswith("caribbean_blockade") for w in warnings)
        assert any(w.startswith("leadership_ultimatums") for w in warnings)
        assert not any(w.startswith("no_hotline") for w in warnings)

    def test_no_factors(self, pipeline, context):
        result = pipeline.calculate([], context=context)
        assert result.base_score == 0.0
        assert result.risk_level is RiskLevel.LOW
        assert result.confidence_interval == (result.raw_score, result.raw_score)
        assert result.overall_confidence is ConfidenceLevel.VERY_LOW
        assert result.uncertainty_analysis is None
        assert FLAG_NO_FACTORS in result.flags

    def test_delta_from_previous(self, pipeline, cuban_missile_crisis, context):
        history = [AssessmentRecord(raw_score=0.5)]
        result = pipeline.calculate(cuban_missile_crisis, history=history, context=context)
        assert result.delta_from_previous == result.seconds_to_midnight - 720
        assert any("closer to midnight" in w for w in result.critical_warnings)

    def test_history_feeds_prior_and_trend(self, pipeline, cuban_missile_crisis, context):
        history = [AssessmentRecord(raw_score=s) for s in (0.3, 0.4, 0.5, 0.6, 0.7, 0.8)]
        result = pipeline.calculate(cuban_missile_crisis, history=history, context=context)
        assert result.bayesian_adjustment.historical_prior is not None
        assert result.bayesian_adjusted_score < 0.92562
        assert result.trend is TrendDirection.DETERIORATING
        assert FLAG_PRIOR_SKIPPED not in result.flags
        assert FLAG_PRIOR_FROM_RAW in result.flags

    def test_seeded_runs_are_reproducible(self, pipeline, cuban_missile_crisis):
        first = pipeline.calculate(cuban_missile_crisis, context=PipelineContext(seed=7))
        second = pipeline.calculate(cuban_missile_crisis, context=PipelineContext(seed=7))
        assert first.raw_score == second.raw_score
        assert first.confidence_interval == second.confidence_interval
        assert first.simulation_results == second.simulation_results
        assert first.id != second.id

    def test_to_dict_serializes(self, pipeline, cuban_missile_crisis, context):
        data = pipeline.calculate(cuban_missile_crisis, context=context).to_dict()
        encoded = json.dumps(data)
        assert "seconds_to_midnight" in encoded
        assert data["simulation_results"]["iterations"] == 500

    def test_score_point_matches_calculate(self, pipeline, cuban_missile_crisis, context):
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        assert pipeline.score_point(cuban_missile_crisis) == pytest.approx(result.bayesian_adjusted_score)


class TestHistoryFeedback:
    FACTORS = [
        make_factor(RiskCategory.REGIONAL_CONFLICTS, 0.7, ConfidenceLevel.HIGH, name="regional"),
        make_factor(RiskCategory.ARSENAL_CHANGES, 0.6, ConfidenceLevel.HIGH, name="arsenal"),
    ]

    def test_unchanged_inputs_hold_steady(self, pipeline):
        """Feeding each result back as history must not ratchet the clock."""
        history, seconds = [], []
        for _ in range(15):
            result = pipeline.calculate(self.FACTORS, history=history, context=PipelineContext(seed=1))
            history.append(result.to_record())
            seconds.append(result.seconds_to_midnight)
        assert max(seconds) - min(seconds) <= 1
        assert result.trend is TrendDirection.STABLE
        assert result.trend_analysis.n_points == 15
        assert FLAG_PRIOR_FROM_RAW not in result.flags

    def test_record_keeps_posterior(self, pipeline):
        result = pipeline.calculate(self.FACTORS, context=PipelineContext(seed=1))
        record = result.to_record()
        assert record.bayesian_adjusted_score == result.bayesian_adjusted_score
        assert record.raw_score == result.raw_score

    def test_prior_built_from_stored_posteriors(self, pipeline):
        """A boosted raw_score on a record does not leak into the prior."""
        stored = [AssessmentRecord(raw_score=0.9, bayesian_adjusted_score=0.5)] * 3
        plain = [AssessmentRecord(raw_score=0.5)] * 3
        a = pipeline.calculate(self.FACTORS, history=stored, context=PipelineContext(seed=1))
        b = pipeline.calculate(self.FACTORS, history=plain, context=PipelineContext(seed=1))
        assert a.bayesian_adjusted_score == pytest.approx(b.bayesian_adjusted_score)
        assert FLAG_PRIOR_FROM_RAW not in a.flags
        assert FLAG_PRIOR_FROM_RAW in b.flags

    def test_trend_uses_final_scores(self, pipeline):
        """History sitting exactly at the current final score reads as flat."""
        current = pipeline.calculate(self.FACTORS, context=PipelineContext(seed=1))
        history = [current.to_record()] * 5
        result = pipeline.calculate(self.FACTORS, history=history, context=PipelineContext(seed=1))
        assert result.trend is TrendDirection.STABLE
        assert result.trend_analysis.mann_kendall.s == 0


class TestBudget:
    def test_budget_caps_iterations(self, pipeline, cuban_missile_crisis, telemetry):
        context = PipelineContext(telemetry=telemetry, seed=7, budget_seconds=0.01)
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        assert result.simulation_results.iterations == 50
        assert FLAG_SIMULATION_BUDGET in result.flags
        assert FLAG_PROPAGATION_BUDGET in result.flags

    def test_generous_budget_is_not_flagged(self, pipeline, cuban_missile_crisis, telemetry):
        context = PipelineContext(telemetry=telemetry, seed=7, budget_seconds=60.0)
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        assert result.simulation_results.iterations == 500
        assert FLAG_SIMULATION_BUDGET not in result.flags
        assert FLAG_PROPAGATION_BUDGET not in result.flags


class TestTelemetry:
    def test_assessment_counted(self, pipeline, cuban_missile_crisis, context, telemetry):
        result = pipeline.calculate(cuban_missile_crisis, context=context)
        assert telemetry.sample("joshua_assessments_total", {"risk_level": result.risk_level.value}) == 1.0
        assert telemetry.sample("joshua_last_seconds_to_midnight") == result.seconds_to_midnight

    def test_every_stage_timed(self, pipeline, cuban_missile_crisis, context, telemetry):
        pipeline.calculate(cuban_missile_crisis, context=context)
        for stage in STAGES:
            assert telemetry.sample("joshua_stage_duration_seconds_count", {"stage": stage}) == 1.0

    def test_runs_do_not_share_metrics(self, pipeline, cuban_missile_crisis, context, telemetry):
        other = PipelineTelemetry()
        pipeline.calculate(cuban_missile_crisis, context=context)
        pipeline.calculate(cuban_missile_crisis, context=PipelineContext(telemetry=other, seed=7))
        assert telemetry.sample("joshua_stage_duration_seconds_count", {"stage": "monte_carlo"}) == 1.0
        assert other.sample("joshua_stage_duration_seconds_count", {"stage": "monte_carlo"}) == 1.0


class TestNetworkMaintenance:
    def test_relearn_counts_rejections(self, test_settings, telemetry):
        settings = test_settings.model_copy(update={"network_max_parents": 1})
        pipeline = RiskCalculationPipeline(config=settings, simulator=MonteCarloSimulator(settings, max_workers=1))
        network = pipeline.relearn_network(correlated_history(), PipelineContext(telemetry=telemetry))
        assert network.is_frozen
        assert pipeline.registry.snapshot() is network
        rejected = telemetry.sample("joshua_edges_rejected_total", {"reason": "max_parents"})
        assert rejected == len([r for r in network.rejected_edges if r.reason == "max_parents"])
        assert rejected == 1
        assert len(network.parents("leadership")) == 1

    def test_learned_network_changes_adjustment(self, pipeline):
        factors = [
            make_factor(RiskCategory.REGIONAL_CONFLICTS, 0.9, name="regional"),
            make_factor(RiskCategory.LEADERSHIP_AND_RHETORIC, 0.8, name="leadership"),
        ]
        before = pipeline.score_point(factors)
        pipeline.relearn_network(correlated_history())
        after = pipeline.score_point(factors)
        assert 0.0 <= after <= 1.0
        assert after != pytest.approx(before, abs=1e-9)

    def test_shared_registry(self, test_settings):
        registry = NetworkRegistry(config=test_settings)
        a = RiskCalculationPipeline(config=test_settings, network=registry, simulator=MonteCarloSimulator(test_settings, max_workers=1))
        b = RiskCalculationPipeline(config=test_settings, network=registry, simulator=MonteCarloSimulator(test_settings, max_workers=1))
        a.relearn_network(correlated_history())
        assert b.registry.snapshot() is a.registry.snapshot()

    def test_calculate_during_relearn(self, pipeline):
        """Readers finish on their snapshot while the writer swaps networks."""
        factors = [
            make_factor(RiskCategory.REGIONAL_CONFLICTS, 0.7, name="regional"),
            make_factor(RiskCategory.DOCTRINE_AND_POSTURE, 0.6, name="doctrine"),
        ]
        results, errors = [], []

        def reader():
            try:
                results.append(pipeline.calculate(factors, context=PipelineContext(seed=1)))
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        writer = threading.Thread(target=pipeline.relearn_network, args=(correlated_history(),))
        for t in threads + [writer]:
            t.start()
        for t in threads + [writer]:
            t.join()
        assert errors == []
        assert len(results) == 3
        assert all(0 <= r.seconds_to_midnight <= 1440 for r in results)
