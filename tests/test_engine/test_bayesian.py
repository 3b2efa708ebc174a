"""
Bayesian Adjustment Tests.

Includes property-based tests via Hypothesis.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import make_factor
from joshua.config import Settings
from joshua.engine.bayesian import (
    FLAG_NOT_CONVERGED,
    FLAG_OUTSIDE_NETWORK,
    FLAG_PRIOR_SKIPPED,
    BayesianAdjuster,
    FactorEvidence,
)
from joshua.engine.network import BayesianNetwork
from joshua.models.factor import ConfidenceLevel, RiskCategory, RiskFactor


factor_strategy = st.builds(
    RiskFactor,
    category=st.sampled_from(list(RiskCategory)),
    name=st.sampled_from(["a", "b", "c"]),
    value=st.floats(min_value=0.0, max_value=1.0),
    confidence=st.sampled_from(list(ConfidenceLevel)),
)


class TestEvidence:
    def test_likelihood_tempered_by_confidence(self):
        e = FactorEvidence("x", RiskCategory.ARSENAL_CHANGES, value=0.9, confidence=0.5)
        low, high = e.likelihood
        assert high == pytest.approx(0.5 * 0.9 + 0.25)
        assert low + high == pytest.approx(1.0)

    def test_same_name_factors_merged(self):
        adjuster = BayesianAdjuster(Settings())
        evidence = adjuster.evidence_from_factors([
            make_factor(RiskCategory.ARSENAL_CHANGES, 0.2, ConfidenceLevel.LOW, name="x"),
            make_factor(RiskCategory.ARSENAL_CHANGES, 0.8, ConfidenceLevel.HIGH, name="x"),
        ])
        assert set(evidence) == {"x"}
        assert evidence["x"].value == pytest.approx((0.6 * 0.2 + 0.9 * 0.8) / 1.5)
        assert evidence["x"].confidence == pytest.approx(0.75)


class TestNetworkAdjustment:
    def setup_method(self):
        self.adjuster = BayesianAdjuster(Settings())

    def test_cuban_missile_crisis_without_network(self, cuban_missile_crisis):
        """Confident high-risk evidence on flat priors pushes the score up."""
        result = self.adjuster.adjust(0.88227, cuban_missile_crisis)
        assert result.adjusted_score == pytest.approx(0.92562, abs=1e-4)
        assert result.divergence > 0
        assert FLAG_OUTSIDE_NETWORK in result.flags
        assert all(not b.in_network for b in result.beliefs)

    def test_empty_factors_leave_score_unchanged(self):
        result = self.adjuster.adjust(0.4, [])
        assert result.adjusted_score == 0.4
        assert result.flags == ()

    def test_neutral_evidence_is_no_op(self):
        factors = [make_factor(c, 0.5) for c in RiskCategory]
        result = self.adjuster.adjust(0.5, factors)
        assert result.divergence == pytest.approx(0.0)
        assert result.adjusted_score == pytest.approx(0.5)

    def test_low_evidence_lowers_score(self):
        factors = [make_factor(c, 0.15) for c in RiskCategory]
        result = self.adjuster.adjust(0.15, factors)
        assert result.adjusted_score == pytest.approx(0.15 + 0.975 * -0.35 * 0.15)

    def test_network_prior_shapes_shift(self):
        """Evidence against a low prior moves belief further than on a flat prior."""
        net = BayesianNetwork()
        net.add_node("x", prior=[0.8, 0.2])
        net.freeze()
        f = [make_factor(RiskCategory.ARSENAL_CHANGES, 0.9, name="x")]

        with_net = self.adjuster.adjust(0.5, f, net)
        without = self.adjuster.adjust(0.5, f)

        (belief,) = with_net.beliefs
        assert belief.in_network and belief.prior == pytest.approx(0.2)
        assert belief.posterior == pytest.approx(0.2 * 0.89 / (0.8 * 0.11 + 0.2 * 0.89))
        assert with_net.adjusted_score > without.adjusted_score > 0.5
        assert FLAG_OUTSIDE_NETWORK not in with_net.flags

    def test_non_convergence_is_flagged(self):
        net = BayesianNetwork()
        names = [f"n{i}" for i in range(5)]
        net.add_node(names[0], prior=[0.3, 0.7])
        for parent, child in zip(names, names[1:]):
            net.add_node(child)
            net.add_edge(parent, child)
            net.set_cpt(child, [[0.85, 0.15], [0.25, 0.75]])
        f = [make_factor(RiskCategory.TECHNICAL_INCIDENTS, 0.9, name="n4")]

        result = self.adjuster.adjust(0.6, f, net, max_iterations=1)
        assert not result.converged
        assert FLAG_NOT_CONVERGED in result.flags
        assert 0.0 <= result.adjusted_score <= 1.0


class TestHistoricalPrior:
    def setup_method(self):
        self.adjuster = BayesianAdjuster(Settings())

    def test_blend_pulls_toward_history(self):
        """Prior N(0.5, 0.05²) floor, observation N(0.9, 0.10²): posterior mean 0.58."""
        posterior = self.adjuster.blend_historical_prior(0.9, [0.5, 0.5, 0.5])
        assert posterior.mean == pytest.approx(0.58)
        assert posterior.prior_std == pytest.approx(0.05)
        assert posterior.data_influence == pytest.approx(0.2)

    def test_apply_uses_posterior_mean(self):
        result = self.adjuster.apply(0.9, [], past_scores=[0.5, 0.5, 0.5])
        assert result.adjusted_score == pytest.approx(0.58)
        assert result.network_adjusted_score == 0.9
        assert FLAG_PRIOR_SKIPPED not in result.flags

    def test_short_history_skips_prior(self):
        result = self.adjuster.apply(0.9, [], past_scores=[0.5])
        assert result.historical_prior is None
        assert result.adjusted_score == 0.9
        assert FLAG_PRIOR_SKIPPED in result.flags

    def test_normal_update_without_data_returns_prior(self):
        posterior = self.adjuster.normal_update(0.9, 0.1, 0, prior_mean=0.3, prior_std=0.1)
        assert posterior.mean == 0.3
        assert posterior.data_influence == 0.0
        assert posterior.ci_lower == pytest.approx(0.3 - 1.96 * 0.1)


class TestAdjustmentProperties:
    @given(
        base=st.floats(min_value=0.0, max_value=1.0),
        factors=st.lists(factor_strategy, max_size=8),
        past=st.lists(st.floats(min_value=0.0, max_value=1.0), max_size=6),
    )
    @settings(max_examples=50)
    def test_adjusted_score_bounded(self, base, factors, past):
        """Adjusted score stays in [0, 1] for any evidence and history."""
        result = BayesianAdjuster(Settings()).apply(base, factors, past_scores=past)
        assert 0.0 <= result.adjusted_score <= 1.0
        assert 0.0 <= result.network_adjusted_score <= 1.0

    @given(base=st.floats(min_value=0.0, max_value=1.0), value=st.floats(min_value=0.5, max_value=1.0))
    @settings(max_examples=50)
    def test_high_evidence_never_lowers(self, base, value):
        f = [RiskFactor(category=RiskCategory.ARSENAL_CHANGES, name="x", value=value)]
        assert BayesianAdjuster(Settings()).adjust(base, f).adjusted_score >= base
