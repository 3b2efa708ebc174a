"""
Pytest Configuration and Fixtures.

Provides reusable fixtures for testing JOSHUA components.
"""

import pytest

from joshua.config import Settings
from joshua.core.telemetry import PipelineContext, PipelineTelemetry
from joshua.engine.calibration import HistoricalEvent
from joshua.engine.pipeline import RiskCalculationPipeline
from joshua.engine.simulation import MonteCarloSimulator
from joshua.models.factor import ConfidenceLevel, RiskCategory, RiskFactor


def make_factor(category, value, confidence=ConfidenceLevel.VERY_HIGH, name=None, **kwargs):
    """Shorthand factor constructor used across test modules."""
    category = RiskCategory(category)
    return RiskFactor(
        category=category,
        name=name or category.value,
        value=value,
        confidence=confidence,
        **kwargs,
    )


def uniform_event(name, value, expert_score):
    """Historical event whose four factors all sit at the same value."""
    return HistoricalEvent(
        name=name,
        factors=(
            make_factor(RiskCategory.REGIONAL_CONFLICTS, value),
            make_factor(RiskCategory.LEADERSHIP_AND_RHETORIC, value),
            make_factor(RiskCategory.DOCTRINE_AND_POSTURE, value),
            make_factor(RiskCategory.ARSENAL_CHANGES, value),
        ),
        expert_score=expert_score,
    )


@pytest.fixture
def test_settings() -> Settings:
    """Small, deterministic engine settings."""
    return Settings(
        simulation_iterations=500,
        simulation_workers=1,
        simulation_chunk_size=100,
        uncertainty_samples=100,
        random_seed=1962,
    )


@pytest.fixture
def cuban_missile_crisis() -> list[RiskFactor]:
    """October 1962: the reference worst-case factor set."""
    return [
        make_factor(RiskCategory.REGIONAL_CONFLICTS, 0.95, ConfidenceLevel.VERY_HIGH, name="caribbean_blockade"),
        make_factor(RiskCategory.LEADERSHIP_AND_RHETORIC, 0.90, ConfidenceLevel.VERY_HIGH, name="leadership_ultimatums"),
        make_factor(RiskCategory.COMMUNICATION_BREAKDOWN, 0.85, ConfidenceLevel.HIGH, name="no_hotline"),
        make_factor(RiskCategory.DOCTRINE_AND_POSTURE, 0.80, ConfidenceLevel.VERY_HIGH, name="defcon_2"),
    ]


@pytest.fixture
def historical_events(cuban_missile_crisis) -> list[HistoricalEvent]:
    """Labeled historical situations spanning the risk range."""
    return [
        HistoricalEvent(name="cuban_missile_crisis", factors=tuple(cuban_missile_crisis), expert_score=0.93, year=1962),
        uniform_event("able_archer", 0.9, 0.90),
        uniform_event("korean_war", 0.7, 0.72),
        uniform_event("late_detente", 0.5, 0.52),
        uniform_event("post_cold_war", 0.3, 0.27),
        uniform_event("start_treaty_era", 0.15, 0.12),
    ]


@pytest.fixture
def telemetry() -> PipelineTelemetry:
    return PipelineTelemetry()


@pytest.fixture
def context(telemetry) -> PipelineContext:
    return PipelineContext(telemetry=telemetry, seed=7)


@pytest.fixture
def pipeline(test_settings) -> RiskCalculationPipeline:
    return RiskCalculationPipeline(
        config=test_settings,
        simulator=MonteCarloSimulator(test_settings, max_workers=1),
    )
