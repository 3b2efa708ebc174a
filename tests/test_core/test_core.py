"""
Core Infrastructure Tests: exceptions, logging, telemetry, configuration.
"""

import pytest
import structlog
from pydantic import ValidationError

from joshua.config import Settings
from joshua.core.exceptions import (
    CalibrationFailedError,
    ConfigurationError,
    CyclicDependencyError,
    ErrorCode,
    InsufficientHistoryError,
    JoshuaError,
)
from joshua.core.logging import configure_logging, ensure_logging
from joshua.core.telemetry import PipelineContext, PipelineTelemetry
from joshua.engine.pipeline import RiskCalculationPipeline


class TestExceptions:
    def test_str_includes_code(self):
        err = JoshuaError("boom")
        assert str(err) == "[E1000] boom"

    def test_to_dict_includes_recovery(self):
        err = ConfigurationError("bad weight", config_key="weight_arsenal_changes")
        data = err.to_dict()
        assert data["error_code"] == "E1002"
        assert data["recovery"]["requires_human"] is True
        assert err.config_key == "weight_arsenal_changes"

    def test_cyclic_dependency_carries_edge(self):
        err = CyclicDependencyError("a", "b")
        assert err.error_code is ErrorCode.CYCLIC_DEPENDENCY
        assert (err.parent, err.child) == ("a", "b")
        assert "a -> b" in str(err)

    def test_insufficient_history_counts(self):
        err = InsufficientHistoryError("short", required=4, available=2)
        assert (err.required, err.available) == (4, 2)
        assert isinstance(err, JoshuaError)

    def test_calibration_failed_keeps_report(self):
        err = CalibrationFailedError("miss", report={"rmse": 0.3})
        assert err.report == {"rmse": 0.3}


class TestLogging:
    @pytest.mark.parametrize("fmt", ["json", "console"])
    def test_configure_logging(self, fmt):
        configure_logging("DEBUG", fmt)
        structlog.get_logger("joshua.test").info("logging_configured", fmt=fmt)

    def test_ensure_logging_respects_host_setup(self):
        structlog.reset_defaults()
        assert ensure_logging("INFO", "json")
        assert not ensure_logging("DEBUG", "console")

    def test_pipeline_configures_logging_from_settings(self, test_settings):
        structlog.reset_defaults()
        RiskCalculationPipeline(config=test_settings.model_copy(update={"log_format": "json"}))
        assert structlog.is_configured()


class TestTelemetry:
    def test_registries_are_isolated(self):
        a = PipelineTelemetry()
        b = PipelineTelemetry()
        a.assessments_total.labels(risk_level="low").inc()
        assert a.sample("joshua_assessments_total", {"risk_level": "low"}) == 1.0
        assert b.sample("joshua_assessments_total", {"risk_level": "low"}) == 0.0

    def test_stage_timer_records(self):
        telemetry = PipelineTelemetry()
        with telemetry.stage("weighted_scoring"):
            pass
        assert telemetry.sample("joshua_stage_duration_seconds_count", {"stage": "weighted_scoring"}) == 1.0

    def test_stage_timer_records_on_error(self):
        telemetry = PipelineTelemetry()
        with pytest.raises(RuntimeError):
            with telemetry.stage("monte_carlo"):
                raise RuntimeError("worker died")
        assert telemetry.sample("joshua_stage_duration_seconds_count", {"stage": "monte_carlo"}) == 1.0

    def test_export(self):
        telemetry = PipelineTelemetry()
        telemetry.last_seconds_to_midnight.set(90)
        assert b"joshua_last_seconds_to_midnight 90.0" in telemetry.export()

    def test_context_defaults(self):
        ctx = PipelineContext()
        assert ctx.seed is None and ctx.budget_seconds is None
        assert ctx.run_id != PipelineContext().run_id


class TestSettings:
    def test_defaults_valid(self):
        s = Settings()
        assert abs(sum(s.category_weights.values()) - 1.0) < 1e-9
        assert s.bp_max_iterations == 100
        assert s.edge_correlation_threshold == 0.3

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            Settings(weight_arsenal_changes=0.5)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            Settings(weight_arsenal_changes=-0.05, weight_doctrine_and_posture=0.35)

    def test_thresholds_must_increase(self):
        with pytest.raises(ValidationError):
            Settings(threshold_severe=50)

    def test_env_alias(self, monkeypatch):
        monkeypatch.setenv("JOSHUA_SIMULATION_ITERATIONS", "1234")
        assert Settings().simulation_iterations == 1234
