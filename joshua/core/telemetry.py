"""
Pipeline telemetry.

Metrics live in a registry owned by each PipelineTelemetry instance and are
handed to the pipeline through an explicit PipelineContext, so test runs and
concurrent assessments never share counters.
"""

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = structlog.get_logger(__name__)


STAGE_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0)


class PipelineTelemetry:
    """Counters and timings for risk calculation runs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self.assessments_total = Counter(
            "joshua_assessments_total",
            "Completed risk assessments",
            ["risk_level"],
            registry=self.registry,
        )
        self.stage_duration = Histogram(
            "joshua_stage_duration_seconds",
            "Duration of each pipeline stage",
            ["stage"],
            buckets=STAGE_BUCKETS,
            registry=self.registry,
        )
        self.bp_non_converged_total = Counter(
            "joshua_bp_non_converged_total",
            "Belief propagation runs that hit the iteration cap",
            registry=self.registry,
        )
        self.edges_rejected_total = Counter(
            "joshua_edges_rejected_total",
            "Candidate network edges rejected during structure learning",
            ["reason"],
            registry=self.registry,
        )
        self.last_seconds_to_midnight = Gauge(
            "joshua_last_seconds_to_midnight",
            "Seconds to midnight of the most recent assessment",
            registry=self.registry,
        )

    @contextmanager
    def stage(self, name: str):
        """
        Context manager to time one pipeline stage.

        Usage:
            with telemetry.stage("monte_carlo"):
                results = simulator.simulate(state, horizon)
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start
            self.stage_duration.labels(stage=name).observe(duration)
            logger.debug("pipeline_stage_timed", stage=name, duration_s=round(duration, 4))

    def sample(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Read a metric sample back from this registry (0.0 if absent)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


@dataclass
class PipelineContext:
    """
    Everything one pipeline invocation needs besides its inputs.

    seed: fixes every random draw of the run (simulation + uncertainty)
    budget_seconds: caller-imposed wall-clock budget; caps iteration counts
    """
    telemetry: PipelineTelemetry = field(default_factory=PipelineTelemetry)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seed: Optional[int] = None
    budget_seconds: Optional[float] = None
