"""
JOSHUA Configuration.

Pydantic Settings v2: loads from .env and environment variables.
Category weights and event base rates are configuration data, not logic.
"""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "WarGames/JOSHUA"
    app_version: str = "1.0.0"
    log_level: str = Field(default="INFO", alias="JOSHUA_LOG_LEVEL")
    log_format: str = Field(default="console", alias="JOSHUA_LOG_FORMAT")  # json or console

    # ── Category weights (must sum to 1.0) ───────────────────────────────
    weight_arsenal_changes: float = Field(default=0.15, alias="JOSHUA_WEIGHT_ARSENAL_CHANGES")
    weight_doctrine_and_posture: float = Field(default=0.15, alias="JOSHUA_WEIGHT_DOCTRINE_AND_POSTURE")
    weight_regional_conflicts: float = Field(default=0.20, alias="JOSHUA_WEIGHT_REGIONAL_CONFLICTS")
    weight_leadership_and_rhetoric: float = Field(default=0.10, alias="JOSHUA_WEIGHT_LEADERSHIP_AND_RHETORIC")
    weight_technical_incidents: float = Field(default=0.15, alias="JOSHUA_WEIGHT_TECHNICAL_INCIDENTS")
    weight_communication_breakdown: float = Field(default=0.10, alias="JOSHUA_WEIGHT_COMMUNICATION_BREAKDOWN")
    weight_emerging_technology: float = Field(default=0.10, alias="JOSHUA_WEIGHT_EMERGING_TECHNOLOGY")
    weight_economic_factors: float = Field(default=0.05, alias="JOSHUA_WEIGHT_ECONOMIC_FACTORS")

    # ── Risk level thresholds (seconds to midnight) ──────────────────────
    threshold_critical: int = Field(default=100, alias="JOSHUA_THRESHOLD_CRITICAL")
    threshold_severe: int = Field(default=200, alias="JOSHUA_THRESHOLD_SEVERE")
    threshold_high: int = Field(default=400, alias="JOSHUA_THRESHOLD_HIGH")
    threshold_moderate: int = Field(default=600, alias="JOSHUA_THRESHOLD_MODERATE")

    # ── Bayesian network ─────────────────────────────────────────────────
    edge_correlation_threshold: float = Field(default=0.3, alias="JOSHUA_EDGE_CORRELATION_THRESHOLD")
    network_max_parents: int = Field(default=3, ge=1, alias="JOSHUA_NETWORK_MAX_PARENTS")
    discretization_threshold: float = Field(default=0.5, alias="JOSHUA_DISCRETIZATION_THRESHOLD")
    cpt_pseudocount: float = Field(default=1.0, alias="JOSHUA_CPT_PSEUDOCOUNT")
    bp_tolerance: float = Field(default=1e-6, alias="JOSHUA_BP_TOLERANCE")
    bp_max_iterations: int = Field(default=100, alias="JOSHUA_BP_MAX_ITERATIONS")
    adjustment_strength: float = Field(default=1.0, ge=0.0, le=1.0, alias="JOSHUA_ADJUSTMENT_STRENGTH")
    observation_std: float = Field(default=0.10, gt=0.0, alias="JOSHUA_OBSERVATION_STD")
    prior_std_floor: float = Field(default=0.05, gt=0.0, alias="JOSHUA_PRIOR_STD_FLOOR")

    # ── Trend analysis ───────────────────────────────────────────────────
    trend_significance: float = Field(default=0.05, alias="JOSHUA_TREND_SIGNIFICANCE")
    cusum_k: float = Field(default=0.5, alias="JOSHUA_CUSUM_K")  # allowance, in σ
    cusum_h: float = Field(default=4.0, alias="JOSHUA_CUSUM_H")  # decision threshold, in σ
    loess_frac: float = Field(default=0.3, alias="JOSHUA_LOESS_FRAC")
    seasonal_period: Optional[int] = Field(default=None, alias="JOSHUA_SEASONAL_PERIOD")

    # ── Monte Carlo simulation ───────────────────────────────────────────
    simulation_iterations: int = Field(default=10_000, ge=1, alias="JOSHUA_SIMULATION_ITERATIONS")
    simulation_horizon_days: float = Field(default=365.0, gt=0.0, alias="JOSHUA_SIMULATION_HORIZON_DAYS")
    simulation_workers: Optional[int] = Field(default=None, alias="JOSHUA_SIMULATION_WORKERS")
    simulation_chunk_size: int = Field(default=500, ge=1, alias="JOSHUA_SIMULATION_CHUNK_SIZE")
    simulation_weight: float = Field(default=0.25, ge=0.0, le=1.0, alias="JOSHUA_SIMULATION_WEIGHT")
    random_seed: Optional[int] = Field(default=None, alias="JOSHUA_RANDOM_SEED")

    # ── Uncertainty ──────────────────────────────────────────────────────
    uncertainty_samples: int = Field(default=1000, ge=10, alias="JOSHUA_UNCERTAINTY_SAMPLES")

    # ── Calibration / backtest ───────────────────────────────────────────
    calibration_min_correlation: float = Field(default=0.7, alias="JOSHUA_CALIBRATION_MIN_CORRELATION")
    calibration_max_rmse: float = Field(default=0.15, alias="JOSHUA_CALIBRATION_MAX_RMSE")
    calibration_bins: int = Field(default=10, ge=1, alias="JOSHUA_CALIBRATION_BINS")
    backtest_min_train: int = Field(default=3, ge=2, alias="JOSHUA_BACKTEST_MIN_TRAIN")

    # ── Wall-clock budget ────────────────────────────────────────────────
    budget_iterations_per_second: float = Field(default=5_000.0, gt=0.0, alias="JOSHUA_BUDGET_ITERATIONS_PER_SECOND")
    budget_bp_iterations_per_second: float = Field(default=200.0, gt=0.0, alias="JOSHUA_BUDGET_BP_ITERATIONS_PER_SECOND")

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        weights = self.category_weights
        if any(w < 0 for w in weights.values()):
            raise ValueError("category weights must be non-negative")
        total = sum(weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"category weights must sum to 1.0, got {total:.6f}")

        thresholds = [
            self.threshold_critical,
            self.threshold_severe,
            self.threshold_high,
            self.threshold_moderate,
        ]
        if thresholds != sorted(set(thresholds)):
            raise ValueError("risk level thresholds must be strictly increasing")
        return self

    @property
    def category_weights(self) -> dict[str, float]:
        """Weights keyed by RiskCategory value."""
        return {
            "arsenal_changes": self.weight_arsenal_changes,
            "doctrine_and_posture": self.weight_doctrine_and_posture,
            "regional_conflicts": self.weight_regional_conflicts,
            "leadership_and_rhetoric": self.weight_leadership_and_rhetoric,
            "technical_incidents": self.weight_technical_incidents,
            "communication_breakdown": self.weight_communication_breakdown,
            "emerging_technology": self.weight_emerging_technology,
            "economic_factors": self.weight_economic_factors,
        }


settings = Settings()
