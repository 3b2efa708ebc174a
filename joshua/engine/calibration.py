"""
Historical Calibration and Walk-Forward Backtesting.

Calibration runs the scoring pipeline over curated historical events with
independently sourced expert labels and reports:
- Pearson correlation and RMSE between model output and labels
- A binned calibration curve (predicted bucket vs. mean label)

The model is well-calibrated only if correlation > 0.7 AND RMSE < 0.15.
These are acceptance thresholds: strict calibration raises
CalibrationFailedError when they are missed.

Walk-forward backtesting relearns the dependency network from prior
periods only, predicts the next period, and records error and
directional accuracy.
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import numpy as np
import structlog

from joshua.config import Settings, settings as default_settings
from joshua.core.exceptions import CalibrationFailedError, InsufficientHistoryError
from joshua.engine.network import BayesianNetwork
from joshua.engine.trend import AnalysisStatus
from joshua.models.factor import RiskFactor, validate_factor_value

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MIN_EVENTS_FOR_CORRELATION: int = 3
DIRECTION_EPSILON: float = 1e-9

Scorer = Callable[[Sequence[RiskFactor]], float]
Predictor = Callable[[Sequence[RiskFactor], BayesianNetwork, Sequence[float]], float]


@dataclass(frozen=True)
class HistoricalEvent:
    """A past situation with an expert risk label in [0, 1]."""
    name: str
    factors: tuple[RiskFactor, ...]
    expert_score: float
    year: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "factors", tuple(self.factors))
        validate_factor_value(f"{self.name}.expert_score", self.expert_score)


@dataclass(frozen=True)
class CalibrationBin:
    """A single bin of the calibration curve."""
    bin_lower: float
    bin_upper: float
    avg_predicted: float
    avg_actual: float         # mean expert label in this bin
    count: int
    gap: float                # |avg_predicted - avg_actual|


@dataclass(frozen=True)
class EventPrediction:
    name: str
    predicted: float
    expected: float

    @property
    def error(self) -> float:
        return self.predicted - self.expected


@dataclass(frozen=True)
class CalibrationReport:
    """Full calibration assessment."""
    correlation: float
    rmse: float
    mae: float
    bins: tuple[CalibrationBin, ...]
    predictions: tuple[EventPrediction, ...]
    n_events: int
    min_correlation: float
    max_rmse: float
    is_calibrated: bool
    recommendation: str

    def raise_for_acceptance(self) -> "CalibrationReport":
        if not self.is_calibrated:
            raise CalibrationFailedError(
                f"calibration failed: correlation={self.correlation:.3f} "
                f"(need > {self.min_correlation}), rmse={self.rmse:.3f} (need < {self.max_rmse})",
                report=self,
            )
        return self


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r; 0.0 when either side has no variance."""
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if len(a) < 2 or np.std(a) == 0 or np.std(b) == 0:
        return 0.0
    return float(np.corrcoef(a, b)[0, 1])


def calibration_bins(predicted: Sequence[float], actual: Sequence[float], n_bins: int) -> tuple[CalibrationBin, ...]:
    bins = []
    width = 1.0 / n_bins
    for i in range(n_bins):
        lower = i * width
        upper = (i + 1) * width
        idx = [
            j for j, p in enumerate(predicted)
            if lower <= p < upper or (i == n_bins - 1 and p == 1.0)
        ]
        if not idx:
            bins.append(CalibrationBin(
                bin_lower=round(lower, 4), bin_upper=round(upper, 4),
                avg_predicted=0.0, avg_actual=0.0, count=0, gap=0.0,
            ))
            continue
        avg_pred = sum(predicted[j] for j in idx) / len(idx)
        avg_act = sum(actual[j] for j in idx) / len(idx)
        bins.append(CalibrationBin(
            bin_lower=round(lower, 4),
            bin_upper=round(upper, 4),
            avg_predicted=avg_pred,
            avg_actual=avg_act,
            count=len(idx),
            gap=abs(avg_pred - avg_act),
        ))
    return tuple(bins)


class HistoricalCalibrator:
    """
    Validate a scorer against labeled historical events.

    scorer maps a factor set to a [0, 1] risk score (normally
    RiskCalculationPipeline.score_point).
    """

    def __init__(self, scorer: Scorer, config: Optional[Settings] = None):
        self.scorer = scorer
        self.config = config or default_settings

    def calibrate(self, events: Sequence[HistoricalEvent], strict: bool = True) -> CalibrationReport:
        predictions = tuple(
            EventPrediction(name=e.name, predicted=float(self.scorer(e.factors)), expected=e.expert_score)
            for e in events
        )
        predicted = [p.predicted for p in predictions]
        expected = [p.expected for p in predictions]
        n = len(predictions)

        if n:
            errors = np.array([p.error for p in predictions])
            rmse = float(math.sqrt(np.mean(errors ** 2)))
            mae = float(np.mean(np.abs(errors)))
        else:
            rmse = mae = 0.0
        correlation = pearson(predicted, expected) if n >= MIN_EVENTS_FOR_CORRELATION else 0.0

        min_corr = self.config.calibration_min_correlation
        max_rmse = self.config.calibration_max_rmse
        is_calibrated = (
            n >= MIN_EVENTS_FOR_CORRELATION and correlation > min_corr and rmse < max_rmse
        )

        if n < MIN_EVENTS_FOR_CORRELATION:
            recommendation = f"Need at least {MIN_EVENTS_FOR_CORRELATION} labeled events, got {n}."
        elif is_calibrated:
            recommendation = "Model output tracks expert labels within tolerance."
        elif correlation <= min_corr:
            recommendation = "Ranking of events disagrees with experts: revisit category weights."
        else:
            recommendation = "Scores are systematically off: recalibrate the adjustment strength."

        report = CalibrationReport(
            correlation=correlation,
            rmse=rmse,
            mae=mae,
            bins=calibration_bins(predicted, expected, self.config.calibration_bins),
            predictions=predictions,
            n_events=n,
            min_correlation=min_corr,
            max_rmse=max_rmse,
            is_calibrated=is_calibrated,
            recommendation=recommendation,
        )
        log = logger.info if is_calibrated else logger.warning
        log(
            "calibration_complete",
            n_events=n,
            correlation=round(correlation, 4),
            rmse=round(rmse, 4),
            is_calibrated=is_calibrated,
        )
        if strict:
            report.raise_for_acceptance()
        return report


# ── Walk-forward backtest ─────────────────────────────────────────────────


@dataclass(frozen=True)
class BacktestPeriod:
    """One historical assessment cycle: its factors and the realized score."""
    factors: tuple[RiskFactor, ...]
    actual_score: float
    label: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "factors", tuple(self.factors))
        validate_factor_value("actual_score", self.actual_score)


@dataclass(frozen=True)
class BacktestStep:
    index: int
    n_train: int
    predicted: float
    actual: float
    previous_actual: float
    direction_correct: bool

    @property
    def error(self) -> float:
        return self.predicted - self.actual


@dataclass(frozen=True)
class BacktestSummary:
    status: AnalysisStatus
    n_periods: int
    steps: tuple[BacktestStep, ...] = ()
    mae: Optional[float] = None
    rmse: Optional[float] = None
    directional_accuracy: Optional[float] = None
    flags: tuple[str, ...] = field(default_factory=tuple)


def factor_history(periods: Sequence[BacktestPeriod]) -> dict[str, list[float]]:
    """
    Aligned per-name value series across periods.

    Same-named factors within a period merge by confidence-weighted mean;
    only names present in every period are kept.
    """
    per_period = []
    for period in periods:
        grouped: dict[str, list[RiskFactor]] = {}
        for f in period.factors:
            grouped.setdefault(f.name, []).append(f)
        per_period.append({
            name: sum(f.value * f.confidence_multiplier for f in fs) / sum(f.confidence_multiplier for f in fs)
            for name, fs in grouped.items()
        })
    if not per_period:
        return {}
    common = set(per_period[0])
    for values in per_period[1:]:
        common &= set(values)
    return {name: [values[name] for values in per_period] for name in sorted(common)}


def _sign(x: float) -> int:
    if x > DIRECTION_EPSILON:
        return 1
    if x < -DIRECTION_EPSILON:
        return -1
    return 0


class WalkForwardBacktester:
    """
    Walk-forward validation: train on [0, t), predict t.

    predictor(factors, network, past_scores) -> score; the network is
    relearned from the training window at every step.
    """

    def __init__(self, predictor: Predictor, config: Optional[Settings] = None):
        self.predictor = predictor
        self.config = config or default_settings

    def run(self, periods: Sequence[BacktestPeriod], strict: bool = False) -> BacktestSummary:
        min_train = self.config.backtest_min_train
        n = len(periods)
        if n < min_train + 1:
            if strict:
                raise InsufficientHistoryError(
                    f"walk-forward backtest needs {min_train + 1} periods, got {n}",
                    required=min_train + 1,
                    available=n,
                )
            logger.warning("backtest_insufficient_history", n_periods=n, required=min_train + 1)
            return BacktestSummary(
                status=AnalysisStatus.INSUFFICIENT_HISTORY,
                n_periods=n,
                flags=("backtest_insufficient_history",),
            )

        steps = []
        for t in range(min_train, n):
            train = periods[:t]
            network = BayesianNetwork.learn(factor_history(train), self.config).freeze(
                max_iterations=self.config.bp_max_iterations,
                tolerance=self.config.bp_tolerance,
            )
            past = [p.actual_score for p in train]
            predicted = float(self.predictor(periods[t].factors, network, past))
            actual = periods[t].actual_score
            previous = past[-1]
            steps.append(BacktestStep(
                index=t,
                n_train=len(train),
                predicted=predicted,
                actual=actual,
                previous_actual=previous,
                direction_correct=_sign(predicted - previous) == _sign(actual - previous),
            ))

        errors = np.array([s.error for s in steps])
        summary = BacktestSummary(
            status=AnalysisStatus.OK,
            n_periods=n,
            steps=tuple(steps),
            mae=float(np.mean(np.abs(errors))),
            rmse=float(math.sqrt(np.mean(errors ** 2))),
            directional_accuracy=sum(s.direction_correct for s in steps) / len(steps),
        )
        logger.info(
            "backtest_complete",
            n_periods=n,
            n_steps=len(steps),
            mae=round(summary.mae, 4),
            rmse=round(summary.rmse, 4),
            directional_accuracy=round(summary.directional_accuracy, 4),
        )
        return summary
