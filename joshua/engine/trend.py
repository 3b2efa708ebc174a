"""
Trend Analysis Engine.

Implements:
- Mann-Kendall monotonic trend test (tie-corrected variance, continuity
  corrected Z, two-tailed at the configured significance)
- Sen's slope: median of all pairwise slopes
- CUSUM change-point detection against the current regime mean
  (allowance k·σ, decision threshold h·σ)
- Seasonal decomposition: loess trend + period-wise mean seasonal + residual

Short series produce an explicit INSUFFICIENT_HISTORY status, never a
guessed trend.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import numpy as np
import structlog
from scipy.stats import norm
from statsmodels.nonparametric.smoothers_lowess import lowess

from joshua.config import Settings, settings as default_settings
from joshua.models.factor import TrendDirection

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MIN_POINTS_FOR_TREND: int = 3
MAD_TO_SIGMA: float = 1.4826  # MAD → σ for Gaussian noise
TIE_DECIMALS: int = 9  # scores equal to this many decimals are ties

FLAG_TREND_INSUFFICIENT = "trend_insufficient_history"
FLAG_DECOMPOSITION_SKIPPED = "decomposition_skipped"


class TrendClassification(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    NO_TREND = "no_trend"
    INSUFFICIENT = "insufficient"


class AnalysisStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_HISTORY = "insufficient_history"


@dataclass(frozen=True)
class MannKendallResult:
    classification: TrendClassification
    n: int
    s: int = 0
    variance: float = 0.0
    z: float = 0.0
    p_value: float = 1.0
    tau: float = 0.0
    sens_slope: float = 0.0

    @property
    def is_significant(self) -> bool:
        return self.classification in (TrendClassification.INCREASING, TrendClassification.DECREASING)


@dataclass(frozen=True)
class ChangePoint:
    """An abrupt shift in the series mean."""
    index: int               # estimated first point of the new regime
    detected_at: int         # index where the accumulator crossed h
    direction: str           # "increase" | "decrease"
    magnitude: float         # new regime mean − old reference level
    confidence: float        # min(1, S / 2h)
    statistic: float         # accumulator value at detection


@dataclass(frozen=True)
class ChangePointResult:
    change_points: tuple[ChangePoint, ...]
    sigma: float
    status: AnalysisStatus = AnalysisStatus.OK


@dataclass(frozen=True)
class Decomposition:
    """Additive trend + seasonal + residual split of a series."""
    status: AnalysisStatus
    period: Optional[int]
    trend: tuple[float, ...] = ()
    seasonal: tuple[float, ...] = ()
    residual: tuple[float, ...] = ()
    seasonal_strength: float = 0.0


@dataclass(frozen=True)
class TrendAnalysis:
    """Everything the analyzer learned about a score series."""
    direction: TrendDirection
    status: AnalysisStatus
    mann_kendall: MannKendallResult
    change_points: tuple[ChangePoint, ...] = ()
    decomposition: Optional[Decomposition] = None
    n_points: int = 0
    flags: tuple[str, ...] = field(default_factory=tuple)


# ── Statistics ────────────────────────────────────────────────────────────


def _as_series(series: Sequence[float]) -> np.ndarray:
    return np.round(np.asarray(series, dtype=float), TIE_DECIMALS)


def sens_slope(series: Sequence[float]) -> float:
    """Median of pairwise slopes (y_j − y_i) / (j − i); 0.0 for fewer than 2 points."""
    x = _as_series(series)
    if len(x) < 2:
        return 0.0
    i, j = np.triu_indices(len(x), k=1)
    return float(np.median((x[j] - x[i]) / (j - i)))


def mann_kendall(series: Sequence[float], alpha: float = 0.05) -> MannKendallResult:
    """
    Mann-Kendall trend test.

    S   = Σ_{i<j} sign(x_j − x_i)
    Var = [n(n−1)(2n+5) − Σ t(t−1)(2t+5)] / 18     (t = tie group sizes)
    Z   = (S − sign(S)) / √Var
    """
    x = _as_series(series)
    n = len(x)
    if n < MIN_POINTS_FOR_TREND:
        return MannKendallResult(classification=TrendClassification.INSUFFICIENT, n=n)

    i, j = np.triu_indices(n, k=1)
    s = int(np.sign(x[j] - x[i]).sum())

    _, tie_counts = np.unique(x, return_counts=True)
    ties = sum(t * (t - 1) * (2 * t + 5) for t in tie_counts if t > 1)
    variance = (n * (n - 1) * (2 * n + 5) - ties) / 18.0

    if variance <= 0 or s == 0:
        z = 0.0
    elif s > 0:
        z = (s - 1) / math.sqrt(variance)
    else:
        z = (s + 1) / math.sqrt(variance)

    p_value = float(2.0 * (1.0 - norm.cdf(abs(z))))
    if p_value < alpha:
        classification = TrendClassification.INCREASING if z > 0 else TrendClassification.DECREASING
    else:
        classification = TrendClassification.NO_TREND

    return MannKendallResult(
        classification=classification,
        n=n,
        s=s,
        variance=variance,
        z=z,
        p_value=p_value,
        tau=s / (n * (n - 1) / 2.0),
        sens_slope=sens_slope(x),
    )


def estimate_sigma(series: Sequence[float]) -> float:
    """
    Robust noise scale.

    MAD of first differences (insensitive to level shifts); falls back to
    the sample standard deviation when the differences are degenerate.
    """
    x = _as_series(series)
    if len(x) < 2:
        return 0.0
    diffs = np.diff(x)
    mad = float(np.median(np.abs(diffs - np.median(diffs))))
    sigma = MAD_TO_SIGMA * mad / math.sqrt(2.0)
    if sigma > 0:
        return sigma
    return float(np.std(x, ddof=1))


def detect_change_points(
    series: Sequence[float],
    sigma: Optional[float] = None,
    k: float = 0.5,
    h: float = 4.0,
    warmup: Optional[int] = None,
) -> ChangePointResult:
    """
    Two-sided CUSUM.

        S⁺ = max(0, S⁺ + x − μ − kσ)
        S⁻ = max(0, S⁻ + μ − x − kσ)

    μ is the mean of the current regime: the first `warmup` points, then
    re-estimated from each detected change start. Crossing hσ emits a
    change point and resets both accumulators.
    """
    x = _as_series(series)
    n = len(x)
    if n < MIN_POINTS_FOR_TREND:
        return ChangePointResult(change_points=(), sigma=0.0, status=AnalysisStatus.INSUFFICIENT_HISTORY)

    sigma = estimate_sigma(x) if sigma is None else float(sigma)
    if sigma <= 0:
        return ChangePointResult(change_points=(), sigma=0.0)
    if warmup is None:
        warmup = max(2, min(10, n // 5))

    allowance = k * sigma
    threshold = h * sigma
    points: list[ChangePoint] = []

    regime_start = 0
    reference: Optional[float] = None
    s_pos = s_neg = 0.0
    zero_pos = zero_neg = regime_start
    t = 0
    while t < n:
        if reference is None:
            if t - regime_start + 1 < warmup:
                t += 1
                continue
            reference = float(np.mean(x[regime_start:t + 1]))
            s_pos = s_neg = 0.0
            zero_pos = zero_neg = t
            t += 1
            continue

        s_pos = max(0.0, s_pos + x[t] - reference - allowance)
        s_neg = max(0.0, s_neg + reference - x[t] - allowance)
        if s_pos == 0.0:
            zero_pos = t
        if s_neg == 0.0:
            zero_neg = t

        if s_pos > threshold or s_neg > threshold:
            up = s_pos >= s_neg
            statistic = s_pos if up else s_neg
            start = (zero_pos if up else zero_neg) + 1
            magnitude = float(np.mean(x[start:t + 1])) - reference
            points.append(ChangePoint(
                index=start,
                detected_at=t,
                direction="increase" if up else "decrease",
                magnitude=magnitude,
                confidence=min(1.0, statistic / (2.0 * threshold)),
                statistic=statistic,
            ))
            logger.debug(
                "change_point_detected",
                index=start,
                detected_at=t,
                direction="increase" if up else "decrease",
                magnitude=round(magnitude, 4),
            )
            # Re-estimate μ from the new regime, including points already seen
            regime_start = start
            reference = None
            continue
        t += 1

    return ChangePointResult(change_points=tuple(points), sigma=sigma)


def decompose(
    series: Sequence[float],
    period: Optional[int],
    frac: float = 0.3,
) -> Decomposition:
    """
    Additive decomposition. Needs at least two full periods; otherwise
    returns INSUFFICIENT_HISTORY with empty components.
    """
    x = np.asarray(series, dtype=float)
    n = len(x)
    if period is None or period < 2 or n < 2 * period:
        return Decomposition(status=AnalysisStatus.INSUFFICIENT_HISTORY, period=period)

    t = np.arange(n, dtype=float)
    trend = lowess(x, t, frac=frac, return_sorted=False)
    detrended = x - trend

    means = np.array([detrended[i::period].mean() for i in range(period)])
    means -= means.mean()
    seasonal = np.resize(means, n)
    residual = x - trend - seasonal

    var_sr = float(np.var(seasonal + residual))
    strength = max(0.0, 1.0 - float(np.var(residual)) / var_sr) if var_sr > 0 else 0.0

    return Decomposition(
        status=AnalysisStatus.OK,
        period=period,
        trend=tuple(float(v) for v in trend),
        seasonal=tuple(float(v) for v in seasonal),
        residual=tuple(float(v) for v in residual),
        seasonal_strength=strength,
    )


_DIRECTION_BY_CLASSIFICATION: dict[TrendClassification, TrendDirection] = {
    # Series are risk scores: rising score means deteriorating
    TrendClassification.INCREASING: TrendDirection.DETERIORATING,
    TrendClassification.DECREASING: TrendDirection.IMPROVING,
    TrendClassification.NO_TREND: TrendDirection.STABLE,
    TrendClassification.INSUFFICIENT: TrendDirection.UNCERTAIN,
}


class TrendAnalyzer:
    """Runs every trend statistic over a risk-score series."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def analyze(
        self,
        series: Sequence[float],
        period: Optional[int] = None,
        sigma: Optional[float] = None,
    ) -> TrendAnalysis:
        period = period if period is not None else self.config.seasonal_period
        flags: list[str] = []

        mk = mann_kendall(series, alpha=self.config.trend_significance)
        if mk.classification is TrendClassification.INSUFFICIENT:
            flags.append(FLAG_TREND_INSUFFICIENT)
            logger.debug("trend_insufficient_history", n_points=len(series))
            return TrendAnalysis(
                direction=TrendDirection.UNCERTAIN,
                status=AnalysisStatus.INSUFFICIENT_HISTORY,
                mann_kendall=mk,
                n_points=len(series),
                flags=tuple(flags),
            )

        cps = detect_change_points(series, sigma=sigma, k=self.config.cusum_k, h=self.config.cusum_h)
        decomposition = None
        if period is not None:
            decomposition = decompose(series, period, frac=self.config.loess_frac)
            if decomposition.status is AnalysisStatus.INSUFFICIENT_HISTORY:
                flags.append(FLAG_DECOMPOSITION_SKIPPED)

        return TrendAnalysis(
            direction=_DIRECTION_BY_CLASSIFICATION[mk.classification],
            status=AnalysisStatus.OK,
            mann_kendall=mk,
            change_points=cps.change_points,
            decomposition=decomposition,
            n_points=len(series),
            flags=tuple(flags),
        )
