"""Pair statistics: correlation, cointegration, half-life and confidence.

All methods are pure computation over pandas/numpy data, no I/O. The
controller runs `analyze` for independent pairs concurrently in worker
threads, so the engine holds configuration only.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import pandas as pd
from statsmodels.tsa.stattools import adfuller

from statarb.config import ConfidenceWeights
from statarb.engine.errors import DataInsufficientError, StatisticalDegenerateError
from statarb.schemas.pair import PairConfig
from statarb.services.market_data import align_series

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InsufficientData:
    """Returned instead of a correlation when there are too few aligned samples."""
    sample_size: int
    required: int


@dataclass(frozen=True)
class CointegrationResult:
    cointegrated: bool
    test_statistic: float
    hedge_ratio: float
    critical_value: float


@dataclass
class TradingPair:
    """Statistics of one pair for the current tick."""
    pair_id: str
    token_a: str
    token_b: str
    correlation: float | None
    cointegrated: bool
    test_statistic: float | None
    half_life: float | None
    confidence: float
    sample_size: int
    last_updated: datetime
    hedge_ratio: float | None = None
    z_score: float | None = None
    current_spread: float | None = None
    spread_mean: float | None = None
    spread_std: float | None = None
    tradable: bool = True
    reason: str | None = None  # why the pair is not tradable

    @classmethod
    def non_tradable(
        cls,
        pair: PairConfig,
        reason: str,
        now: datetime,
        sample_size: int = 0,
        correlation: float | None = None,
    ) -> "TradingPair":
        return cls(
            pair_id=pair.pair_id,
            token_a=pair.token_a,
            token_b=pair.token_b,
            correlation=correlation,
            cointegrated=False,
            test_statistic=None,
            half_life=None,
            confidence=0.0,
            sample_size=sample_size,
            last_updated=now,
            tradable=False,
            reason=reason,
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CorrelationEngine:
    def __init__(
        self,
        min_samples: int = 30,
        zscore_window: int = 60,
        critical_value: float = -3.34,
        alignment_tolerance_seconds: float = 0.0,
        weights: ConfidenceWeights | None = None,
    ):
        self.min_samples = min_samples
        self.zscore_window = zscore_window
        self.critical_value = critical_value
        self.alignment_tolerance_seconds = alignment_tolerance_seconds
        self.weights = weights or ConfidenceWeights()

    def align(self, series_a: pd.Series, series_b: pd.Series) -> pd.DataFrame:
        return align_series(series_a, series_b, self.alignment_tolerance_seconds)

    def compute_correlation(
        self, series_a: pd.Series, series_b: pd.Series
    ) -> float | InsufficientData:
        """Pearson correlation over the aligned overlap of both series."""
        return self._correlation(self.align(series_a, series_b))

    def _correlation(self, aligned: pd.DataFrame) -> float | InsufficientData:
        n = len(aligned)
        if n < self.min_samples:
            return InsufficientData(sample_size=n, required=self.min_samples)

        a = aligned["a"].to_numpy(dtype=float)
        b = aligned["b"].to_numpy(dtype=float)
        if np.std(a) == 0 or np.std(b) == 0:
            raise StatisticalDegenerateError("zero variance in price series")
        return float(np.corrcoef(a, b)[0, 1])

    def test_cointegration(self, series_a: pd.Series, series_b: pd.Series) -> CointegrationResult:
        """Engle-Granger: OLS of ln(A) on ln(B), then ADF on the residual."""
        aligned = self.align(series_a, series_b)
        if len(aligned) < self.min_samples:
            raise DataInsufficientError(len(aligned), self.min_samples)
        log_a = np.log(aligned["a"].to_numpy(dtype=float))
        log_b = np.log(aligned["b"].to_numpy(dtype=float))
        return self._cointegration(log_a, log_b)

    def _cointegration(self, log_a: np.ndarray, log_b: np.ndarray) -> CointegrationResult:
        if np.std(log_b) == 0:
            raise StatisticalDegenerateError("zero variance in regressor series")
        hedge_ratio, intercept = np.polyfit(log_b, log_a, 1)
        residual = log_a - (hedge_ratio * log_b + intercept)
        if np.std(residual) == 0:
            raise StatisticalDegenerateError("zero variance in cointegration residual")

        try:
            test_statistic = float(adfuller(residual, regression="c", autolag="AIC")[0])
        except (ValueError, np.linalg.LinAlgError) as e:
            raise StatisticalDegenerateError(f"ADF test failed: {e}") from e
        if math.isnan(test_statistic):
            raise StatisticalDegenerateError("ADF statistic is NaN")

        return CointegrationResult(
            cointegrated=test_statistic < self.critical_value,
            test_statistic=test_statistic,
            hedge_ratio=float(hedge_ratio),
            critical_value=self.critical_value,
        )

    @staticmethod
    def estimate_half_life(spread: np.ndarray | pd.Series) -> float:
        """OU half-life from a spread. Returns inf if the spread is not mean-reverting."""
        values = np.asarray(spread, dtype=float)
        if len(values) < 3:
            raise DataInsufficientError(len(values), 3)
        lag = values[:-1]
        delta = np.diff(values)
        if np.std(lag) == 0:
            raise StatisticalDegenerateError("constant spread")
        slope = float(np.polyfit(lag, delta, 1)[0])
        if slope >= 0:
            return float("inf")
        if slope <= -1:
            # AR coefficient <= 0: the gap closes within a single period
            return 0.0
        return -math.log(2) / math.log(1 + slope)

    def compute_confidence(
        self,
        correlation: float,
        cointegrated: bool,
        sample_size: int,
        half_life: float,
    ) -> float:
        """Monotone weighted score in [0, 1]."""
        w = self.weights
        score = w.correlation * min(abs(correlation), 1.0)
        score += w.cointegration * (1.0 if cointegrated else 0.0)
        score += w.sample_size * min(sample_size / w.sample_target, 1.0)
        if 0 < half_life < math.inf:
            score += w.reversion_speed * min(1.0, w.fast_half_life / half_life)
        return max(0.0, min(1.0, score))

    def analyze(
        self,
        pair: PairConfig,
        series_a: pd.Series,
        series_b: pd.Series,
        now: datetime,
    ) -> TradingPair:
        """Compute all statistics for a pair.

        Raises DataInsufficientError or StatisticalDegenerateError when the
        pair cannot be evaluated this tick.
        """
        aligned = self.align(series_a, series_b)
        correlation = self._correlation(aligned)
        if isinstance(correlation, InsufficientData):
            raise DataInsufficientError(correlation.sample_size, correlation.required)

        log_a = np.log(aligned["a"].to_numpy(dtype=float))
        log_b = np.log(aligned["b"].to_numpy(dtype=float))
        coint = self._cointegration(log_a, log_b)

        spread = log_a - coint.hedge_ratio * log_b
        half_life = self.estimate_half_life(spread)

        window = spread[-self.zscore_window:]
        spread_mean = float(np.mean(window))
        spread_std = float(np.std(window, ddof=1))
        if spread_std == 0 or np.isnan(spread_std):
            raise StatisticalDegenerateError("zero spread variance in z-score window")
        current = float(spread[-1])

        confidence = self.compute_confidence(correlation, coint.cointegrated, len(aligned), half_life)

        return TradingPair(
            pair_id=pair.pair_id,
            token_a=pair.token_a,
            token_b=pair.token_b,
            correlation=correlation,
            cointegrated=coint.cointegrated,
            test_statistic=coint.test_statistic,
            half_life=half_life,
            confidence=confidence,
            sample_size=len(aligned),
            last_updated=now,
            hedge_ratio=coint.hedge_ratio,
            z_score=(current - spread_mean) / spread_std,
            current_spread=current,
            spread_mean=spread_mean,
            spread_std=spread_std,
            tradable=math.isfinite(half_life),
            reason=None if math.isfinite(half_life) else "not_mean_reverting",
        )

    def safe_analyze(
        self,
        pair: PairConfig,
        series_a: pd.Series,
        series_b: pd.Series,
        now: datetime,
    ) -> TradingPair:
        """Like `analyze`, but degenerate inputs yield a non-tradable pair."""
        try:
            return self.analyze(pair, series_a, series_b, now)
        except DataInsufficientError as e:
            logger.debug(f"[{pair.pair_id}] {e}")
            return TradingPair.non_tradable(pair, "insufficient_data", now, sample_size=e.sample_size)
        except StatisticalDegenerateError as e:
            logger.debug(f"[{pair.pair_id}] Degenerate statistics: {e}")
            return TradingPair.non_tradable(pair, "degenerate", now)
