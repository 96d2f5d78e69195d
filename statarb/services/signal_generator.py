"""Spread z-score signals.

Pure computation: turns a pair's current spread and its rolling baseline
into an entry / hold / exit / stop classification.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from statarb.config import RiskLimits
from statarb.engine.errors import StatisticalDegenerateError
from statarb.services.correlation_engine import TradingPair


class Direction(str, Enum):
    LONG_SPREAD = "long_spread"    # buy A, sell B
    SHORT_SPREAD = "short_spread"  # sell A, buy B


class Classification(str, Enum):
    ENTRY = "entry"
    HOLD = "hold"
    EXIT = "exit"
    STOP = "stop"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Signal:
    """Transient per-tick signal for one pair."""
    pair_id: str
    z_score: float
    direction: Direction
    classification: Classification
    expected_return: float
    confidence: float
    correlation: float
    timestamp: datetime
    strength: float = 0.0  # 0-1, saturates at |z| = 4
    risk_level: RiskLevel = RiskLevel.LOW

    @property
    def rank_score(self) -> float:
        return self.expected_return * self.confidence


def compute_zscore(current_spread: float, spread_mean: float, spread_std: float) -> float:
    if not spread_std > 0:
        raise StatisticalDegenerateError("spread std must be positive")
    return (current_spread - spread_mean) / spread_std


def direction_for(z_score: float) -> Direction:
    # Positive z: A is rich relative to B
    return Direction.SHORT_SPREAD if z_score > 0 else Direction.LONG_SPREAD


def signal_strength(z_score: float) -> float:
    return min(abs(z_score) / 4.0, 1.0)


def risk_level(correlation: float, half_life: float | None, confidence: float) -> RiskLevel:
    """Weak correlation, slow reversion and low confidence each add risk."""
    score = 0
    if abs(correlation) < 0.5:
        score += 2
    elif abs(correlation) < 0.7:
        score += 1

    if half_life is None or not math.isfinite(half_life) or half_life > 20:
        score += 2
    elif half_life > 10:
        score += 1

    if confidence < 0.6:
        score += 2
    elif confidence < 0.8:
        score += 1

    if score >= 4:
        return RiskLevel.HIGH
    if score >= 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class SignalGenerator:
    def __init__(
        self,
        limits: RiskLimits,
        return_per_z: float = 0.005,
        max_base_return: float = 0.05,
        reference_half_life: float = 30.0,
        max_time_adjustment: float = 4.0,
    ):
        self.limits = limits
        self.return_per_z = return_per_z
        self.max_base_return = max_base_return
        self.reference_half_life = reference_half_life
        self.max_time_adjustment = max_time_adjustment

    def expected_return(self, abs_z: float, half_life: float | None) -> float:
        """Larger deviation and faster reversion give a larger expected return."""
        base = min(abs(abs_z) * self.return_per_z, self.max_base_return)
        if half_life is None or not math.isfinite(half_life):
            time_adjustment = 0.5
        elif half_life <= 0:
            time_adjustment = self.max_time_adjustment
        else:
            time_adjustment = max(0.5, self.reference_half_life / half_life)
        return base * min(time_adjustment, self.max_time_adjustment)

    def classify_z(self, z_score: float, correlation: float, confidence: float, has_position: bool) -> Classification:
        abs_z = abs(z_score)
        limits = self.limits
        if has_position:
            if abs_z >= limits.stop_z:
                return Classification.STOP
            if abs_z <= limits.exit_z:
                return Classification.EXIT
            return Classification.HOLD
        if (
            abs_z >= limits.entry_z
            and correlation >= limits.min_correlation
            and confidence >= limits.min_confidence
        ):
            return Classification.ENTRY
        return Classification.HOLD

    def classify(
        self,
        z_score: float,
        correlation: float,
        confidence: float,
        has_position: bool = False,
        pair_id: str = "",
        half_life: float | None = None,
        timestamp: datetime | None = None,
    ) -> Signal:
        return Signal(
            pair_id=pair_id,
            z_score=z_score,
            direction=direction_for(z_score),
            classification=self.classify_z(z_score, correlation, confidence, has_position),
            expected_return=self.expected_return(abs(z_score), half_life),
            confidence=confidence,
            correlation=correlation,
            timestamp=timestamp or datetime.now(timezone.utc),
            strength=signal_strength(z_score),
            risk_level=risk_level(correlation, half_life, confidence),
        )

    def generate(self, stats: TradingPair, has_position: bool) -> Signal | None:
        """Signal for a pair's statistics, or None when the pair cannot be read."""
        if stats.z_score is None or stats.correlation is None:
            return None
        if not stats.tradable and not has_position:
            return None
        return self.classify(
            z_score=stats.z_score,
            correlation=stats.correlation,
            confidence=stats.confidence,
            has_position=has_position,
            pair_id=stats.pair_id,
            half_life=stats.half_life,
            timestamp=stats.last_updated,
        )
