"""Portfolio-wide gating of proposed position actions.

A rejection is a decision, not an error: it is returned as a RiskDecision
and logged by the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from statarb.config import RiskLimits
from statarb.engine.positions import PortfolioState, Position
from statarb.services.correlation_engine import TradingPair
from statarb.services.signal_generator import Classification, RiskLevel, Signal

logger = logging.getLogger(__name__)


class EmergencyStopSource(Protocol):
    async def get_emergency_stop_state(self) -> bool: ...


@dataclass(frozen=True)
class RiskDecision:
    approved: bool
    reason: str | None = None

    @classmethod
    def approve(cls) -> "RiskDecision":
        return cls(approved=True)

    @classmethod
    def reject(cls, reason: str) -> "RiskDecision":
        return cls(approved=False, reason=reason)


@dataclass(frozen=True)
class HealthReport:
    correlation_breakdown: bool = False
    stale: bool = False

    @property
    def healthy(self) -> bool:
        return not (self.correlation_breakdown or self.stale)


class RiskGate:
    def __init__(
        self,
        limits: RiskLimits,
        breakdown_ticks: int = 3,
        stale_after: timedelta = timedelta(minutes=5),
    ):
        self.limits = limits
        self.breakdown_ticks = breakdown_ticks
        self.stale_after = stale_after
        self._breach_counts: dict[str, int] = {}

    async def emergency_stop_active(self, source: EmergencyStopSource) -> bool:
        """Evaluated before any other gate every tick."""
        try:
            return bool(await source.get_emergency_stop_state())
        except Exception as e:
            # An unreadable emergency flag is treated as raised
            logger.error(f"Emergency stop state unavailable, assuming stop: {e}")
            return True

    def check_entry_allowed(
        self,
        signal: Signal,
        portfolio: PortfolioState,
        proposed_allocation: float,
        last_price_at: datetime | None = None,
        now: datetime | None = None,
    ) -> RiskDecision:
        """Freshness is only checked when `now` is given."""
        limits = self.limits
        if portfolio.emergency_stop:
            return RiskDecision.reject("emergency_stop")
        if signal.classification != Classification.ENTRY:
            return RiskDecision.reject("not_entry_signal")
        if now is not None and self.is_stale(last_price_at, now):
            return RiskDecision.reject("stale_data")
        if signal.pair_id in portfolio.failed_pair_ids:
            return RiskDecision.reject("reconciliation_required")
        if signal.pair_id in portfolio.active_pair_ids:
            return RiskDecision.reject("position_exists")
        if portfolio.active_count >= limits.max_concurrent_positions:
            return RiskDecision.reject("max_concurrent_positions")
        exposure_cap = portfolio.total_capital * limits.max_total_exposure_pct / 100.0
        if portfolio.committed_capital + proposed_allocation > exposure_cap:
            return RiskDecision.reject("max_total_exposure")
        per_pair_cap = portfolio.total_capital * limits.max_capital_per_pair_pct / 100.0
        if proposed_allocation > per_pair_cap:
            return RiskDecision.reject("max_capital_per_pair")
        if signal.correlation < limits.min_correlation:
            return RiskDecision.reject("low_correlation")
        if signal.confidence < limits.min_confidence:
            return RiskDecision.reject("low_confidence")
        if signal.expected_return < limits.min_expected_return:
            return RiskDecision.reject("low_expected_return")
        if limits.reject_high_risk and signal.risk_level == RiskLevel.HIGH:
            return RiskDecision.reject("high_risk")
        return RiskDecision.approve()

    def observe_correlation(self, pair_id: str, correlation: float | None) -> int:
        """Track consecutive ticks below min_correlation; returns the current streak.

        A tick without a correlation reading leaves the streak unchanged.
        """
        if correlation is None:
            return self._breach_counts.get(pair_id, 0)
        if correlation < self.limits.min_correlation:
            self._breach_counts[pair_id] = self._breach_counts.get(pair_id, 0) + 1
        else:
            self._breach_counts[pair_id] = 0
        return self._breach_counts[pair_id]

    def breach_count(self, pair_id: str) -> int:
        return self._breach_counts.get(pair_id, 0)

    def reset(self, pair_id: str):
        self._breach_counts.pop(pair_id, None)

    def is_stale(self, last_price_at: datetime | None, now: datetime) -> bool:
        """No price received within `stale_after`."""
        return last_price_at is None or now - last_price_at > self.stale_after

    def check_ongoing_health(
        self,
        position: Position,
        stats: TradingPair | None,
        last_price_at: datetime | None,
        now: datetime,
    ) -> HealthReport:
        stale = self.is_stale(last_price_at, now)
        breakdown = self.breach_count(position.pair_id) >= self.breakdown_ticks
        if stale:
            logger.warning(f"[{position.pair_id}] No fresh price since {last_price_at}")
        if breakdown:
            corr = stats.correlation if stats else None
            logger.warning(
                f"[{position.pair_id}] Correlation breakdown: {corr} below "
                f"{self.limits.min_correlation} for {self.breach_count(position.pair_id)} ticks"
            )
        return HealthReport(correlation_breakdown=breakdown, stale=stale)
