"""Lifecycle of hedged pair positions.

All state transitions go through one asyncio.Lock, so capital and
concurrency invariants hold even when the controller and an operator act on
positions at the same time. Execution calls are awaited with a timeout; a
call that outlives it moves the position to FAILED and is tracked until it
resolves, but is never cancelled.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from statarb.config import RiskLimits
from statarb.engine.errors import ExecutionFailure, ReconciliationRequired
from statarb.engine.ledger import PositionLedger
from statarb.engine.positions import (
    ClosedPosition,
    ClosingPosition,
    ExitReason,
    FailedPosition,
    OpeningPosition,
    OpenPosition,
    PortfolioState,
    Position,
    PositionTerms,
    StoppedPosition,
    new_position_id,
)
from statarb.engine.risk_gate import HealthReport
from statarb.schemas.pair import PairConfig
from statarb.services.lighter_client import ExecutionService, PairTradeResult, TradeLeg
from statarb.services.signal_generator import Direction, Signal

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntrySizing:
    allocation: float
    leg_a_amount: float
    leg_b_amount: float
    price_a: float
    price_b: float
    reason: str | None = None  # set when the entry is gated out

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class PairPerformance:
    trades: int
    realized_pnl: float
    win_rate: float  # percent


@dataclass(frozen=True)
class AggregateStats:
    total_trades: int
    win_rate: float  # percent
    avg_holding_period: timedelta
    realized_pnl: float
    avg_pnl_per_trade: float = 0.0
    per_pair: dict[str, PairPerformance] = field(default_factory=dict)


def aggregate_stats(closed: list[ClosedPosition]) -> AggregateStats:
    """Trade count, win rate (percent), mean holding period and PnL, overall and per pair."""
    if not closed:
        return AggregateStats(0, 0.0, timedelta(0), 0.0)
    wins = sum(1 for t in closed if t.realized_pnl > 0)
    total_holding = sum((t.holding_period for t in closed), timedelta(0))
    realized = sum(t.realized_pnl for t in closed)

    by_pair: dict[str, list[ClosedPosition]] = {}
    for t in closed:
        by_pair.setdefault(t.pair_id, []).append(t)
    per_pair = {
        pair_id: PairPerformance(
            trades=len(trades),
            realized_pnl=sum(t.realized_pnl for t in trades),
            win_rate=sum(1 for t in trades if t.realized_pnl > 0) / len(trades) * 100,
        )
        for pair_id, trades in by_pair.items()
    }
    return AggregateStats(
        total_trades=len(closed),
        win_rate=wins / len(closed) * 100,
        avg_holding_period=total_holding / len(closed),
        realized_pnl=realized,
        avg_pnl_per_trade=realized / len(closed),
        per_pair=per_pair,
    )



class PositionManager:
    def __init__(
        self,
        limits: RiskLimits,
        execution: ExecutionService,
        ledger: PositionLedger | None = None,
        execution_timeout: float = 30.0,
        return_weight_scale: float = 20.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.limits = limits
        self.execution = execution
        self.ledger = ledger
        self.execution_timeout = execution_timeout
        self.return_weight_scale = return_weight_scale
        self.clock = clock
        self._positions: dict[str, Position] = {}  # non-terminal, by position id
        self._history: list[ClosedPosition] = []
        self._lock = asyncio.Lock()
        self._in_flight: set[asyncio.Task] = set()
        self._timed_out: dict[asyncio.Task, str] = {}  # task -> position id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_open_positions(self) -> list[OpenPosition]:
        return [p for p in self._positions.values() if isinstance(p, OpenPosition)]

    def get_position(self, position_id: str) -> Position | None:
        if position_id in self._positions:
            return self._positions[position_id]
        return next((p for p in self._history if p.id == position_id), None)

    def position_for_pair(self, pair_id: str) -> Position | None:
        return next((p for p in self._positions.values() if p.pair_id == pair_id), None)

    @property
    def history(self) -> list[ClosedPosition]:
        return list(self._history)

    def committed_capital(self) -> float:
        return sum(p.allocated_capital for p in self._positions.values())

    def portfolio_state(self, total_capital: float, emergency_stop: bool = False) -> PortfolioState:
        return PortfolioState(
            total_capital=total_capital,
            committed_capital=self.committed_capital(),
            active_count=len(self._positions),
            active_pair_ids=frozenset(p.pair_id for p in self._positions.values()),
            failed_pair_ids=frozenset(
                p.pair_id for p in self._positions.values() if isinstance(p, FailedPosition)
            ),
            emergency_stop=emergency_stop,
        )

    def aggregate_stats(self) -> AggregateStats:
        return aggregate_stats(self._history)

    # ------------------------------------------------------------------
    # Sizing and exit rules (pure)
    # ------------------------------------------------------------------

    def size_entry(self, signal: Signal, total_capital: float, price_a: float, price_b: float) -> EntrySizing:
        """Allocation for a new position, split 50/50 by notional."""
        if price_a <= 0 or price_b <= 0:
            return EntrySizing(0.0, 0.0, 0.0, price_a, price_b, reason="invalid_price")

        base = total_capital * self.limits.max_capital_per_pair_pct / 100.0
        weight = signal.confidence * signal.expected_return * self.return_weight_scale
        allocation = base * max(0.0, min(1.0, weight))
        leg_notional = allocation / 2
        sizing = EntrySizing(
            allocation=allocation,
            leg_a_amount=leg_notional / price_a,
            leg_b_amount=leg_notional / price_b,
            price_a=price_a,
            price_b=price_b,
        )
        if allocation <= 0:
            return replace(sizing, reason="zero_allocation")
        if leg_notional < self.execution.min_leg_notional:
            return replace(sizing, reason="below_min_size")
        return sizing

    def evaluate_exit(self, position: OpenPosition, health: HealthReport, now: datetime) -> ExitReason | None:
        """First matching exit trigger in priority order."""
        abs_z = abs(position.current_z_score)
        if health.stale:
            return ExitReason.STALE_DATA
        if abs_z >= self.limits.stop_z:
            return ExitReason.STOP_LOSS
        if health.correlation_breakdown:
            return ExitReason.CORRELATION_BREAKDOWN
        if position.age(now) > self.limits.max_holding_period:
            return ExitReason.MAX_HOLDING_PERIOD
        if abs_z <= self.limits.exit_z:
            return ExitReason.MEAN_REVERSION
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def open_position(self, pair: PairConfig, signal: Signal, sizing: EntrySizing) -> Position | None:
        """Submit the entry legs. Returns the OPEN or FAILED position, or None if the pair is taken.

        Raises ExecutionFailure when the execution service rejects the entry;
        nothing is left behind in that case.
        """
        async with self._lock:
            existing = self.position_for_pair(pair.pair_id)
            if existing is not None:
                logger.warning(f"[{pair.pair_id}] Position {existing.id} already active, aborting entry")
                return None

            terms = PositionTerms(
                id=new_position_id(),
                pair_id=pair.pair_id,
                token_a=pair.token_a,
                token_b=pair.token_b,
                direction=signal.direction,
                leg_a_amount=sizing.leg_a_amount,
                leg_b_amount=sizing.leg_b_amount,
                entry_price_a=sizing.price_a,
                entry_price_b=sizing.price_b,
                entry_z_score=signal.z_score,
                allocated_capital=sizing.allocation,
                confidence=signal.confidence,
                market_a=pair.market_a,
                market_b=pair.market_b,
            )
            self._store(OpeningPosition(terms=terms, submitted_at=self.clock()))

            leg_a, leg_b = _entry_legs(terms)
            result = await self._execute(terms.id, leg_a, leg_b)
            now = self.clock()

            if result is None:
                failed = FailedPosition(
                    terms=terms, stage="opening", error="execution timeout", failed_at=now,
                )
                self._store(failed)
                logger.error(f"[{pair.pair_id}] Entry {terms.id} timed out, reconciliation required")
                return failed

            if not result.success:
                if result.uncertain:
                    failed = FailedPosition(terms=terms, stage="opening", error=result.error or "", failed_at=now)
                    self._store(failed)
                    logger.error(f"[{pair.pair_id}] Entry {terms.id} left uncertain holdings: {result.error}")
                    return failed
                self._discard(terms.id)
                raise ExecutionFailure("opening", result.error or "rejected")

            fill_a, fill_b = result.fill_prices
            if fill_a or fill_b:
                terms = replace(
                    terms,
                    entry_price_a=fill_a or terms.entry_price_a,
                    entry_price_b=fill_b or terms.entry_price_b,
                )
            position = OpenPosition(
                terms=terms,
                entry_timestamp=now,
                current_z_score=signal.z_score,
                unrealized_pnl=0.0,
                tx_ids=result.tx_ids,
            )
            self._store(position)
            logger.info(
                f"[{pair.pair_id}] Opened {terms.direction.value} {terms.id} at z={signal.z_score:.3f} "
                f"alloc=${terms.allocated_capital:.2f} legs={terms.leg_a_amount:.6f}/{terms.leg_b_amount:.6f} "
                f"fills={result.fill_amounts}"
            )
            return position

    async def mark_to_market(self, pair_id: str, z_score: float | None, price_a: float, price_b: float) -> OpenPosition | None:
        async with self._lock:
            position = self.position_for_pair(pair_id)
            if not isinstance(position, OpenPosition):
                return None
            updated = replace(
                position,
                current_z_score=z_score if z_score is not None else position.current_z_score,
                unrealized_pnl=position.terms.mark_to_market(price_a, price_b),
            )
            self._store(updated)
            return updated

    async def close_position(self, position_id: str, reason: ExitReason, price_a: float, price_b: float) -> Position:
        """Submit the exit legs. Returns the CLOSED/STOPPED or FAILED position."""
        async with self._lock:
            position = self._positions.get(position_id)
            if isinstance(position, FailedPosition):
                raise ReconciliationRequired(position_id)
            if not isinstance(position, OpenPosition):
                raise ValueError(f"Position {position_id} is not open")

            terms = position.terms
            pnl = terms.mark_to_market(price_a, price_b)
            self._store(ClosingPosition(
                terms=terms,
                entry_timestamp=position.entry_timestamp,
                reason=reason,
                submitted_at=self.clock(),
                current_z_score=position.current_z_score,
                unrealized_pnl=pnl,
            ))

            leg_a, leg_b = _exit_legs(terms, price_a, price_b)
            result = await self._execute(position_id, leg_a, leg_b, closing=True)
            now = self.clock()

            if result is None or not result.success:
                error = "execution timeout" if result is None else (result.error or "execution failed")
                failed = FailedPosition(
                    terms=terms,
                    stage="closing",
                    error=error,
                    failed_at=now,
                    entry_timestamp=position.entry_timestamp,
                    reason=reason,
                )
                self._store(failed)
                logger.error(f"[{terms.pair_id}] Exit ({reason.value}) of {position_id} failed: {error}")
                return failed

            cls = StoppedPosition if reason == ExitReason.STOP_LOSS else ClosedPosition
            closed = cls(
                terms=terms,
                entry_timestamp=position.entry_timestamp,
                exit_timestamp=now,
                reason=reason,
                realized_pnl=pnl,
                exit_z_score=position.current_z_score,
                tx_ids=result.tx_ids,
            )
            self._finish(closed)
            logger.info(
                f"[{terms.pair_id}] Closed {position_id} ({reason.value}) z={position.current_z_score:.3f} "
                f"PnL=${pnl:.4f}"
            )
            return closed

    async def reconcile(self, position_id: str, holdings_flat: bool, note: str = "", realized_pnl: float = 0.0) -> Position:
        """Resolve a FAILED position from observed holdings.

        holdings_flat=True closes it with reason 'reconciled'; otherwise the
        legs are confirmed held and the position returns to OPEN.
        """
        async with self._lock:
            position = self._positions.get(position_id)
            if not isinstance(position, FailedPosition):
                raise ReconciliationRequired(position_id, "not in FAILED state, nothing to reconcile")

            now = self.clock()
            notes = position.notes + ((note,) if note else ())
            if holdings_flat:
                resolved = ClosedPosition(
                    terms=position.terms,
                    entry_timestamp=position.entry_timestamp or position.failed_at,
                    exit_timestamp=now,
                    reason=ExitReason.RECONCILED,
                    realized_pnl=realized_pnl,
                )
                self._finish(resolved)
            else:
                resolved = OpenPosition(
                    terms=position.terms,
                    entry_timestamp=position.entry_timestamp or now,
                    current_z_score=position.terms.entry_z_score,
                )
                self._store(resolved)
            logger.warning(
                f"[{position.pair_id}] Reconciled {position_id} from {position.stage} failure: "
                f"{'flat' if holdings_flat else 'held'} {' | '.join(notes)}"
            )
            return resolved

    async def mark_failed(self, position_id: str, error: str) -> FailedPosition:
        """Flag a position whose ledger disagrees with actual holdings."""
        async with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                raise ValueError(f"Position {position_id} is not active")
            if isinstance(position, FailedPosition):
                return position
            failed = FailedPosition(
                terms=position.terms,
                stage="reconciliation",
                error=error,
                failed_at=self.clock(),
                entry_timestamp=getattr(position, "entry_timestamp", None),
            )
            self._store(failed)
            logger.error(f"[{position.pair_id}] {position_id} marked FAILED: {error}")
            return failed

    def restore(self, positions: list[Position]):
        """Load persisted positions at startup."""
        for position in positions:
            if isinstance(position, ClosedPosition):
                self._history.append(position)
            else:
                self._positions[position.id] = position
        logger.info(f"Restored {len(self._positions)} active and {len(self._history)} closed positions")

    async def drain(self):
        """Wait for execution calls still in flight, attaching late outcomes to FAILED positions."""
        if not self._in_flight:
            return
        await asyncio.wait(set(self._in_flight))
        async with self._lock:
            for task, position_id in list(self._timed_out.items()):
                self._timed_out.pop(task, None)
                note = f"late execution result: {_describe(task)}"
                logger.error(f"Position {position_id}: {note}")
                position = self._positions.get(position_id)
                if isinstance(position, FailedPosition):
                    self._store(replace(position, notes=position.notes + (note,)))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(
        self, position_id: str, leg_a: TradeLeg, leg_b: TradeLeg, closing: bool = False,
    ) -> PairTradeResult | None:
        """Submit a pair trade; None means it did not resolve within the timeout."""
        task = asyncio.ensure_future(self.execution.submit_pair_trade(leg_a, leg_b, closing=closing))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

        done, _ = await asyncio.wait({task}, timeout=self.execution_timeout)
        if not done:
            self._timed_out[task] = position_id
            return None
        try:
            return task.result()
        except Exception as e:
            logger.error(f"Execution call for {position_id} raised: {e}", exc_info=True)
            return PairTradeResult(success=False, error=str(e))

    def _store(self, position: Position):
        self._positions[position.id] = position
        if self.ledger is not None:
            self.ledger.save(position)

    def _finish(self, position: ClosedPosition):
        self._positions.pop(position.id, None)
        self._history.append(position)
        if self.ledger is not None:
            self.ledger.save(position)

    def _discard(self, position_id: str):
        self._positions.pop(position_id, None)
        if self.ledger is not None:
            self.ledger.discard(position_id)


def _entry_legs(terms: PositionTerms) -> tuple[TradeLeg, TradeLeg]:
    # Long spread: buy A, sell B. Short spread: sell A, buy B.
    buy_a = terms.direction == Direction.LONG_SPREAD
    return (
        TradeLeg(terms.token_a, buy_a, terms.leg_a_amount, terms.entry_price_a, terms.market_a),
        TradeLeg(terms.token_b, not buy_a, terms.leg_b_amount, terms.entry_price_b, terms.market_b),
    )


def _exit_legs(terms: PositionTerms, price_a: float, price_b: float) -> tuple[TradeLeg, TradeLeg]:
    # Reverse of entry
    sell_a = terms.direction == Direction.LONG_SPREAD
    return (
        TradeLeg(terms.token_a, not sell_a, terms.leg_a_amount, price_a, terms.market_a),
        TradeLeg(terms.token_b, sell_a, terms.leg_b_amount, price_b, terms.market_b),
    )


def _describe(task: asyncio.Task) -> str:
    if task.cancelled():
        return "cancelled"
    error = task.exception()
    if error is not None:
        return f"raised {error!r}"
    result = task.result()
    if result.success:
        return f"filled {result.fill_amounts} tx={list(result.tx_ids)}"
    return f"failed: {result.error}"
