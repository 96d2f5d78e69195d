"""Strategy controller: one tick of the pairs-trading loop.

emergency check -> refresh prices -> analyze pairs (worker threads) ->
maintain open positions -> ranked entries -> drain execution -> tick log.
"""

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from statarb.engine.errors import ExecutionFailure
from statarb.engine.ledger import JobLogWriter
from statarb.engine.position_manager import AggregateStats, PositionManager
from statarb.engine.positions import (
    ClosedPosition,
    ExitReason,
    FailedPosition,
    OpenPosition,
    Position,
)
from statarb.engine.risk_gate import RiskGate
from statarb.schemas.pair import PairConfig
from statarb.services.correlation_engine import CorrelationEngine, TradingPair
from statarb.services.market_data import MarketDataFeed, PriceStore
from statarb.services.signal_generator import Classification, Signal, SignalGenerator

logger = logging.getLogger(__name__)


class CapitalSource(Protocol):
    async def get_available_capital(self) -> float: ...

    async def get_emergency_stop_state(self) -> bool: ...


class Notifier(Protocol):
    def notify(self, message: str): ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickSummary:
    signals_generated: int = 0
    positions_opened: int = 0
    positions_closed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    emergency_stop: bool = False
    rejections: dict[str, str] = field(default_factory=dict)  # pair_id -> reason
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class _PairLog:
    status: str = "success"
    action: str | None = None
    message: str | None = None
    details: dict = field(default_factory=dict)


class StrategyController:
    def __init__(
        self,
        pairs: list[PairConfig],
        market_data: MarketDataFeed,
        correlation_engine: CorrelationEngine,
        signal_generator: SignalGenerator,
        risk_gate: RiskGate,
        position_manager: PositionManager,
        authority: CapitalSource,
        price_store: PriceStore,
        job_log: JobLogWriter | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
        executor: Executor | None = None,
    ):
        self.pairs = list(pairs)
        self.market_data = market_data
        self.correlation_engine = correlation_engine
        self.signal_generator = signal_generator
        self.risk_gate = risk_gate
        self.position_manager = position_manager
        self.authority = authority
        self.price_store = price_store
        self.job_log = job_log
        self.notifier = notifier
        self.clock = clock
        self.executor = executor
        self.last_tick: TickSummary | None = None
        self._lock = asyncio.Lock()
        self._stats: dict[str, TradingPair] = {}
        self._pairs_by_id = {p.pair_id: p for p in self.pairs}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def get_open_positions(self) -> list[OpenPosition]:
        return self.position_manager.get_open_positions()

    def get_active_positions(self) -> list[Position]:
        return self.position_manager.get_active_positions()

    def get_pair_statistics(self, pair_id: str) -> TradingPair | None:
        return self._stats.get(pair_id)

    def get_all_pair_statistics(self) -> list[TradingPair]:
        return [self._stats[p.pair_id] for p in self.pairs if p.pair_id in self._stats]

    def get_aggregate_stats(self) -> AggregateStats:
        return self.position_manager.aggregate_stats()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickSummary:
        """Run one evaluation cycle, skipping if a prior tick is still in flight."""
        if self._lock.locked():
            logger.warning("Tick already running, skipping")
            return TickSummary(skipped=True)

        async with self._lock:
            summary = TickSummary(started_at=self.clock())
            logs = {p.pair_id: _PairLog() for p in self.pairs}
            try:
                await self._run(summary, logs)
            except Exception as e:
                logger.error(f"Tick failed: {e}", exc_info=True)
                summary.errors.append(f"tick: {e}")
                self._notify(f"Tick error: {e}")
            finally:
                await self.position_manager.drain()
                self._write_logs(logs)
                summary.finished_at = self.clock()
                self.last_tick = summary

            logger.info(
                f"Tick done: signals={summary.signals_generated} opened={summary.positions_opened} "
                f"closed={summary.positions_closed} errors={len(summary.errors)}"
                f"{' EMERGENCY' if summary.emergency_stop else ''}"
            )
            return summary

    async def _run(self, summary: TickSummary, logs: dict[str, _PairLog]):
        now = summary.started_at

        emergency = await self.risk_gate.emergency_stop_active(self.authority)
        summary.emergency_stop = emergency

        await self._refresh_prices(now, summary)

        if emergency:
            await self._close_all(ExitReason.EMERGENCY_STOP, summary, logs)
            return

        stats = await self._analyze_pairs(now, summary, logs)

        signals: dict[str, Signal] = {}
        for pair in self.pairs:
            pair_stats = stats.get(pair.pair_id)
            if pair_stats is None:
                continue
            self.risk_gate.observe_correlation(pair.pair_id, pair_stats.correlation)
            has_position = self.position_manager.position_for_pair(pair.pair_id) is not None
            signal = self.signal_generator.generate(pair_stats, has_position)
            if signal is not None:
                signals[pair.pair_id] = signal
                summary.signals_generated += 1
                logs[pair.pair_id].details["signal"] = signal.classification.value
                logs[pair.pair_id].details["risk_level"] = signal.risk_level.value
                logs[pair.pair_id].details["strength"] = round(signal.strength, 3)

        await self._maintain_positions(stats, now, summary, logs)
        await self._enter_positions(signals, now, summary, logs)

    async def _refresh_prices(self, now: datetime, summary: TickSummary):
        """Fetch candle history and the latest quote for every token."""
        tokens = sorted({t for p in self.pairs for t in (p.token_a, p.token_b)})
        lookback = self.price_store.lookback_window
        results = await asyncio.gather(
            *(self.market_data.get_price_series(token, lookback) for token in tokens),
            *(self.market_data.get_latest_price(token) for token in tokens),
            return_exceptions=True,
        )
        histories, quotes = results[:len(tokens)], results[len(tokens):]
        for token, history, quote in zip(tokens, histories, quotes):
            series = self.price_store.get(token)
            if isinstance(history, Exception):
                logger.warning(f"Price fetch failed for {token}: {history}")
                summary.errors.append(f"{token}: price fetch failed: {history}")
            else:
                added = series.extend(history)
                logger.debug(f"{token}: {added} new prices")

            if isinstance(quote, Exception):
                logger.warning(f"Latest price fetch failed for {token}: {quote}")
                summary.errors.append(f"{token}: latest price failed: {quote}")
            elif not series.record_quote(quote, now):
                logger.warning(f"No latest price for {token}, last received {series.quote_received_at}")

    async def _analyze_pairs(self, now: datetime, summary: TickSummary, logs: dict[str, _PairLog]) -> dict[str, TradingPair]:
        loop = asyncio.get_running_loop()
        futures = [
            loop.run_in_executor(
                self.executor,
                self.correlation_engine.safe_analyze,
                pair,
                self.price_store.get(pair.token_a).prices.copy(),
                self.price_store.get(pair.token_b).prices.copy(),
                now,
            )
            for pair in self.pairs
        ]
        results = await asyncio.gather(*futures, return_exceptions=True)

        stats: dict[str, TradingPair] = {}
        for pair, result in zip(self.pairs, results):
            if isinstance(result, Exception):
                logger.error(f"[{pair.pair_id}] Analysis failed: {result}", exc_info=result)
                summary.errors.append(f"{pair.pair_id}: analysis failed: {result}")
                logs[pair.pair_id].status = "error"
                logs[pair.pair_id].message = str(result)
                continue
            stats[pair.pair_id] = result
            self._stats[pair.pair_id] = result
            if not result.tradable:
                logs[pair.pair_id].status = "skipped"
                logs[pair.pair_id].message = result.reason
        return stats

    def _prices(self, pair_id: str) -> tuple[float | None, float | None, datetime | None]:
        """Mark prices for both legs and when the older quote was received."""
        pair = self._pairs_by_id[pair_id]
        series_a = self.price_store.get(pair.token_a)
        series_b = self.price_store.get(pair.token_b)
        received = [series_a.quote_received_at, series_b.quote_received_at]
        last_at = None if None in received else min(received)
        return series_a.mark_price, series_b.mark_price, last_at

    async def _maintain_positions(
        self,
        stats: dict[str, TradingPair],
        now: datetime,
        summary: TickSummary,
        logs: dict[str, _PairLog],
    ):
        for position in self.position_manager.get_open_positions():
            pair_id = position.pair_id
            log = logs.setdefault(pair_id, _PairLog())
            if pair_id not in self._pairs_by_id:
                logger.warning(f"[{pair_id}] Open position {position.id} for an unconfigured pair")
                continue
            try:
                price_a, price_b, last_at = self._prices(pair_id)
                if price_a is None or price_b is None:
                    summary.errors.append(f"{pair_id}: no prices to mark position {position.id}")
                    continue

                pair_stats = stats.get(pair_id)
                z_score = pair_stats.z_score if pair_stats else None
                marked = await self.position_manager.mark_to_market(pair_id, z_score, price_a, price_b)
                if marked is None:
                    continue

                health = self.risk_gate.check_ongoing_health(marked, pair_stats, last_at, now)
                reason = self.position_manager.evaluate_exit(marked, health, now)
                if reason is None:
                    log.action = "hold"
                    continue

                result = await self.position_manager.close_position(marked.id, reason, price_a, price_b)
                self._record_exit(result, reason, summary, log)
            except Exception as e:
                logger.error(f"[{pair_id}] Position maintenance failed: {e}", exc_info=True)
                summary.errors.append(f"{pair_id}: {e}")
                log.status = "error"
                log.message = str(e)

    async def _enter_positions(
        self,
        signals: dict[str, Signal],
        now: datetime,
        summary: TickSummary,
        logs: dict[str, _PairLog],
    ):
        candidates = sorted(
            (s for s in signals.values() if s.classification == Classification.ENTRY),
            key=lambda s: s.rank_score,
            reverse=True,
        )
        if not candidates:
            return

        try:
            total_capital = await self.authority.get_available_capital()
        except Exception as e:
            logger.error(f"Capital unavailable, skipping entries: {e}")
            summary.errors.append(f"capital: {e}")
            return

        for signal in candidates:
            pair = self._pairs_by_id[signal.pair_id]
            log = logs[pair.pair_id]
            price_a, price_b, last_at = self._prices(pair.pair_id)
            if price_a is None or price_b is None:
                summary.errors.append(f"{pair.pair_id}: no prices for entry")
                continue

            sizing = self.position_manager.size_entry(signal, total_capital, price_a, price_b)
            portfolio = self.position_manager.portfolio_state(total_capital)
            decision = self.risk_gate.check_entry_allowed(signal, portfolio, sizing.allocation, last_at, now)
            reason = decision.reason if not decision.approved else sizing.reason
            if reason is not None:
                logger.info(f"[{pair.pair_id}] Entry rejected: {reason} (z={signal.z_score:.3f})")
                summary.rejections[pair.pair_id] = reason
                log.action = "rejected"
                log.message = reason
                continue

            # A stop raised mid-tick aborts the remaining entries
            if await self.risk_gate.emergency_stop_active(self.authority):
                logger.warning("Emergency stop raised during tick, aborting remaining entries")
                summary.emergency_stop = True
                break

            try:
                position = await self.position_manager.open_position(pair, signal, sizing)
            except ExecutionFailure as e:
                logger.warning(f"[{pair.pair_id}] Entry rejected by execution service: {e.error}")
                log.action = "entry_rejected"
                log.message = e.error
                continue
            except Exception as e:
                logger.error(f"[{pair.pair_id}] Entry failed: {e}", exc_info=True)
                summary.errors.append(f"{pair.pair_id}: entry failed: {e}")
                log.status = "error"
                log.message = str(e)
                continue

            if isinstance(position, OpenPosition):
                summary.positions_opened += 1
                log.action = "entry"
                log.details["position_id"] = position.id
                self._notify(
                    f"[{pair.pair_id}] Entry {signal.direction.value} | z={signal.z_score:.3f} | "
                    f"${position.allocated_capital:.0f}"
                )
            elif isinstance(position, FailedPosition):
                log.status = "error"
                log.action = "entry_failed"
                log.message = position.error
                summary.errors.append(f"{pair.pair_id}: entry {position.id} FAILED: {position.error}")
                self._notify(f"[{pair.pair_id}] Entry FAILED, reconciliation required: {position.error}")
            else:
                log.action = "entry_skipped"
                log.message = "position already active"

    async def _close_all(self, reason: ExitReason, summary: TickSummary, logs: dict[str, _PairLog]):
        open_positions = self.position_manager.get_open_positions()
        logger.warning(f"Emergency stop active: closing {len(open_positions)} open positions")
        for position in open_positions:
            log = logs.setdefault(position.pair_id, _PairLog())
            price_a, price_b, _ = self._prices(position.pair_id) if position.pair_id in self._pairs_by_id else (None, None, None)
            if price_a is None or price_b is None:
                summary.errors.append(f"{position.pair_id}: no prices to close {position.id}")
                continue
            try:
                result = await self.position_manager.close_position(position.id, reason, price_a, price_b)
                self._record_exit(result, reason, summary, log)
            except Exception as e:
                logger.error(f"[{position.pair_id}] Emergency close failed: {e}", exc_info=True)
                summary.errors.append(f"{position.pair_id}: {e}")
        for log in logs.values():
            log.action = log.action or "emergency_stop"

    def _record_exit(self, result: Position, reason: ExitReason, summary: TickSummary, log: _PairLog):
        if isinstance(result, ClosedPosition):
            summary.positions_closed += 1
            log.action = f"exit_{reason.value}"
            log.details["realized_pnl"] = round(result.realized_pnl, 6)
            self._notify(f"[{result.pair_id}] Exit ({reason.value}) | PnL: ${result.realized_pnl:.2f}")
        else:
            log.status = "error"
            log.action = "exit_failed"
            log.message = getattr(result, "error", None)
            summary.errors.append(f"{result.pair_id}: exit of {result.id} FAILED")
            self._notify(f"[{result.pair_id}] Exit ({reason.value}) FAILED, reconciliation required")

    def _write_logs(self, logs: dict[str, _PairLog]):
        if self.job_log is None:
            return
        for pair_id, log in logs.items():
            try:
                self.job_log.write(
                    pair_id=pair_id,
                    status=log.status,
                    stats=self._stats.get(pair_id),
                    action=log.action,
                    message=log.message,
                    details=log.details or None,
                )
            except Exception as e:
                logger.error(f"[{pair_id}] Failed to write tick log: {e}")

    def _notify(self, message: str):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(message)
        except Exception as e:
            logger.warning(f"Notification failed: {e}")
