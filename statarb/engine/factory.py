"""Wires the strategy controller from settings."""

import logging
from datetime import timedelta

from sqlalchemy.engine import Engine

from statarb.config import Settings, settings
from statarb.engine.controller import Notifier, StrategyController
from statarb.engine.ledger import JobLogWriter, PositionLedger
from statarb.engine.position_manager import PositionManager
from statarb.engine.risk_gate import RiskGate
from statarb.services.capital_authority import CapitalAuthority
from statarb.services.correlation_engine import CorrelationEngine
from statarb.services.lighter_client import ExecutionService, LighterClient, LighterExecutionService
from statarb.services.market_data import HyperliquidMarketData, MarketDataFeed, PriceStore
from statarb.services.signal_generator import SignalGenerator

logger = logging.getLogger(__name__)


def build_lighter_client(config: Settings = settings) -> LighterClient | None:
    if not config.lighter_private_key:
        logger.warning("No Lighter private key configured, live execution disabled")
        return None
    return LighterClient(
        host=config.lighter_host,
        private_key=config.lighter_private_key,
        api_key_index=config.lighter_api_key_index,
        account_index=config.lighter_account_index,
    )


def build_controller(
    db_engine: Engine,
    config: Settings = settings,
    client: LighterClient | None = None,
    market_data: MarketDataFeed | None = None,
    execution: ExecutionService | None = None,
    authority: CapitalAuthority | None = None,
    notifier: Notifier | None = None,
    restore: bool = True,
) -> StrategyController:
    """Build a controller; collaborators not passed in are created from settings."""
    limits = config.risk_limits()

    if execution is None:
        if client is None:
            raise ValueError("An execution service or a Lighter client is required")
        execution = LighterExecutionService(client, min_leg_notional=config.min_leg_notional)
    if authority is None:
        authority = CapitalAuthority(db_engine, client=client, fixed_capital=config.total_capital)
    if market_data is None:
        market_data = HyperliquidMarketData(resolution=config.candle_interval)

    ledger = PositionLedger(db_engine)
    position_manager = PositionManager(
        limits=limits,
        execution=execution,
        ledger=ledger,
        execution_timeout=config.execution_timeout_seconds,
        return_weight_scale=config.return_weight_scale,
    )
    if restore:
        position_manager.restore(ledger.load_active() + ledger.load_terminal())

    controller = StrategyController(
        pairs=config.pairs,
        market_data=market_data,
        correlation_engine=CorrelationEngine(
            min_samples=config.min_samples,
            zscore_window=config.zscore_window,
            critical_value=config.cointegration_critical_value,
            alignment_tolerance_seconds=config.alignment_tolerance_seconds,
            weights=config.confidence_weights,
        ),
        signal_generator=SignalGenerator(
            limits=limits,
            return_per_z=config.return_per_z,
            max_base_return=config.max_base_return,
            reference_half_life=config.reference_half_life,
            max_time_adjustment=config.max_time_adjustment,
        ),
        risk_gate=RiskGate(
            limits=limits,
            breakdown_ticks=config.correlation_breakdown_ticks,
            stale_after=timedelta(seconds=config.stale_price_timeout_seconds),
        ),
        position_manager=position_manager,
        authority=authority,
        price_store=PriceStore(config.lookback_window),
        job_log=JobLogWriter(db_engine),
        notifier=notifier,
    )
    logger.info(f"Controller built for {len(config.pairs)} pairs: {[p.pair_id for p in config.pairs]}")
    return controller
