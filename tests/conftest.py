"""Shared fixtures: fake collaborators, in-memory database, synthetic prices."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from statarb.config import RiskLimits
from statarb.database import create_db_and_tables
from statarb.engine.controller import StrategyController
from statarb.engine.ledger import JobLogWriter, PositionLedger
from statarb.engine.position_manager import PositionManager
from statarb.engine.positions import PositionTerms
from statarb.engine.risk_gate import RiskGate
from statarb.schemas.pair import PairConfig
from statarb.services.correlation_engine import TradingPair
from statarb.services.lighter_client import PairTradeResult
from statarb.services.market_data import PriceStore
from statarb.services.signal_generator import Direction, SignalGenerator

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeExecution:
    """Execution service double: records calls, fills everything unless told otherwise."""

    def __init__(self, min_leg_notional: float = 10.0):
        self.min_leg_notional = min_leg_notional
        self.calls = []
        self.closing_flags: list[bool] = []
        self.results: list[PairTradeResult] = []  # consumed in order, then success
        self.delay = 0.0
        self.gate: asyncio.Event | None = None

    async def submit_pair_trade(self, leg_a, leg_b, closing=False):
        self.calls.append((leg_a, leg_b))
        self.closing_flags.append(closing)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return PairTradeResult(
            success=True,
            fill_amounts=(leg_a.amount, leg_b.amount),
            tx_ids=(f"tx{len(self.calls)}a", f"tx{len(self.calls)}b"),
        )


class FakeAuthority:
    def __init__(self, capital: float = 100_000.0):
        self.capital = capital
        self.emergency = False

    async def get_available_capital(self) -> float:
        return self.capital

    async def get_emergency_stop_state(self) -> bool:
        return self.emergency


class FakeMarketData:
    """Serves fixed price series per token.

    The latest price is the last close unless overridden in `quotes`;
    tokens in `quotes_down` report no price.
    """

    def __init__(self, series: dict[str, pd.Series]):
        self.series = series
        self.quotes: dict[str, float] = {}
        self.quotes_down: set[str] = set()

    async def get_price_series(self, token: str, lookback_window: int) -> pd.Series:
        return self.series[token].iloc[-lookback_window:]

    async def get_latest_price(self, token: str) -> float:
        if token in self.quotes_down:
            return 0.0
        if token in self.quotes:
            return self.quotes[token]
        return float(self.series[token].iloc[-1])


def price_series(values, end: datetime = NOW, freq: str = "1min") -> pd.Series:
    index = pd.date_range(end=pd.Timestamp(end) - pd.Timedelta(minutes=1), periods=len(values), freq=freq)
    return pd.Series(np.asarray(values, dtype=float), index=index)


def cointegrated_prices(n: int = 300, seed: int = 7, phi: float = 0.5):
    """A = exp(0.5 + ln B + AR(1) noise): cointegrated with hedge ratio 1."""
    rng = np.random.default_rng(seed)
    log_b = np.log(100.0) + np.cumsum(rng.normal(0, 0.01, n))
    spread = np.zeros(n)
    for i in range(1, n):
        spread[i] = phi * spread[i - 1] + rng.normal(0, 0.002)
    log_a = 0.5 + log_b + spread
    return price_series(np.exp(log_a)), price_series(np.exp(log_b))


def make_terms(position_id: str = "statarb_test01", pair_id: str = "ETH-BTC") -> PositionTerms:
    return PositionTerms(
        id=position_id,
        pair_id=pair_id,
        token_a="ETH",
        token_b="BTC",
        direction=Direction.LONG_SPREAD,
        leg_a_amount=0.5,
        leg_b_amount=0.025,
        entry_price_a=2000.0,
        entry_price_b=40000.0,
        entry_z_score=-2.4,
        allocated_capital=2000.0,
        confidence=0.7,
        market_a=0,
        market_b=1,
    )


def make_stats(
    pair: PairConfig,
    z_score: float,
    correlation: float = 0.8,
    confidence: float = 0.6,
    half_life: float = 10.0,
    now: datetime = NOW,
    tradable: bool = True,
) -> TradingPair:
    return TradingPair(
        pair_id=pair.pair_id,
        token_a=pair.token_a,
        token_b=pair.token_b,
        correlation=correlation,
        cointegrated=True,
        test_statistic=-4.2,
        half_life=half_life,
        confidence=confidence,
        sample_size=240,
        last_updated=now,
        hedge_ratio=1.0,
        z_score=z_score,
        current_spread=0.01,
        spread_mean=0.0,
        spread_std=0.004,
        tradable=tradable,
    )


@pytest.fixture
def limits() -> RiskLimits:
    return RiskLimits()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def execution() -> FakeExecution:
    return FakeExecution()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    return engine


@pytest.fixture
def manager(limits, execution, clock) -> PositionManager:
    return PositionManager(limits=limits, execution=execution, clock=clock, execution_timeout=1.0)


@pytest.fixture
def pairs() -> list[PairConfig]:
    return [
        PairConfig(token_a="ETH", token_b="BTC", market_a=0, market_b=1),
        PairConfig(token_a="SOL", token_b="AVAX", market_a=2, market_b=9),
    ]


@pytest.fixture
def market_data(pairs) -> FakeMarketData:
    series = {}
    for i, pair in enumerate(pairs):
        a, b = cointegrated_prices(seed=11 + i)
        series[pair.token_a] = a
        series[pair.token_b] = b
    return FakeMarketData(series)


@pytest.fixture
def stats_by_pair() -> dict[str, TradingPair]:
    """What the mocked correlation engine returns this tick, keyed by pair_id."""
    return {}


@pytest.fixture
def controller_factory(limits, execution, clock, pairs, market_data, stats_by_pair, db_engine):
    """Build a controller whose statistics come from `stats_by_pair`."""

    def build(
        authority: FakeAuthority | None = None,
        manager: PositionManager | None = None,
        persist: bool = False,
    ) -> StrategyController:
        def analyze(pair, series_a, series_b, now):
            stats = stats_by_pair.get(pair.pair_id)
            if stats is None:
                return TradingPair.non_tradable(pair, "insufficient_data", now)
            return stats

        engine = MagicMock()
        engine.safe_analyze.side_effect = analyze
        ledger = PositionLedger(db_engine) if persist else None
        return StrategyController(
            pairs=pairs,
            market_data=market_data,
            correlation_engine=engine,
            signal_generator=SignalGenerator(limits),
            risk_gate=RiskGate(limits),
            position_manager=manager or PositionManager(
                limits=limits, execution=execution, ledger=ledger, clock=clock, execution_timeout=1.0,
            ),
            authority=authority or FakeAuthority(),
            price_store=PriceStore(240),
            job_log=JobLogWriter(db_engine) if persist else None,
            clock=clock,
        )

    return build
