"""Tests for price history storage, alignment and Hyperliquid candle parsing."""

from datetime import timedelta
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from statarb.services.market_data import (
    HyperliquidMarketData,
    PriceSeries,
    PriceStore,
    _to_hl_ticker,
    align_series,
    parse_candles,
)

from conftest import NOW, price_series


def test_extend_appends_in_order_and_bounds_window():
    series = PriceSeries("ETH", lookback_window=5)
    added = series.extend(price_series(np.arange(1, 9)))
    assert added == 8
    assert len(series) == 5
    assert list(series.prices) == [4.0, 5.0, 6.0, 7.0, 8.0]
    assert series.last_price == 8.0
    assert series.last_timestamp == NOW - timedelta(minutes=1)


def test_refetched_newest_bar_takes_latest_close():
    series = PriceSeries("ETH", lookback_window=10)
    ts = NOW - timedelta(minutes=1)
    assert series.append(ts, 100.0)
    assert not series.append(ts, 105.0)
    assert series.last_price == 105.0
    assert len(series) == 1


def test_closed_bars_keep_first_observation():
    series = PriceSeries("ETH", lookback_window=10)
    closed = NOW - timedelta(minutes=2)
    series.append(closed, 100.0)
    series.append(NOW - timedelta(minutes=1), 101.0)

    added = series.extend(pd.Series([99.0, 102.0], index=pd.DatetimeIndex([closed, NOW])))

    assert added == 1
    assert list(series.prices) == [100.0, 101.0, 102.0]


def test_quote_tracks_receipt_time():
    series = PriceSeries("ETH", lookback_window=10)
    series.append(NOW - timedelta(hours=1), 100.0)
    assert series.mark_price == 100.0
    assert series.quote_received_at is None

    assert series.record_quote(101.5, NOW)
    assert not series.record_quote(0.0, NOW + timedelta(minutes=1))

    assert series.mark_price == 101.5
    assert series.quote_received_at == NOW


def test_out_of_order_observations_are_sorted():
    series = PriceSeries("ETH", lookback_window=10)
    series.append(NOW, 3.0)
    series.append(NOW - timedelta(minutes=2), 1.0)
    series.append(NOW - timedelta(minutes=1), 2.0)
    assert list(series.prices) == [1.0, 2.0, 3.0]


def test_non_positive_and_missing_prices_are_dropped():
    series = PriceSeries("ETH", lookback_window=10)
    added = series.extend(price_series([1.0, 0.0, np.nan, -2.0, 5.0]))
    assert added == 2
    assert list(series.prices) == [1.0, 5.0]


def test_store_creates_series_per_token():
    store = PriceStore(lookback_window=3)
    store.get("ETH").append(NOW, 1.0)
    assert store.get("ETH") is store.get("ETH")
    assert store.tokens() == ["ETH"]
    assert store.get("BTC").lookback_window == 3


def test_align_exact_inner_join():
    a = price_series([1.0, 2.0, 3.0])
    b = price_series([10.0, 20.0])
    frame = align_series(a, b)
    assert list(frame["a"]) == [2.0, 3.0]
    assert list(frame["b"]) == [10.0, 20.0]


def test_align_empty_series():
    frame = align_series(pd.Series(dtype=float), price_series([1.0]))
    assert frame.empty


def test_parse_candles():
    candles = [
        {"t": 1772092860000, "s": "SOL", "i": "1m", "c": "87.498"},
        {"t": 1772092800000, "s": "SOL", "i": "1m", "c": "87.212"},
        {"t": 1772092920000, "s": "SOL", "i": "1m", "c": None},
    ]
    series = parse_candles(candles)
    assert list(series) == [87.212, 87.498]
    assert series.index[0] == pd.Timestamp(1772092800000, unit="ms", tz="UTC")


def test_parse_empty_candles():
    assert parse_candles([]).empty


@pytest.mark.parametrize("asset, ticker", [("ETH", "ETH"), ("1000PEPE", "kPEPE"), ("1000BONK", "kBONK")])
def test_hl_ticker(asset, ticker):
    assert _to_hl_ticker(asset) == ticker


@pytest.mark.asyncio
async def test_hyperliquid_feed_returns_lookback_window():
    info = MagicMock()
    info.candles_snapshot.return_value = [
        {"t": 1772092800000 + i * 60_000, "c": str(100 + i)} for i in range(10)
    ]
    feed = HyperliquidMarketData(resolution="1m", info=info)

    series = await feed.get_price_series("ETH", lookback_window=4)

    assert list(series) == [106.0, 107.0, 108.0, 109.0]
    assert info.candles_snapshot.call_args.args[:2] == ("ETH", "1m")


@pytest.mark.asyncio
async def test_hyperliquid_feed_error_yields_empty_series():
    info = MagicMock()
    info.candles_snapshot.side_effect = RuntimeError("rate limited")
    feed = HyperliquidMarketData(info=info)
    assert (await feed.get_price_series("ETH", 10)).empty


@pytest.mark.asyncio
async def test_hyperliquid_latest_price():
    info = MagicMock()
    info.all_mids.return_value = {"ETH": "3012.5"}
    feed = HyperliquidMarketData(info=info)
    assert await feed.get_latest_price("ETH") == 3012.5
    assert await feed.get_latest_price("DOGE") == 0.0
