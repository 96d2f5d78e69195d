"""Market data fetching and per-token price history.

Candle data and mid prices come from Hyperliquid. Each token keeps a bounded
close series that the correlation engine reads every tick, plus the latest
quote used for marking and freshness.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

import pandas as pd
from hyperliquid.info import Info

from statarb.utils.constants import resolution_to_seconds

logger = logging.getLogger(__name__)


class MarketDataFeed(Protocol):
    async def get_price_series(self, token: str, lookback_window: int) -> pd.Series: ...

    async def get_latest_price(self, token: str) -> float: ...


class PriceSeries:
    """Ordered (timestamp, price) history for one token.

    Closed bars are append-only: a stored timestamp keeps its first price,
    except the newest one, which is still forming and takes the latest
    close on every re-fetch. Bounded to the most recent `lookback_window`
    points.

    The latest quote is tracked separately with the time it was received;
    freshness is judged from that receipt time, not from candle timestamps.
    """

    def __init__(self, token: str, lookback_window: int):
        self.token = token
        self.lookback_window = lookback_window
        self._prices = pd.Series(dtype=float)
        self.quote: float | None = None
        self.quote_received_at: datetime | None = None

    def __len__(self) -> int:
        return len(self._prices)

    @property
    def prices(self) -> pd.Series:
        return self._prices

    @property
    def last_timestamp(self) -> datetime | None:
        if self._prices.empty:
            return None
        return self._prices.index[-1].to_pydatetime()

    @property
    def last_price(self) -> float | None:
        if self._prices.empty:
            return None
        return float(self._prices.iloc[-1])

    @property
    def mark_price(self) -> float | None:
        """Latest quote, else the newest close."""
        return self.quote if self.quote is not None else self.last_price

    def extend(self, observations: pd.Series) -> int:
        """Merge new observations; returns the number of points added."""
        if observations.empty:
            return 0
        incoming = observations.dropna()
        incoming = incoming[incoming > 0]
        incoming = incoming[~incoming.index.duplicated(keep="first")]

        if not self._prices.empty:
            newest = self._prices.index[-1]
            if newest in incoming.index:
                self._prices.iloc[-1] = float(incoming[newest])

        fresh = incoming[~incoming.index.isin(self._prices.index)]
        if fresh.empty:
            return 0
        if self._prices.empty:
            merged = fresh.sort_index()
        else:
            merged = pd.concat([self._prices, fresh]).sort_index()
        self._prices = merged.iloc[-self.lookback_window:].astype(float)
        return len(fresh)

    def append(self, timestamp: datetime, price: float) -> bool:
        return self.extend(pd.Series([price], index=pd.DatetimeIndex([timestamp]))) == 1

    def record_quote(self, price: float | None, received_at: datetime) -> bool:
        """Store a latest-price reading; unusable readings are ignored."""
        if price is None or not price > 0:
            return False
        self.quote = float(price)
        self.quote_received_at = received_at
        return True


class PriceStore:
    """PriceSeries keyed by token."""

    def __init__(self, lookback_window: int):
        self.lookback_window = lookback_window
        self._series: dict[str, PriceSeries] = {}

    def get(self, token: str) -> PriceSeries:
        series = self._series.get(token)
        if series is None:
            series = PriceSeries(token, self.lookback_window)
            self._series[token] = series
        return series

    def tokens(self) -> list[str]:
        return list(self._series)


def align_series(
    series_a: pd.Series,
    series_b: pd.Series,
    tolerance_seconds: float = 0.0,
) -> pd.DataFrame:
    """Pair up observations of two series by timestamp.

    With a zero tolerance only identical timestamps match; otherwise each A
    observation takes the nearest B observation within the tolerance.
    Returns a frame with columns 'a' and 'b' indexed by A's timestamps.
    """
    if series_a.empty or series_b.empty:
        return pd.DataFrame(columns=["a", "b"], dtype=float)

    if tolerance_seconds <= 0:
        frame = pd.concat([series_a.rename("a"), series_b.rename("b")], axis=1, join="inner")
        return frame.dropna()

    left = series_a.rename("a").sort_index().reset_index()
    right = series_b.rename("b").sort_index().reset_index()
    left.columns = ["t", "a"]
    right.columns = ["t", "b"]
    merged = pd.merge_asof(
        left,
        right,
        on="t",
        direction="nearest",
        tolerance=pd.Timedelta(seconds=tolerance_seconds),
    )
    return merged.dropna().set_index("t")


class HyperliquidMarketData:
    """Market data feed backed by Hyperliquid public candles."""

    def __init__(self, resolution: str = "1m", info: Info | None = None):
        self.resolution = resolution
        # No auth needed for public data
        self._info = info or Info(skip_ws=True)

    async def get_price_series(self, token: str, lookback_window: int) -> pd.Series:
        """Fetch the most recent `lookback_window` closes for a token."""
        hl_ticker = _to_hl_ticker(token)
        interval_seconds = resolution_to_seconds(self.resolution)
        now = datetime.now(timezone.utc)
        buffer_candles = int(lookback_window * 1.2)  # 20% buffer
        start_time = now - timedelta(seconds=buffer_candles * interval_seconds)

        start_ms = int(start_time.timestamp() * 1000)
        end_ms = int(now.timestamp() * 1000)

        try:
            # candles_snapshot is synchronous, run in executor to avoid blocking
            candles = await asyncio.get_running_loop().run_in_executor(
                None, self._info.candles_snapshot, hl_ticker, self.resolution, start_ms, end_ms
            )
        except Exception as e:
            logger.error(f"Error fetching candles for {token} ({hl_ticker}): {e}")
            return pd.Series(dtype=float)
        return parse_candles(candles).iloc[-lookback_window:]

    async def get_latest_price(self, token: str) -> float:
        """Latest mid price for a token, 0.0 when unavailable."""
        hl_ticker = _to_hl_ticker(token)
        try:
            mids = await asyncio.get_running_loop().run_in_executor(None, self._info.all_mids)
        except Exception as e:
            logger.error(f"Error fetching mid price for {token}: {e}")
            return 0.0
        value = mids.get(hl_ticker)
        return float(value) if value is not None else 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_hl_ticker(asset: str) -> str:
    """Convert asset name to Hyperliquid ticker format.

    Hyperliquid uses 'kX' instead of '1000X' (e.g. kBONK, kPEPE).
    """
    if asset.startswith("1000"):
        return "k" + asset[4:]
    return asset


def parse_candles(candles: list[dict]) -> pd.Series:
    """Parse Hyperliquid candles_snapshot response into a close price Series.

    Each candle dict: {"t": 1772092800000, "s": "SOL", "i": "1m",
                       "o": "87.212", "c": "87.498", "h": "87.811", "l": "87.212", ...}
    """
    if not candles:
        return pd.Series(dtype=float)

    records = [{"t": c["t"], "close": c["c"]} for c in candles if c.get("c") is not None]

    df = pd.DataFrame(records)
    if df.empty:
        return pd.Series(dtype=float)

    df["t"] = pd.to_datetime(df["t"], unit="ms", utc=True)
    df["close"] = pd.to_numeric(df["close"], errors="coerce")
    df = df.set_index("t").sort_index()
    return df["close"].dropna()
