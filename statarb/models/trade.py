"""Trade model: immutable record of every completed position."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Trade(SQLModel, table=True):
    __tablename__ = "trade"

    id: int | None = Field(default=None, primary_key=True)
    position_id: str = Field(index=True, unique=True)
    pair_id: str = Field(index=True)
    direction: str  # "long_spread" or "short_spread"
    entry_time: datetime
    exit_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    entry_price_a: float
    entry_price_b: float
    size_a: float
    size_b: float
    entry_z: float
    exit_z: float | None = None
    allocated_capital: float
    pnl: float
    pnl_pct: float
    exit_reason: str  # "mean_reversion", "stop_loss", "correlation_breakdown", ...
    status: str  # "closed" or "stopped"
