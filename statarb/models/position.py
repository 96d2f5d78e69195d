"""PositionRecord model: persists position lifecycle state across restarts."""

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column


class PositionRecord(SQLModel, table=True):
    __tablename__ = "position"

    id: str = Field(primary_key=True)
    pair_id: str = Field(index=True)
    token_a: str
    token_b: str
    market_a: int = 0
    market_b: int = 0
    status: str = Field(index=True)  # opening, open, closing, closed, stopped, failed
    direction: str  # "long_spread" or "short_spread"
    leg_a_amount: float
    leg_b_amount: float
    entry_price_a: float
    entry_price_b: float
    entry_z: float
    allocated_capital: float
    confidence: float = 0.0
    entry_time: datetime | None = None
    current_z: float | None = None
    unrealized_pnl: float = 0.0
    exit_time: datetime | None = None
    exit_reason: str | None = None
    realized_pnl: float | None = None
    failed_stage: str | None = None
    error: str | None = None
    tx_ids: list[str] | None = Field(default=None, sa_column=Column(JSON))
    notes: list[str] | None = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
