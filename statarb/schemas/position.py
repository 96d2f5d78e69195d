"""Pydantic schemas for positions and operator actions."""

import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from statarb.engine.positions import Position


class PositionRead(BaseModel):
    id: str
    pair_id: str
    token_a: str
    token_b: str
    status: str
    direction: str
    leg_a_amount: float
    leg_b_amount: float
    entry_price_a: float
    entry_price_b: float
    entry_z_score: float
    allocated_capital: float
    confidence: float
    entry_timestamp: datetime | None = None
    current_z_score: float | None = None
    unrealized_pnl: float | None = None
    exit_timestamp: datetime | None = None
    reason: str | None = None
    realized_pnl: float | None = None
    stage: str | None = None
    error: str | None = None
    notes: list[str] = []

    @classmethod
    def from_position(cls, position: Position) -> "PositionRead":
        terms = position.terms
        reason = getattr(position, "reason", None)
        current_z = getattr(position, "current_z_score", None)
        if current_z is not None and not math.isfinite(current_z):
            current_z = None
        return cls(
            id=terms.id,
            pair_id=terms.pair_id,
            token_a=terms.token_a,
            token_b=terms.token_b,
            status=position.status.value,
            direction=terms.direction.value,
            leg_a_amount=terms.leg_a_amount,
            leg_b_amount=terms.leg_b_amount,
            entry_price_a=terms.entry_price_a,
            entry_price_b=terms.entry_price_b,
            entry_z_score=terms.entry_z_score,
            allocated_capital=terms.allocated_capital,
            confidence=terms.confidence,
            entry_timestamp=getattr(position, "entry_timestamp", None),
            current_z_score=current_z,
            unrealized_pnl=getattr(position, "unrealized_pnl", None),
            exit_timestamp=getattr(position, "exit_timestamp", None),
            reason=reason.value if reason is not None else None,
            realized_pnl=getattr(position, "realized_pnl", None),
            stage=getattr(position, "stage", None),
            error=getattr(position, "error", None),
            notes=list(getattr(position, "notes", ())),
        )


class ReconcileRequest(BaseModel):
    holdings: Literal["flat", "open"]
    note: str = Field(default="", max_length=500)
    realized_pnl: float = 0.0  # only used when holdings are flat
