"""Hedged position states.

Each lifecycle state is its own frozen dataclass carrying only the fields
valid in that state. The shared entry terms live in `PositionTerms`.

    OPENING -> OPEN -> CLOSING -> CLOSED | STOPPED
    OPENING -> FAILED, CLOSING -> FAILED
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Union

from statarb.services.signal_generator import Direction


class PositionStatus(str, Enum):
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    STOPPED = "stopped"
    FAILED = "failed"


class ExitReason(str, Enum):
    EMERGENCY_STOP = "emergency_stop"
    STALE_DATA = "stale_data"
    STOP_LOSS = "stop_loss"
    CORRELATION_BREAKDOWN = "correlation_breakdown"
    MAX_HOLDING_PERIOD = "max_holding_period"
    MEAN_REVERSION = "mean_reversion"
    RECONCILED = "reconciled"


TERMINAL_STATUSES = frozenset({PositionStatus.CLOSED, PositionStatus.STOPPED})


def new_position_id() -> str:
    return f"statarb_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class PositionTerms:
    """Entry terms fixed when the position is sized."""
    id: str
    pair_id: str
    token_a: str
    token_b: str
    direction: Direction
    leg_a_amount: float  # token units, always positive
    leg_b_amount: float
    entry_price_a: float
    entry_price_b: float
    entry_z_score: float
    allocated_capital: float
    confidence: float = 0.0
    market_a: int = 0
    market_b: int = 0

    @property
    def signed_leg_amounts(self) -> tuple[float, float]:
        """(A, B) holdings: long spread holds +A/-B, short spread -A/+B."""
        if self.direction == Direction.LONG_SPREAD:
            return self.leg_a_amount, -self.leg_b_amount
        return -self.leg_a_amount, self.leg_b_amount

    def mark_to_market(self, price_a: float, price_b: float) -> float:
        signed_a, signed_b = self.signed_leg_amounts
        return signed_a * (price_a - self.entry_price_a) + signed_b * (price_b - self.entry_price_b)


@dataclass(frozen=True)
class _PositionBase:
    terms: PositionTerms

    status: ClassVar[PositionStatus]

    @property
    def id(self) -> str:
        return self.terms.id

    @property
    def pair_id(self) -> str:
        return self.terms.pair_id

    @property
    def direction(self) -> Direction:
        return self.terms.direction

    @property
    def leg_a_amount(self) -> float:
        return self.terms.leg_a_amount

    @property
    def leg_b_amount(self) -> float:
        return self.terms.leg_b_amount

    @property
    def entry_z_score(self) -> float:
        return self.terms.entry_z_score

    @property
    def allocated_capital(self) -> float:
        return self.terms.allocated_capital

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class OpeningPosition(_PositionBase):
    submitted_at: datetime

    status: ClassVar[PositionStatus] = PositionStatus.OPENING


@dataclass(frozen=True)
class OpenPosition(_PositionBase):
    entry_timestamp: datetime
    current_z_score: float
    unrealized_pnl: float = 0.0
    tx_ids: tuple[str, ...] = ()

    status: ClassVar[PositionStatus] = PositionStatus.OPEN

    def age(self, now: datetime) -> timedelta:
        return now - self.entry_timestamp


@dataclass(frozen=True)
class ClosingPosition(_PositionBase):
    entry_timestamp: datetime
    reason: ExitReason
    submitted_at: datetime
    current_z_score: float
    unrealized_pnl: float = 0.0

    status: ClassVar[PositionStatus] = PositionStatus.CLOSING


@dataclass(frozen=True)
class ClosedPosition(_PositionBase):
    entry_timestamp: datetime
    exit_timestamp: datetime
    reason: ExitReason
    realized_pnl: float
    exit_z_score: float | None = None
    tx_ids: tuple[str, ...] = ()

    status: ClassVar[PositionStatus] = PositionStatus.CLOSED

    @property
    def holding_period(self) -> timedelta:
        return self.exit_timestamp - self.entry_timestamp


@dataclass(frozen=True)
class StoppedPosition(ClosedPosition):
    status: ClassVar[PositionStatus] = PositionStatus.STOPPED


@dataclass(frozen=True)
class FailedPosition(_PositionBase):
    stage: str  # "opening", "closing" or "reconciliation"
    error: str
    failed_at: datetime
    entry_timestamp: datetime | None = None
    reason: ExitReason | None = None  # exit that was being attempted
    notes: tuple[str, ...] = field(default_factory=tuple)

    status: ClassVar[PositionStatus] = PositionStatus.FAILED


Position = Union[
    OpeningPosition,
    OpenPosition,
    ClosingPosition,
    ClosedPosition,
    StoppedPosition,
    FailedPosition,
]


@dataclass(frozen=True)
class PortfolioState:
    """Snapshot used by the risk gate for entry decisions."""
    total_capital: float
    committed_capital: float
    active_count: int
    active_pair_ids: frozenset[str]
    failed_pair_ids: frozenset[str]
    emergency_stop: bool = False

    def with_entry(self, pair_id: str, allocation: float) -> "PortfolioState":
        return PortfolioState(
            total_capital=self.total_capital,
            committed_capital=self.committed_capital + allocation,
            active_count=self.active_count + 1,
            active_pair_ids=self.active_pair_ids | {pair_id},
            failed_pair_ids=self.failed_pair_ids,
            emergency_stop=self.emergency_stop,
        )
