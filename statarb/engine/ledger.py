"""Persistence of position state and per-tick logs."""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from statarb.engine.positions import (
    ClosedPosition,
    ClosingPosition,
    ExitReason,
    FailedPosition,
    OpeningPosition,
    OpenPosition,
    Position,
    PositionStatus,
    PositionTerms,
    StoppedPosition,
)
from statarb.models.job_log import JobLog
from statarb.models.position import PositionRecord
from statarb.models.trade import Trade
from statarb.services.correlation_engine import TradingPair
from statarb.services.signal_generator import Direction

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [
    PositionStatus.OPENING.value,
    PositionStatus.OPEN.value,
    PositionStatus.CLOSING.value,
    PositionStatus.FAILED.value,
]


def _safe_float(v: float | None) -> float | None:
    """Return None for inf/nan so they don't end up in the DB."""
    if v is None:
        return None
    if math.isinf(v) or math.isnan(v):
        return None
    return v


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PositionLedger:
    """Writes every position state transition to the database."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def save(self, position: Position):
        with Session(self.engine) as session:
            record = session.get(PositionRecord, position.id)
            if record is None:
                record = _new_record(position.terms)
            _apply_state(record, position)
            session.add(record)

            if isinstance(position, ClosedPosition):
                existing = session.exec(select(Trade).where(Trade.position_id == position.id)).first()
                if existing is None:
                    session.add(_trade_from(position))

            session.commit()

    def discard(self, position_id: str):
        """Remove a position that never reached the exchange."""
        with Session(self.engine) as session:
            record = session.get(PositionRecord, position_id)
            if record is not None:
                session.delete(record)
                session.commit()

    def load_active(self) -> list[Position]:
        """Non-terminal positions, used to restore state after a restart."""
        with Session(self.engine) as session:
            records = session.exec(
                select(PositionRecord).where(PositionRecord.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            ).all()
            return [_position_from(r) for r in records]

    def load_terminal(self) -> list[Position]:
        with Session(self.engine) as session:
            records = session.exec(
                select(PositionRecord).where(PositionRecord.status.not_in(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            ).all()
            return [_position_from(r) for r in records]


class JobLogWriter:
    """Writes one JobLog row per pair per tick."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def write(
        self,
        pair_id: str,
        status: str,
        stats: TradingPair | None = None,
        action: str | None = None,
        message: str | None = None,
        details: dict | None = None,
    ):
        with Session(self.engine) as session:
            log = JobLog(
                pair_id=pair_id,
                status=status,
                z_score=_safe_float(stats.z_score) if stats else None,
                correlation=_safe_float(stats.correlation) if stats else None,
                hedge_ratio=_safe_float(stats.hedge_ratio) if stats else None,
                half_life=_safe_float(stats.half_life) if stats else None,
                test_statistic=_safe_float(stats.test_statistic) if stats else None,
                confidence=_safe_float(stats.confidence) if stats else None,
                sample_size=stats.sample_size if stats else None,
                action=action,
                message=message,
                details=details,
            )
            session.add(log)
            session.commit()


# ---------------------------------------------------------------------------
# Mapping between position states and rows
# ---------------------------------------------------------------------------

def _new_record(terms: PositionTerms) -> PositionRecord:
    return PositionRecord(
        id=terms.id,
        pair_id=terms.pair_id,
        token_a=terms.token_a,
        token_b=terms.token_b,
        market_a=terms.market_a,
        market_b=terms.market_b,
        status=PositionStatus.OPENING.value,
        direction=terms.direction.value,
        leg_a_amount=terms.leg_a_amount,
        leg_b_amount=terms.leg_b_amount,
        entry_price_a=terms.entry_price_a,
        entry_price_b=terms.entry_price_b,
        entry_z=terms.entry_z_score,
        allocated_capital=terms.allocated_capital,
        confidence=terms.confidence,
    )


def _apply_state(record: PositionRecord, position: Position):
    record.status = position.status.value
    record.updated_at = datetime.now(timezone.utc)
    if isinstance(position, OpenPosition):
        record.entry_time = position.entry_timestamp
        record.current_z = position.current_z_score
        record.unrealized_pnl = position.unrealized_pnl
        record.tx_ids = list(position.tx_ids)
    elif isinstance(position, ClosingPosition):
        record.current_z = position.current_z_score
        record.unrealized_pnl = position.unrealized_pnl
        record.exit_reason = position.reason.value
    elif isinstance(position, ClosedPosition):
        record.exit_time = position.exit_timestamp
        record.exit_reason = position.reason.value
        record.realized_pnl = position.realized_pnl
        record.current_z = position.exit_z_score
        record.unrealized_pnl = 0.0
        record.tx_ids = (record.tx_ids or []) + list(position.tx_ids)
        record.failed_stage = None
        record.error = None
    elif isinstance(position, FailedPosition):
        record.entry_time = position.entry_timestamp
        record.failed_stage = position.stage
        record.error = position.error
        record.exit_reason = position.reason.value if position.reason else None
        record.notes = list(position.notes)


def _trade_from(position: ClosedPosition) -> Trade:
    capital = position.allocated_capital
    return Trade(
        position_id=position.id,
        pair_id=position.pair_id,
        direction=position.direction.value,
        entry_time=position.entry_timestamp,
        exit_time=position.exit_timestamp,
        entry_price_a=position.terms.entry_price_a,
        entry_price_b=position.terms.entry_price_b,
        size_a=position.leg_a_amount,
        size_b=position.leg_b_amount,
        entry_z=position.entry_z_score,
        exit_z=_safe_float(position.exit_z_score),
        allocated_capital=capital,
        pnl=round(position.realized_pnl, 6),
        pnl_pct=round(position.realized_pnl / capital * 100, 4) if capital > 0 else 0.0,
        exit_reason=position.reason.value,
        status=position.status.value,
    )


def _position_from(record: PositionRecord) -> Position:
    terms = PositionTerms(
        id=record.id,
        pair_id=record.pair_id,
        token_a=record.token_a,
        token_b=record.token_b,
        direction=Direction(record.direction),
        leg_a_amount=record.leg_a_amount,
        leg_b_amount=record.leg_b_amount,
        entry_price_a=record.entry_price_a,
        entry_price_b=record.entry_price_b,
        entry_z_score=record.entry_z,
        allocated_capital=record.allocated_capital,
        confidence=record.confidence,
        market_a=record.market_a,
        market_b=record.market_b,
    )
    status = PositionStatus(record.status)
    entry_time = _as_utc(record.entry_time)
    updated_at = _as_utc(record.updated_at)
    reason = ExitReason(record.exit_reason) if record.exit_reason else None

    if status == PositionStatus.OPEN:
        return OpenPosition(
            terms=terms,
            entry_timestamp=entry_time or updated_at,
            current_z_score=record.current_z if record.current_z is not None else record.entry_z,
            unrealized_pnl=record.unrealized_pnl,
            tx_ids=tuple(record.tx_ids or ()),
        )
    if status in (PositionStatus.CLOSED, PositionStatus.STOPPED):
        cls = StoppedPosition if status == PositionStatus.STOPPED else ClosedPosition
        return cls(
            terms=terms,
            entry_timestamp=entry_time or updated_at,
            exit_timestamp=_as_utc(record.exit_time) or updated_at,
            reason=reason or ExitReason.RECONCILED,
            realized_pnl=record.realized_pnl or 0.0,
            exit_z_score=record.current_z,
            tx_ids=tuple(record.tx_ids or ()),
        )
    if status == PositionStatus.FAILED:
        return FailedPosition(
            terms=terms,
            stage=record.failed_stage or "unknown",
            error=record.error or "",
            failed_at=updated_at,
            entry_timestamp=entry_time,
            reason=reason,
            notes=tuple(record.notes or ()),
        )
    # OPENING/CLOSING rows outlived the process that was executing them:
    # their on-chain outcome is unknown.
    stage = "opening" if status == PositionStatus.OPENING else "closing"
    return FailedPosition(
        terms=terms,
        stage=stage,
        error=f"process stopped while {stage}",
        failed_at=datetime.now(timezone.utc),
        entry_timestamp=entry_time,
        reason=reason,
    )
