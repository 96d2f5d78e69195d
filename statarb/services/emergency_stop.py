"""Emergency stop: a persisted flag that halts entries and closes every open position."""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy.engine import Engine
from sqlmodel import Session

from statarb.models.system_state import SystemState

if TYPE_CHECKING:
    from statarb.engine.controller import StrategyController, TickSummary

logger = logging.getLogger(__name__)


def get_system_state(engine: Engine) -> SystemState:
    with Session(engine) as session:
        state = session.get(SystemState, 1)
        return state if state is not None else SystemState()


def is_emergency_stop_active(engine: Engine) -> bool:
    return get_system_state(engine).emergency_stop


def set_emergency_stop(engine: Engine, active: bool, reason: str | None = None) -> SystemState:
    """Raise or clear the flag. It survives restarts until explicitly cleared."""
    with Session(engine) as session:
        state = session.get(SystemState, 1)
        if state is None:
            state = SystemState(id=1)
        state.emergency_stop = active
        state.emergency_reason = reason if active else None
        state.updated_at = datetime.now(timezone.utc)
        session.add(state)
        session.commit()
        session.refresh(state)
        logger.warning(f"Emergency stop {'RAISED' if active else 'cleared'}{f': {reason}' if reason else ''}")
        return state


async def run_emergency_stop(controller: "StrategyController", engine: Engine, reason: str = "manual") -> "TickSummary":
    """Raise the flag and run a tick immediately so open positions are closed now.

    If a tick is already in progress it sees the flag before its next entry
    and the following scheduled tick closes whatever is still open.
    """
    set_emergency_stop(engine, True, reason)
    summary = await controller.tick()
    if summary.skipped:
        logger.warning("Emergency stop raised while a tick was running; positions close on the next tick")
    else:
        logger.warning(
            f"Emergency stop closed {summary.positions_closed} positions "
            f"({len(summary.errors)} errors)"
        )
    return summary
