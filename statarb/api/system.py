"""System API: health check, scheduler status, tick logs, manual tick, emergency stop."""

import math

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from statarb.api.deps import get_controller, get_db_engine
from statarb.database import get_session
from statarb.engine.controller import StrategyController, TickSummary
from statarb.models.job_log import JobLog
from statarb.services.emergency_stop import get_system_state, run_emergency_stop, set_emergency_stop

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check(request: Request, db_engine: Engine = Depends(get_db_engine)):
    state = get_system_state(db_engine)
    return {
        "status": "ok",
        "trading_enabled": getattr(request.app.state, "controller", None) is not None,
        "emergency_stop": state.emergency_stop,
        "emergency_reason": state.emergency_reason,
    }


@router.get("/scheduler")
def scheduler_status(request: Request):
    """Current scheduler state with job details."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"running": False, "job_count": 0, "jobs": []}
    return scheduler.status()


@router.post("/tick")
async def trigger_tick(controller: StrategyController = Depends(get_controller)) -> TickSummary:
    """Run one tick now. Skipped if a tick is already in flight."""
    return await controller.tick()


@router.get("/logs")
def job_logs(
    pair_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if pair_id is not None:
        stmt = stmt.where(JobLog.pair_id == pair_id)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    rows = session.exec(stmt).all()
    # Replace inf/nan with None so JSON serialization doesn't blow up.
    float_fields = ("z_score", "correlation", "hedge_ratio", "half_life", "test_statistic", "confidence")
    for row in rows:
        for f in float_fields:
            v = getattr(row, f, None)
            if isinstance(v, float) and (math.isinf(v) or math.isnan(v)):
                setattr(row, f, None)
    return rows


class EmergencyStopRequest(BaseModel):
    reason: str = Field(default="manual", max_length=200)


@router.post("/emergency-stop")
async def emergency_stop(
    body: EmergencyStopRequest,
    controller: StrategyController = Depends(get_controller),
    db_engine: Engine = Depends(get_db_engine),
) -> TickSummary:
    """Raise the emergency stop and close all open positions."""
    return await run_emergency_stop(controller, db_engine, reason=body.reason)


@router.delete("/emergency-stop")
def clear_emergency_stop(db_engine: Engine = Depends(get_db_engine)):
    state = set_emergency_stop(db_engine, False)
    return {"emergency_stop": state.emergency_stop}
