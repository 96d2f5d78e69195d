"""Positions API: active positions and operator reconciliation."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from statarb.api.deps import get_controller
from statarb.engine.controller import StrategyController
from statarb.engine.errors import ReconciliationRequired
from statarb.schemas.position import PositionRead, ReconcileRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"])


@router.get("")
def list_positions(
    pair_id: str | None = None,
    status: str | None = None,
    controller: StrategyController = Depends(get_controller),
) -> list[PositionRead]:
    positions = controller.get_active_positions()
    if pair_id is not None:
        positions = [p for p in positions if p.pair_id == pair_id]
    if status is not None:
        positions = [p for p in positions if p.status.value == status]
    return [PositionRead.from_position(p) for p in positions]


@router.post("/{position_id}/reconcile")
async def reconcile_position(
    position_id: str,
    body: ReconcileRequest,
    controller: StrategyController = Depends(get_controller),
) -> PositionRead:
    """Resolve a FAILED position from the holdings the operator observed."""
    manager = controller.position_manager
    if manager.get_position(position_id) is None:
        raise HTTPException(status_code=404, detail="Position not found")
    try:
        resolved = await manager.reconcile(
            position_id,
            holdings_flat=body.holdings == "flat",
            note=body.note,
            realized_pnl=body.realized_pnl,
        )
    except ReconciliationRequired as e:
        raise HTTPException(status_code=409, detail=str(e))
    return PositionRead.from_position(resolved)
