"""Pairs API: configured universe with the latest statistics."""

from fastapi import APIRouter, Depends, HTTPException

from statarb.api.deps import get_controller
from statarb.engine.controller import StrategyController
from statarb.schemas.pair import TradingPairRead

router = APIRouter(prefix="/api/pairs", tags=["pairs"])


def _read(controller: StrategyController, pair_id: str) -> TradingPairRead:
    stats = controller.get_pair_statistics(pair_id)
    if stats is not None:
        return TradingPairRead.model_validate(stats)
    pair = next(p for p in controller.pairs if p.pair_id == pair_id)
    return TradingPairRead.unanalyzed(pair)


@router.get("")
def list_pairs(controller: StrategyController = Depends(get_controller)) -> list[TradingPairRead]:
    return [_read(controller, p.pair_id) for p in controller.pairs]


@router.get("/{pair_id}")
def get_pair(pair_id: str, controller: StrategyController = Depends(get_controller)) -> TradingPairRead:
    if not any(p.pair_id == pair_id for p in controller.pairs):
        raise HTTPException(status_code=404, detail="Pair not found")
    return _read(controller, pair_id)
