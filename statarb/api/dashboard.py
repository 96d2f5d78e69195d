"""Dashboard API: portfolio summary."""

from fastapi import APIRouter, Depends
from sqlalchemy.engine import Engine

from statarb.api.deps import get_controller, get_db_engine
from statarb.engine.controller import StrategyController
from statarb.engine.positions import PositionStatus
from statarb.services.emergency_stop import get_system_state

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/summary")
def dashboard_summary(
    controller: StrategyController = Depends(get_controller),
    db_engine: Engine = Depends(get_db_engine),
):
    """Aggregated stats across all pairs."""
    active = controller.get_active_positions()
    stats = controller.get_aggregate_stats()
    pair_stats = controller.get_all_pair_statistics()
    limits = controller.position_manager.limits

    return {
        "total_pairs": len(controller.pairs),
        "tradable_pairs": sum(1 for s in pair_stats if s.tradable),
        "active_positions": len(active),
        "open_positions": sum(1 for p in active if p.status == PositionStatus.OPEN),
        "failed_positions": sum(1 for p in active if p.status == PositionStatus.FAILED),
        "max_concurrent_positions": limits.max_concurrent_positions,
        "committed_capital": round(controller.position_manager.committed_capital(), 2),
        "unrealized_pnl": round(sum(getattr(p, "unrealized_pnl", 0.0) for p in active), 4),
        "total_trades": stats.total_trades,
        "realized_pnl": round(stats.realized_pnl, 4),
        "win_rate": round(stats.win_rate, 1),
        "avg_pnl_per_trade": round(stats.avg_pnl_per_trade, 4),
        "avg_holding_period_hours": round(stats.avg_holding_period.total_seconds() / 3600, 2),
        "emergency_stop": get_system_state(db_engine).emergency_stop,
        "pair_performance": {
            pair_id: {
                "trades": perf.trades,
                "realized_pnl": round(perf.realized_pnl, 4),
                "win_rate": round(perf.win_rate, 1),
            }
            for pair_id, perf in stats.per_pair.items()
        },
    }
