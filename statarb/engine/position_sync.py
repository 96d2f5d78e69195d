"""Position sync: check restored positions against the Lighter account on startup.

After a restart the ledger may disagree with the exchange (crash mid-cycle,
manual trades, orders cancelled externally). Discrepancies are flagged, never
resolved automatically:

1. OPEN position, both legs on the exchange -> OK
2. OPEN position, a leg missing -> marked FAILED for operator reconciliation
3. FAILED position -> exchange view is logged to help the operator
4. Exchange position in a configured market with no ledger position -> warning
"""

import logging

from statarb.engine.ledger import JobLogWriter
from statarb.engine.position_manager import PositionManager
from statarb.engine.positions import FailedPosition, OpenPosition
from statarb.schemas.pair import PairConfig
from statarb.services.lighter_client import LighterClient

logger = logging.getLogger(__name__)


async def sync_positions_on_startup(
    manager: PositionManager,
    client: LighterClient,
    pairs: list[PairConfig],
    job_log: JobLogWriter | None = None,
) -> list[str]:
    """Compare ledger positions with exchange holdings; returns the ids marked FAILED."""
    try:
        exchange_positions = await client.get_positions()
    except Exception as e:
        logger.error(f"Position sync: failed to fetch exchange positions: {e}")
        return []

    exchange_by_market = {p["market_index"]: p for p in exchange_positions}
    active = manager.get_active_positions()
    logger.info(f"Position sync: {len(active)} ledger positions, {len(exchange_positions)} exchange positions")

    flagged: list[str] = []
    tracked_markets: set[int] = set()

    for position in active:
        terms = position.terms
        if terms.market_a == terms.market_b:
            logger.warning(f"Position sync: [{position.pair_id}] has no distinct market indices, skipping")
            continue
        tracked_markets.update((terms.market_a, terms.market_b))
        has_a = terms.market_a in exchange_by_market
        has_b = terms.market_b in exchange_by_market

        if isinstance(position, FailedPosition):
            message = (
                f"{position.id} awaiting reconciliation ({position.stage}): "
                f"exchange legs A={'held' if has_a else 'flat'} B={'held' if has_b else 'flat'}"
            )
            logger.warning(f"Position sync: [{position.pair_id}] {message}")
            _log_sync_event(job_log, position.pair_id, message)
            continue

        if not isinstance(position, OpenPosition):
            continue

        if has_a and has_b:
            logger.info(f"Position sync: [{position.pair_id}] {position.id} confirmed on exchange")
            continue

        missing = [leg for leg, held in (("A", has_a), ("B", has_b)) if not held]
        error = f"legs {', '.join(missing)} missing on exchange at startup"
        await manager.mark_failed(position.id, error)
        flagged.append(position.id)
        _log_sync_event(job_log, position.pair_id, f"{position.id}: {error}")

    configured = {m for p in pairs for m in (p.market_a, p.market_b)}
    for market_index, ex_pos in exchange_by_market.items():
        if market_index in configured and market_index not in tracked_markets:
            logger.warning(
                f"Position sync: exchange has {ex_pos['side']} {ex_pos['size']:.4f} in market {market_index} "
                f"with no ledger position. Manual review needed."
            )

    logger.info(f"Position sync complete, {len(flagged)} positions flagged")
    return flagged


def _log_sync_event(job_log: JobLogWriter | None, pair_id: str, message: str):
    if job_log is None:
        return
    job_log.write(pair_id=pair_id, status="warning", action="position_sync", message=message)
