"""CLI tool for operator actions.

Usage:
    python -m statarb.cli tick
    python -m statarb.cli emergency-stop [reason]
    python -m statarb.cli resume
    python -m statarb.cli reconcile <position_id> flat|open [note]
    python -m statarb.cli stats

The running server reads the emergency flag every tick, so `emergency-stop`
and `resume` take effect without a restart. `tick` and `reconcile` act on the
ledger directly and are meant for when the server is stopped.
"""

import asyncio
import sys

from statarb.config import settings
from statarb.database import create_db_and_tables, engine
from statarb.engine.errors import ReconciliationRequired
from statarb.engine.ledger import PositionLedger
from statarb.engine.position_manager import aggregate_stats
from statarb.engine.positions import ClosedPosition
from statarb.services.emergency_stop import set_emergency_stop
from statarb.utils.logging import setup_logging

USAGE = "Commands: tick, emergency-stop [reason], resume, reconcile <position_id> flat|open [note], stats"


def _build():
    from statarb.engine.factory import build_controller, build_lighter_client

    client = build_lighter_client()
    if client is None:
        print("SA_LIGHTER_PRIVATE_KEY is not set.")
        sys.exit(1)
    return client, build_controller(engine, client=client)


async def _tick():
    client, controller = _build()
    try:
        summary = await controller.tick()
    finally:
        await client.close()
    print(
        f"signals={summary.signals_generated} opened={summary.positions_opened} "
        f"closed={summary.positions_closed} emergency_stop={summary.emergency_stop}"
    )
    for pair_id, reason in summary.rejections.items():
        print(f"  rejected {pair_id}: {reason}")
    for error in summary.errors:
        print(f"  error: {error}")


async def _reconcile(position_id: str, holdings: str, note: str):
    client, controller = _build()
    try:
        position = await controller.position_manager.reconcile(
            position_id, holdings_flat=holdings == "flat", note=note,
        )
    except ReconciliationRequired as e:
        print(str(e))
        sys.exit(1)
    finally:
        await client.close()
    print(f"Position {position.id} is now {position.status.value}.")


def stats():
    closed = [p for p in PositionLedger(engine).load_terminal() if isinstance(p, ClosedPosition)]
    result = aggregate_stats(closed)
    hours = result.avg_holding_period.total_seconds() / 3600
    print(f"Trades: {result.total_trades}")
    print(f"Win rate: {result.win_rate:.1f}%")
    print(f"Avg holding period: {hours:.2f}h")
    print(f"Realized PnL: ${result.realized_pnl:.2f} (avg ${result.avg_pnl_per_trade:.2f} per trade)")
    for pair_id, perf in sorted(result.per_pair.items()):
        print(f"  {pair_id}: {perf.trades} trades, win rate {perf.win_rate:.1f}%, PnL ${perf.realized_pnl:.2f}")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m statarb.cli <command>")
        print(USAGE)
        sys.exit(1)

    setup_logging(settings.log_level)
    create_db_and_tables()

    command, args = sys.argv[1], sys.argv[2:]
    if command == "tick":
        asyncio.run(_tick())
    elif command == "emergency-stop":
        set_emergency_stop(engine, True, " ".join(args) or "cli")
        print("Emergency stop raised. Open positions close on the next tick.")
    elif command == "resume":
        set_emergency_stop(engine, False)
        print("Emergency stop cleared.")
    elif command == "reconcile":
        if len(args) < 2 or args[1] not in ("flat", "open"):
            print("Usage: python -m statarb.cli reconcile <position_id> flat|open [note]")
            sys.exit(1)
        asyncio.run(_reconcile(args[0], args[1], " ".join(args[2:])))
    elif command == "stats":
        stats()
    else:
        print(f"Unknown command: {command}")
        print(USAGE)
        sys.exit(1)


if __name__ == "__main__":
    main()
