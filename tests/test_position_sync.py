"""Tests for the startup check of ledger positions against exchange holdings."""

from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from statarb.engine.ledger import JobLogWriter
from statarb.engine.position_sync import sync_positions_on_startup
from statarb.engine.positions import FailedPosition, OpenPosition
from statarb.models.job_log import JobLog
from statarb.schemas.pair import PairConfig
from statarb.services.lighter_client import PairTradeResult
from statarb.services.signal_generator import SignalGenerator


def _exchange(*markets):
    return [
        {"market_index": m, "side": "long", "size": 1.0, "entry_price": 100.0}
        for m in markets
    ]


async def _open(manager, limits, pair):
    signal = SignalGenerator(limits).classify(2.3, 0.8, 0.6, pair_id=pair.pair_id, half_life=10.0)
    sizing = manager.size_entry(signal, 100_000.0, 2000.0, 40000.0)
    return await manager.open_position(pair, signal, sizing)


@pytest.mark.asyncio
async def test_confirmed_positions_untouched(manager, limits, pairs):
    position = await _open(manager, limits, pairs[0])
    client = AsyncMock()
    client.get_positions.return_value = _exchange(0, 1)

    flagged = await sync_positions_on_startup(manager, client, pairs)

    assert flagged == []
    assert isinstance(manager.get_position(position.id), OpenPosition)


@pytest.mark.asyncio
async def test_missing_leg_marks_failed(manager, limits, pairs, db_engine):
    position = await _open(manager, limits, pairs[0])
    client = AsyncMock()
    client.get_positions.return_value = _exchange(0)

    flagged = await sync_positions_on_startup(manager, client, pairs, job_log=JobLogWriter(db_engine))

    assert flagged == [position.id]
    failed = manager.get_position(position.id)
    assert isinstance(failed, FailedPosition)
    assert failed.stage == "reconciliation"
    assert failed.error == "legs B missing on exchange at startup"
    with Session(db_engine) as session:
        [log] = session.exec(select(JobLog)).all()
    assert log.action == "position_sync"
    assert log.status == "warning"


@pytest.mark.asyncio
async def test_failed_positions_are_reported_not_changed(manager, limits, pairs, execution, db_engine):
    execution.results = [PairTradeResult(success=False, error="rollback failed", uncertain=True)]
    failed = await _open(manager, limits, pairs[0])
    client = AsyncMock()
    client.get_positions.return_value = _exchange(1)

    flagged = await sync_positions_on_startup(manager, client, pairs, job_log=JobLogWriter(db_engine))

    assert flagged == []
    assert manager.get_position(failed.id) == failed
    with Session(db_engine) as session:
        [log] = session.exec(select(JobLog)).all()
    assert "exchange legs A=flat B=held" in log.message


@pytest.mark.asyncio
async def test_untracked_exchange_position_is_warned(manager, pairs, caplog):
    client = AsyncMock()
    client.get_positions.return_value = _exchange(9, 55)

    flagged = await sync_positions_on_startup(manager, client, pairs)

    assert flagged == []
    assert "market 9 with no ledger position" in caplog.text
    assert "market 55" not in caplog.text


@pytest.mark.asyncio
async def test_positions_without_market_indices_are_skipped(manager, limits):
    pair = PairConfig(token_a="ETH", token_b="BTC")
    position = await _open(manager, limits, pair)
    client = AsyncMock()
    client.get_positions.return_value = []

    assert await sync_positions_on_startup(manager, client, [pair]) == []
    assert isinstance(manager.get_position(position.id), OpenPosition)


@pytest.mark.asyncio
async def test_exchange_unreachable_flags_nothing(manager, limits, pairs):
    await _open(manager, limits, pairs[0])
    client = AsyncMock()
    client.get_positions.side_effect = ConnectionError("timeout")

    assert await sync_positions_on_startup(manager, client, pairs) == []
    assert len(manager.get_open_positions()) == 1
