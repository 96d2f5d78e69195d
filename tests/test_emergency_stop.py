"""Tests for the persisted emergency stop and the capital authority."""

from unittest.mock import AsyncMock

import pytest

from statarb.services.capital_authority import CapitalAuthority
from statarb.services.emergency_stop import (
    get_system_state,
    is_emergency_stop_active,
    run_emergency_stop,
    set_emergency_stop,
)

from conftest import make_stats


def test_flag_defaults_to_clear(db_engine):
    state = get_system_state(db_engine)
    assert state.emergency_stop is False
    assert state.emergency_reason is None


def test_raise_and_clear(db_engine):
    set_emergency_stop(db_engine, True, "manual")
    assert is_emergency_stop_active(db_engine)
    assert get_system_state(db_engine).emergency_reason == "manual"

    set_emergency_stop(db_engine, False)
    state = get_system_state(db_engine)
    assert state.emergency_stop is False
    assert state.emergency_reason is None


@pytest.mark.asyncio
async def test_run_emergency_stop_closes_open_positions(controller_factory, pairs, stats_by_pair, db_engine):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    controller = controller_factory(authority=CapitalAuthority(db_engine, fixed_capital=50_000.0))
    await controller.tick()
    assert len(controller.get_open_positions()) == 1

    summary = await run_emergency_stop(controller, db_engine, reason="test")

    assert summary.emergency_stop
    assert summary.positions_closed == 1
    assert controller.get_active_positions() == []
    assert is_emergency_stop_active(db_engine)


# ---------------------------------------------------------------------------
# Capital authority
# ---------------------------------------------------------------------------

def test_authority_needs_a_capital_source(db_engine):
    with pytest.raises(ValueError):
        CapitalAuthority(db_engine)


@pytest.mark.asyncio
async def test_fixed_capital_overrides_balance(db_engine):
    client = AsyncMock()
    client.get_balance.return_value = 1234.0
    authority = CapitalAuthority(db_engine, client=client, fixed_capital=10_000.0)

    assert await authority.get_available_capital() == 10_000.0
    client.get_balance.assert_not_called()


@pytest.mark.asyncio
async def test_balance_read_from_exchange(db_engine):
    client = AsyncMock()
    client.get_balance.return_value = 1234.0
    authority = CapitalAuthority(db_engine, client=client)

    assert await authority.get_available_capital() == 1234.0
    assert await authority.get_emergency_stop_state() is False
    set_emergency_stop(db_engine, True, "ops")
    assert await authority.get_emergency_stop_state() is True
