"""Tests for the HTTP API."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlmodel import Session

from statarb.api import dashboard, pairs as pairs_api, positions, system, trades
from statarb.database import get_session
from statarb.engine.ledger import PositionLedger
from statarb.engine.position_manager import PositionManager
from statarb.services.capital_authority import CapitalAuthority
from statarb.services.lighter_client import PairTradeResult

from conftest import make_stats


def _app(db_engine, controller=None) -> FastAPI:
    app = FastAPI()
    for module in (system, positions, pairs_api, trades, dashboard):
        app.include_router(module.router)
    app.state.db_engine = db_engine
    app.state.controller = controller
    app.state.scheduler = None

    def session_override():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    return app


@pytest.fixture
def controller(controller_factory, db_engine, limits, execution, clock):
    manager = PositionManager(
        limits=limits, execution=execution, ledger=PositionLedger(db_engine), clock=clock, execution_timeout=1.0,
    )
    return controller_factory(
        authority=CapitalAuthority(db_engine, fixed_capital=100_000.0),
        manager=manager,
        persist=True,
    )


@pytest.fixture
def client(db_engine, controller):
    with TestClient(_app(db_engine, controller)) as client:
        yield client


def test_trading_disabled_without_controller(db_engine):
    with TestClient(_app(db_engine)) as client:
        health = client.get("/api/system/health").json()
        assert health["trading_enabled"] is False
        assert client.get("/api/positions").status_code == 503
        assert client.post("/api/system/tick").status_code == 503
        assert client.get("/api/system/scheduler").json()["running"] is False


def test_pairs_before_and_after_tick(client, pairs, stats_by_pair):
    before = client.get("/api/pairs").json()
    assert [p["reason"] for p in before] == ["not_analyzed", "not_analyzed"]

    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    client.post("/api/system/tick")

    eth_btc = client.get("/api/pairs/ETH-BTC").json()
    assert eth_btc["tradable"] is True
    assert eth_btc["z_score"] == 2.3
    sol_avax = client.get("/api/pairs/SOL-AVAX").json()
    assert sol_avax["tradable"] is False
    assert sol_avax["reason"] == "insufficient_data"
    assert client.get("/api/pairs/DOGE-SHIB").status_code == 404


def test_infinite_half_life_serializes_as_null(client, pairs, stats_by_pair):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=1.0, half_life=float("inf"))
    client.post("/api/system/tick")
    assert client.get("/api/pairs/ETH-BTC").json()["half_life"] is None


def test_tick_opens_position(client, pairs, stats_by_pair):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)

    summary = client.post("/api/system/tick").json()

    assert summary["positions_opened"] == 1
    assert summary["skipped"] is False
    [position] = client.get("/api/positions").json()
    assert position["pair_id"] == "ETH-BTC"
    assert position["status"] == "open"
    assert position["direction"] == "short_spread"
    assert client.get("/api/positions", params={"status": "failed"}).json() == []

    logs = client.get("/api/system/logs", params={"pair_id": "ETH-BTC"}).json()
    assert logs[0]["action"] == "entry"


def test_emergency_stop_closes_positions(client, pairs, stats_by_pair):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    client.post("/api/system/tick")

    summary = client.post("/api/system/emergency-stop", json={"reason": "exchange incident"}).json()

    assert summary["emergency_stop"] is True
    assert summary["positions_closed"] == 1
    health = client.get("/api/system/health").json()
    assert health["emergency_stop"] is True
    assert health["emergency_reason"] == "exchange incident"
    [trade] = client.get("/api/trades").json()
    assert trade["exit_reason"] == "emergency_stop"
    assert client.get("/api/trades", params={"exit_reason": "stop_loss"}).json() == []

    # stays raised: the next tick opens nothing
    assert client.post("/api/system/tick").json()["positions_opened"] == 0

    assert client.delete("/api/system/emergency-stop").json() == {"emergency_stop": False}
    assert client.post("/api/system/tick").json()["positions_opened"] == 1


def test_reconcile_failed_position(client, pairs, stats_by_pair, execution):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    execution.results = [PairTradeResult(success=False, error="rollback failed", uncertain=True)]
    client.post("/api/system/tick")
    [failed] = client.get("/api/positions", params={"status": "failed"}).json()
    assert failed["stage"] == "opening"

    response = client.post(
        f"/api/positions/{failed['id']}/reconcile",
        json={"holdings": "flat", "note": "no fills on either market"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "closed"
    assert response.json()["reason"] == "reconciled"
    assert client.get("/api/positions").json() == []
    # already closed
    assert client.post(f"/api/positions/{failed['id']}/reconcile", json={"holdings": "flat"}).status_code == 409


def test_reconcile_rejects_unknown_and_open(client, pairs, stats_by_pair):
    assert client.post("/api/positions/statarb_missing/reconcile", json={"holdings": "flat"}).status_code == 404

    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    client.post("/api/system/tick")
    [position] = client.get("/api/positions").json()

    response = client.post(f"/api/positions/{position['id']}/reconcile", json={"holdings": "open"})
    assert response.status_code == 409
    bad = client.post(f"/api/positions/{position['id']}/reconcile", json={"holdings": "maybe"})
    assert bad.status_code == 422


def test_dashboard_summary(client, pairs, stats_by_pair):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    client.post("/api/system/tick")

    summary = client.get("/api/dashboard/summary").json()

    assert summary["total_pairs"] == 2
    assert summary["tradable_pairs"] == 1
    assert summary["active_positions"] == 1
    assert summary["open_positions"] == 1
    assert summary["max_concurrent_positions"] == 5
    assert summary["committed_capital"] > 0
    assert summary["total_trades"] == 0
    assert summary["emergency_stop"] is False


def test_dashboard_reports_pair_performance(client, pairs, stats_by_pair):
    eth_btc = pairs[0]
    stats_by_pair[eth_btc.pair_id] = make_stats(eth_btc, z_score=2.3)
    client.post("/api/system/tick")
    stats_by_pair[eth_btc.pair_id] = make_stats(eth_btc, z_score=0.1)
    client.post("/api/system/tick")

    summary = client.get("/api/dashboard/summary").json()

    assert summary["total_trades"] == 1
    assert summary["avg_pnl_per_trade"] == summary["realized_pnl"]
    assert summary["pair_performance"] == {
        "ETH-BTC": {"trades": 1, "realized_pnl": summary["realized_pnl"], "win_rate": 0.0},
    }
