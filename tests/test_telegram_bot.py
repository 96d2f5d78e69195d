"""Tests for the Telegram bot's command handlers and message text."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from statarb.services.emergency_stop import is_emergency_stop_active, set_emergency_stop
from statarb.services.lighter_client import PairTradeResult
from statarb.services.telegram_bot import TelegramBot

from conftest import make_stats

CHAT_ID = 1001


def _update(user_id: int = CHAT_ID):
    message = SimpleNamespace(reply_text=AsyncMock())
    return SimpleNamespace(effective_user=SimpleNamespace(id=user_id), message=message)


@pytest.fixture
def controller(controller_factory):
    return controller_factory()


@pytest.fixture
def bot(controller, db_engine) -> TelegramBot:
    return TelegramBot("token", [CHAT_ID], controller, db_engine)


@pytest.mark.asyncio
async def test_status_text_after_entry(bot, controller, pairs, stats_by_pair, execution):
    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    stats_by_pair[pairs[1].pair_id] = make_stats(pairs[1], z_score=-2.6)
    execution.results = [
        PairTradeResult(success=True, tx_ids=("1", "2")),
        PairTradeResult(success=False, error="rollback failed", uncertain=True),
    ]
    await controller.tick()

    text = bot.status_text()

    assert "Emergency stop: off" in text
    assert "Active positions: 2 (1 failed)" in text
    assert "Last tick:" in text


@pytest.mark.asyncio
async def test_positions_text(bot, controller, pairs, stats_by_pair):
    assert bot.positions_text() == "No active positions."

    stats_by_pair[pairs[0].pair_id] = make_stats(pairs[0], z_score=2.3)
    await controller.tick()

    assert bot.positions_text().startswith("ETH-BTC: open short_spread | entry z=2.300")


@pytest.mark.asyncio
async def test_unauthorized_user_is_refused(bot):
    update = _update(user_id=42)

    await bot._cmd_status(update, None)

    update.message.reply_text.assert_awaited_once_with("Unauthorized.")


@pytest.mark.asyncio
async def test_resume_clears_emergency_stop(bot, db_engine):
    set_emergency_stop(db_engine, True, "telegram")
    update = _update()

    await bot._cmd_resume(update, None)

    assert not is_emergency_stop_active(db_engine)
    update.message.reply_text.assert_awaited_once()


def test_notify_before_start_is_a_no_op(bot):
    bot.notify("hello")
