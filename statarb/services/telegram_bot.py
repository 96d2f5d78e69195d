"""Telegram bot for trading notifications and remote control."""

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Optional

from sqlalchemy.engine import Engine
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from statarb.services.emergency_stop import get_system_state, run_emergency_stop, set_emergency_stop

if TYPE_CHECKING:
    from statarb.engine.controller import StrategyController

logger = logging.getLogger(__name__)


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop.

    Commands that act on the controller are scheduled onto the main loop,
    which owns the controller's locks.
    """

    def __init__(self, token: str, chat_ids: list[int], controller: "StrategyController", engine: Engine):
        self.token = token
        self.chat_ids = set(chat_ids)
        self.controller = controller
        self.engine = engine
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._main_loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    def status_text(self) -> str:
        state = get_system_state(self.engine)
        stats = self.controller.get_aggregate_stats()
        active = self.controller.get_active_positions()
        failed = [p for p in active if p.status.value == "failed"]
        last = self.controller.last_tick
        lines = [
            f"Emergency stop: {'ON' if state.emergency_stop else 'off'}",
            f"Active positions: {len(active)} ({len(failed)} failed)",
            f"Trades: {stats.total_trades} | win rate {stats.win_rate:.1f}% | PnL ${stats.realized_pnl:.2f}",
        ]
        if last and last.finished_at:
            lines.append(f"Last tick: {last.finished_at:%H:%M:%S} UTC, {len(last.errors)} errors")
        return "\n".join(lines)

    def positions_text(self) -> str:
        positions = self.controller.get_active_positions()
        if not positions:
            return "No active positions."
        lines = []
        for pos in positions:
            line = f"{pos.pair_id}: {pos.status.value} {pos.direction.value} | entry z={pos.entry_z_score:.3f} | ${pos.allocated_capital:.0f}"
            pnl = getattr(pos, "unrealized_pnl", None)
            if pnl is not None:
                line += f" | uPnL ${pnl:.2f}"
            lines.append(line)
        return "\n".join(lines)

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        await update.message.reply_text(self.status_text())

    async def _cmd_positions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        await update.message.reply_text(self.positions_text())

    async def _cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, stop and close all", callback_data="confirm_stop"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            "Raise emergency stop and close all open positions?",
            reply_markup=keyboard,
        )

    async def _cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        set_emergency_stop(self.engine, False)
        await update.message.reply_text("Emergency stop cleared. Entries resume on the next tick.")

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
            return

        if query.data == "confirm_stop":
            await query.edit_message_text("Emergency stop in progress...")
            future = asyncio.run_coroutine_threadsafe(
                run_emergency_stop(self.controller, self.engine, reason="telegram"),
                self._main_loop,
            )
            summary = await asyncio.wrap_future(future)
            errors = f"\nErrors: {len(summary.errors)}" if summary.errors else ""
            if summary.skipped:
                text = "Emergency stop raised. A tick was running; positions close on the next tick."
            else:
                text = f"Emergency stop raised. Closed {summary.positions_closed} positions.{errors}"
            await query.edit_message_text(text)

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def notify(self, message: str):
        """Fire-and-forget notification from any thread."""
        if self._loop is None:
            return
        asyncio.run_coroutine_threadsafe(self.send_notification(message), self._loop)

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("positions", self._cmd_positions))
        self._app.add_handler(CommandHandler("stop", self._cmd_stop))
        self._app.add_handler(CommandHandler("resume", self._cmd_resume))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        """Start polling; must be called from the main event loop."""
        self._main_loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)
