"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from statarb.config import settings
from statarb.database import create_db_and_tables, engine
from statarb.utils.logging import setup_logging
from statarb.api import dashboard, pairs, positions, system, trades

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    app.state.db_engine = engine
    app.state.controller = None
    app.state.scheduler = None

    from statarb.engine.factory import build_controller, build_lighter_client
    client = build_lighter_client()
    if client is None:
        logger.error("Trading disabled: set SA_LIGHTER_PRIVATE_KEY to run the strategy")
        yield
        return

    controller = build_controller(engine, client=client)
    app.state.controller = controller

    # Check restored positions against exchange state before ticking
    from statarb.engine.position_sync import sync_positions_on_startup
    await sync_positions_on_startup(
        controller.position_manager, client, controller.pairs, job_log=controller.job_log,
    )

    from statarb.engine.scheduler import TickScheduler
    scheduler = TickScheduler(controller, settings.tick_interval_seconds)
    scheduler.start()
    app.state.scheduler = scheduler

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from statarb.services.telegram_bot import TelegramBot
        telegram_bot = TelegramBot(settings.telegram_bot_token, settings.telegram_chat_ids, controller, engine)
        telegram_bot.start()
        controller.notifier = telegram_bot

    yield

    if telegram_bot:
        telegram_bot.stop()
    scheduler.stop()
    await controller.position_manager.drain()
    await client.close()


app = FastAPI(
    title="Statarb",
    description="Statistical pairs-trading service for the Lighter DEX",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(system.router)
app.include_router(positions.router)
app.include_router(pairs.router)
app.include_router(trades.router)
app.include_router(dashboard.router)
