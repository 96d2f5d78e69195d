"""APScheduler integration for FastAPI.

Runs the strategy tick on a fixed interval.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from statarb.engine.controller import StrategyController

logger = logging.getLogger(__name__)

TICK_JOB_ID = "strategy_tick"


class TickScheduler:
    def __init__(self, controller: StrategyController, interval_seconds: int):
        self.controller = controller
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler()

    async def _run_tick(self):
        try:
            await self.controller.tick()
        except Exception as e:
            # Keep the job alive; the next tick retries
            logger.error(f"Scheduled tick raised: {e}", exc_info=True)

    def start(self):
        self.scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=TICK_JOB_ID,
            name="Strategy tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started, ticking every {self.interval_seconds}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def status(self) -> dict:
        """Current scheduler state for the API."""
        jobs = self.scheduler.get_jobs()
        last = self.controller.last_tick
        return {
            "running": self.scheduler.running,
            "tick_in_progress": self.controller.running,
            "interval_seconds": self.interval_seconds,
            "job_count": len(jobs),
            "jobs": [
                {
                    "id": j.id,
                    "name": j.name,
                    "next_run": str(j.next_run_time) if j.next_run_time else None,
                    "trigger": str(j.trigger),
                }
                for j in jobs
            ],
            "last_tick": {
                "started_at": last.started_at.isoformat() if last.started_at else None,
                "finished_at": last.finished_at.isoformat() if last.finished_at else None,
                "signals_generated": last.signals_generated,
                "positions_opened": last.positions_opened,
                "positions_closed": last.positions_closed,
                "errors": len(last.errors),
            } if last else None,
        }
