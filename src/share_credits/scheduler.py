"""
Background scheduling of the engine's periodic tick.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .services.engine import ShareCreditsEngine

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "grace_period_sweep"


def create_scheduler(engine: ShareCreditsEngine, interval_minutes: int = 60) -> AsyncIOScheduler:
    """
    Build (but do not start) a scheduler that runs `engine.tick()` every
    `interval_minutes`. Overlapping runs are coalesced; tick itself is
    idempotent, so several app instances may each run one.
    """

    async def run_tick() -> None:
        result = await engine.tick()
        logger.info(
            "Share credit tick: %s grace downgrades, %s ended cancellations, %s warnings",
            result.grace_downgrades.processed_count,
            result.ended_cancellations.processed_count,
            result.warnings_sent,
        )
        for error in result.grace_downgrades.errors + result.ended_cancellations.errors:
            logger.error("Share credit tick error: %s", error)

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_tick,
        IntervalTrigger(minutes=interval_minutes),
        id=SWEEP_JOB_ID,
        name="Grace Period Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
