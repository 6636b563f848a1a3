from __future__ import annotations

from datetime import timedelta

import pytest

from share_credits.scheduler import SWEEP_JOB_ID, create_scheduler


@pytest.mark.asyncio
async def test_scheduler_registers_tick_job(engine):
    scheduler = create_scheduler(engine, interval_minutes=15)

    job = scheduler.get_job(SWEEP_JOB_ID)

    assert job is not None
    assert job.trigger.interval == timedelta(minutes=15)
    assert job.max_instances == 1
    assert job.coalesce is True


@pytest.mark.asyncio
async def test_scheduled_job_runs_the_sweep(engine, clock):
    await engine.subscriptions.activate("user-1")
    await engine.on_payment_failed("user-1")
    clock.advance(days=3)

    job = create_scheduler(engine).get_job(SWEEP_JOB_ID)
    await job.func()

    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status.value == "canceled"
