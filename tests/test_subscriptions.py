from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from share_credits.config import RepeatFailurePolicy
from share_credits.models.credits import CreditType
from share_credits.models.subscription import SubscriptionStatus, SubscriptionTier
from share_credits.services.subscription_service import SubscriptionService


@pytest.mark.asyncio
async def test_unknown_user_is_free(engine):
    record = await engine.subscriptions.get_subscription("nobody")
    assert record.tier == SubscriptionTier.FREE
    assert await engine.subscriptions.effective_tier("nobody") == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_trial_then_activate(engine, clock):
    trial = await engine.subscriptions.start_trial("user-1")
    assert trial.status == SubscriptionStatus.TRIALING
    assert trial.tier == SubscriptionTier.PREMIUM
    assert trial.trial_end == clock.now + timedelta(days=3)
    assert await engine.subscriptions.effective_tier("user-1") == SubscriptionTier.PREMIUM

    active = await engine.subscriptions.activate("user-1")
    assert active.status == SubscriptionStatus.ACTIVE
    assert active.current_period_end == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_first_subscribe_calls_race_to_one_record(engine, db):
    trial, active = await asyncio.gather(
        engine.subscriptions.start_trial("user-1"),
        engine.subscriptions.activate("user-1"),
    )

    stored = await db.get_subscription("user-1")
    assert stored.tier == SubscriptionTier.PREMIUM
    assert stored.status in {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE}
    assert trial.created_at == active.created_at == stored.created_at


@pytest.mark.asyncio
async def test_activate_updates_existing_record_in_place(engine, db, clock):
    trial = await engine.subscriptions.start_trial("user-1")
    clock.advance(days=1)

    active = await engine.subscriptions.activate("user-1")

    assert active.created_at == trial.created_at
    assert active.trial_end == trial.trial_end
    assert (await db.get_subscription("user-1")).status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_payment_failure_opens_grace_period(engine, clock):
    await engine.subscriptions.activate("user-1")

    record = await engine.subscriptions.mark_payment_failed("user-1")

    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.payment_failed_at == clock.now
    assert record.grace_period_end == clock.now + timedelta(days=3)
    assert record.downgrade_scheduled
    assert await engine.subscriptions.effective_tier("user-1") == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_repeat_failure_keeps_original_deadline(engine, clock):
    await engine.subscriptions.activate("user-1")
    first = await engine.subscriptions.mark_payment_failed("user-1")

    clock.advance(days=1)
    assert await engine.subscriptions.mark_payment_failed("user-1") is None

    record = await engine.subscriptions.get_subscription("user-1")
    assert record.grace_period_end == first.grace_period_end


@pytest.mark.asyncio
async def test_repeat_failure_can_extend_deadline(engine, db, clock):
    service = SubscriptionService(
        db,
        engine.ledger,
        engine.credit_ledger,
        clock=clock,
        repeat_failure_policy=RepeatFailurePolicy.EXTEND_DEADLINE,
    )
    await service.activate("user-1")
    await service.mark_payment_failed("user-1")

    clock.advance(days=1)
    record = await service.mark_payment_failed("user-1")

    assert record.grace_period_end == clock.now + timedelta(days=3)


@pytest.mark.asyncio
async def test_payment_failure_ignored_for_free_and_canceled(engine):
    assert await engine.subscriptions.mark_payment_failed("free-user") is None

    await engine.subscriptions.activate("user-1")
    await engine.subscriptions.downgrade_to_free("user-1", reason="test")
    assert await engine.subscriptions.mark_payment_failed("user-1") is None
    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status == SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_clear_payment_failure(engine):
    await engine.subscriptions.activate("user-1")
    await engine.subscriptions.mark_payment_failed("user-1")

    assert await engine.subscriptions.clear_payment_failure("user-1") is True
    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.grace_period_end is None
    assert record.payment_failed_at is None
    assert not record.downgrade_scheduled

    # Nothing in progress any more
    assert await engine.subscriptions.clear_payment_failure("user-1") is False


@pytest.mark.asyncio
async def test_clear_payment_failure_never_revives_canceled(engine):
    await engine.subscriptions.activate("user-1")
    await engine.subscriptions.downgrade_to_free("user-1")

    assert await engine.subscriptions.clear_payment_failure("user-1") is False
    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status == SubscriptionStatus.CANCELED
    assert record.tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_concurrent_downgrades_apply_once(engine):
    await engine.subscriptions.activate("user-1")
    await engine.credit_ledger.ensure_balance("user-1", SubscriptionTier.PREMIUM)
    await engine.credit_ledger.credit("user-1", CreditType.EXAM, 5)

    results = await asyncio.gather(
        *(engine.subscriptions.downgrade_to_free("user-1") for _ in range(5))
    )

    assert sum(r is not None for r in results) == 1
    record = await engine.subscriptions.get_subscription("user-1")
    assert record.tier == SubscriptionTier.FREE
    assert record.status == SubscriptionStatus.CANCELED
    assert not record.downgrade_scheduled
    balance = await engine.credit_ledger.read("user-1")
    assert (balance.exam_share_credits, balance.practice_share_credits) == (2, 3)


@pytest.mark.asyncio
async def test_expired_grace_is_free_before_the_sweep(engine, clock):
    await engine.subscriptions.activate("user-1")
    await engine.subscriptions.mark_payment_failed("user-1")

    clock.advance(days=3)

    assert await engine.subscriptions.effective_tier("user-1") == SubscriptionTier.FREE
    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_cancel_at_period_end(engine, clock):
    await engine.subscriptions.activate("user-1", period_end=clock.now + timedelta(days=10))
    scheduled = await engine.subscriptions.schedule_cancellation("user-1")
    assert scheduled.cancel_at_period_end

    clock.advance(days=9)
    assert await engine.subscriptions.effective_tier("user-1") == SubscriptionTier.PREMIUM
    assert (await engine.subscriptions.sweep_ended_cancellations()).processed_count == 0

    clock.advance(days=1)
    assert await engine.subscriptions.effective_tier("user-1") == SubscriptionTier.FREE
    result = await engine.subscriptions.sweep_ended_cancellations()
    assert result.processed_count == 1
    assert result.errors == []

    record = await engine.subscriptions.get_subscription("user-1")
    assert record.status == SubscriptionStatus.CANCELED
    assert record.tier == SubscriptionTier.FREE
    assert (await engine.subscriptions.sweep_ended_cancellations()).processed_count == 0


@pytest.mark.asyncio
async def test_reactivate_withdraws_cancellation(engine, clock):
    await engine.subscriptions.activate("user-1", period_end=clock.now + timedelta(days=10))
    await engine.subscriptions.schedule_cancellation("user-1")

    record = await engine.subscriptions.reactivate("user-1")
    assert not record.cancel_at_period_end
    assert await engine.subscriptions.reactivate("user-1") is None

    clock.advance(days=11)
    assert (await engine.subscriptions.sweep_ended_cancellations()).processed_count == 0
