from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from share_credits.db.memory import InMemoryDBManager
from share_credits.errors import CompensationFailure, StorageTransientFailure
from share_credits.logging.ledger_logger import LedgerLogger
from share_credits.models.credits import CreditType, UsageCounter
from share_credits.models.results import LedgerError
from share_credits.models.subscription import (
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from share_credits.models.transaction import TransactionType
from share_credits.notifications.queue import InMemoryNotificationQueue
from share_credits.services.credit_ledger import CreditLedger
from share_credits.services.notification_service import NotificationService

from .conftest import FixedClock


class FailingIncrementDB(InMemoryDBManager):
    """Increments fail with a transient error the first `failures` times."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.increment_calls = 0

    async def increment_share_credits(self, user_id, credit_type, amount):
        self.increment_calls += 1
        if self.increment_calls <= self.failures:
            raise StorageTransientFailure("connection reset")
        return await super().increment_share_credits(user_id, credit_type, amount)


class LostAckDB(InMemoryDBManager):
    """Commits the next transaction, then reports its outcome as unknown."""

    def __init__(self) -> None:
        super().__init__()
        self.lose_next_ack = False

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction():
            yield
        if self.lose_next_ack:
            self.lose_next_ack = False
            raise StorageTransientFailure("commit acknowledgement lost")


class InterleavedLookupDB(InMemoryDBManager):
    """Reference lookups wait until two callers have both looked, so both see nothing."""

    def __init__(self) -> None:
        super().__init__()
        self.lookups = 0
        self.both_looked = asyncio.Event()

    async def get_transaction_by_reference(self, reference_id):
        found = await super().get_transaction_by_reference(reference_id)
        self.lookups += 1
        if self.lookups >= 2:
            self.both_looked.set()
        await self.both_looked.wait()
        return found


def _ledger(db, tmp_path, **kwargs) -> CreditLedger:
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    return CreditLedger(db, ledger, clock=FixedClock(), **kwargs)


@pytest.mark.asyncio
async def test_new_balance_gets_tier_allotment(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)

    free = await service.read("user-1")
    assert free.exam_share_credits == 2
    assert free.practice_share_credits == 3
    assert free.last_reset_period == "2026-03"

    premium = await service.ensure_balance("user-2", SubscriptionTier.PREMIUM)
    assert premium.exam_share_credits == 10
    assert premium.practice_share_credits == 15


@pytest.mark.asyncio
async def test_new_balance_follows_stored_subscription(tmp_path):
    db = InMemoryDBManager()
    service = _ledger(db, tmp_path)
    now = FixedClock().now
    await db.save_subscription(
        SubscriptionRecord(
            user_id="premium", tier=SubscriptionTier.PREMIUM, status=SubscriptionStatus.ACTIVE
        )
    )
    await db.save_subscription(
        SubscriptionRecord(
            user_id="lapsed",
            tier=SubscriptionTier.PREMIUM,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_end=now - timedelta(hours=1),
            downgrade_scheduled=True,
        )
    )

    await service.record_usage("premium", UsageCounter.LIBRARY_ACCESS_USED)
    premium = await service.read("premium")
    assert (premium.exam_share_credits, premium.practice_share_credits) == (10, 15)

    lapsed = await service.read("lapsed")
    assert (lapsed.exam_share_credits, lapsed.practice_share_credits) == (2, 3)


@pytest.mark.asyncio
async def test_debit_and_credit(tmp_path):
    db = InMemoryDBManager()
    service = _ledger(db, tmp_path)

    result = await service.debit("user-1", CreditType.PRACTICE)
    assert result.success
    assert result.new_balance == 2
    assert result.transaction_id is not None

    tx = await service.credit("user-1", CreditType.PRACTICE, 4)
    assert tx.balance_after == 6
    assert tx.transaction_type == TransactionType.CREDIT

    history = list(await service.get_credit_history("user-1"))
    assert [t.transaction_type for t in history] == [TransactionType.DEBIT, TransactionType.CREDIT]


@pytest.mark.asyncio
async def test_insufficient_credit_is_a_result_not_an_error(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)

    assert (await service.debit("user-1", CreditType.EXAM, 2)).success
    result = await service.debit("user-1", CreditType.EXAM)

    assert not result.success
    assert result.error == LedgerError.INSUFFICIENT_CREDIT
    assert result.new_balance == 0
    assert (await service.read("user-1")).exam_share_credits == 0
    assert "Insufficient share credits" in (tmp_path / "ledger.log").read_text()


@pytest.mark.asyncio
async def test_non_positive_amounts_rejected(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)

    with pytest.raises(ValueError):
        await service.debit("user-1", CreditType.EXAM, 0)
    with pytest.raises(ValueError):
        await service.credit("user-1", CreditType.EXAM, -1)


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)
    await service.debit("user-1", CreditType.EXAM)  # leaves exactly one

    results = await asyncio.gather(
        *(service.debit("user-1", CreditType.EXAM) for _ in range(10))
    )

    assert sum(r.success for r in results) == 1
    assert (await service.read("user-1")).exam_share_credits == 0


@pytest.mark.asyncio
async def test_balance_conserved_under_mixed_concurrency(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)
    start = (await service.read("user-1")).practice_share_credits

    debits = [service.debit("user-1", CreditType.PRACTICE) for _ in range(8)]
    credits = [service.credit("user-1", CreditType.PRACTICE) for _ in range(5)]
    results = await asyncio.gather(*debits, *credits)

    succeeded = sum(1 for r in results[:8] if r.success)
    final = (await service.read("user-1")).practice_share_credits
    assert final >= 0
    assert final == start + 5 - succeeded


@pytest.mark.asyncio
async def test_concurrent_credits_all_land(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)
    await service.read("user-1")

    await asyncio.gather(*(service.credit("user-1", CreditType.EXAM) for _ in range(10)))

    assert (await service.read("user-1")).exam_share_credits == 12


@pytest.mark.asyncio
async def test_compensation_is_applied_once(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)
    debit = await service.debit("user-1", CreditType.EXAM)

    first = await service.compensate("user-1", CreditType.EXAM, debit.transaction_id)
    second = await service.compensate("user-1", CreditType.EXAM, debit.transaction_id)

    assert first.id == second.id
    assert first.reference_id == f"compensation:{debit.transaction_id}"
    assert (await service.read("user-1")).exam_share_credits == 2


@pytest.mark.asyncio
async def test_compensation_retries_transient_failures(tmp_path):
    db = FailingIncrementDB(failures=2)
    service = _ledger(db, tmp_path, compensation_max_attempts=3)
    debit = await service.debit("user-1", CreditType.EXAM)

    tx = await service.compensate("user-1", CreditType.EXAM, debit.transaction_id)

    assert tx.transaction_type == TransactionType.COMPENSATION
    assert db.increment_calls == 3
    assert (await service.read("user-1")).exam_share_credits == 2


@pytest.mark.asyncio
async def test_compensation_does_not_double_credit_after_lost_ack(tmp_path):
    db = LostAckDB()
    service = _ledger(db, tmp_path)
    debit = await service.debit("user-1", CreditType.EXAM)

    db.lose_next_ack = True
    await service.compensate("user-1", CreditType.EXAM, debit.transaction_id)

    assert (await service.read("user-1")).exam_share_credits == 2
    compensations = [
        t
        for t in await service.get_credit_history("user-1")
        if t.transaction_type == TransactionType.COMPENSATION
    ]
    assert len(compensations) == 1


@pytest.mark.asyncio
async def test_concurrent_compensations_credit_once(tmp_path):
    db = InterleavedLookupDB()
    service = _ledger(db, tmp_path)
    debit = await service.debit("user-1", CreditType.EXAM)

    first, second = await asyncio.gather(
        service.compensate("user-1", CreditType.EXAM, debit.transaction_id),
        service.compensate("user-1", CreditType.EXAM, debit.transaction_id),
    )

    assert first.id == second.id
    assert (await service.read("user-1")).exam_share_credits == 2
    compensations = [
        t
        for t in await service.get_credit_history("user-1")
        if t.transaction_type == TransactionType.COMPENSATION
    ]
    assert len(compensations) == 1


@pytest.mark.asyncio
async def test_compensation_failure_escalates(tmp_path):
    db = FailingIncrementDB(failures=100)
    queue = InMemoryNotificationQueue()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = CreditLedger(
        db,
        ledger,
        notifications=NotificationService(db=db, queue=queue),
        clock=FixedClock(),
        compensation_max_attempts=3,
    )
    debit = await service.debit("user-1", CreditType.EXAM)

    with pytest.raises(CompensationFailure) as excinfo:
        await service.compensate("user-1", CreditType.EXAM, debit.transaction_id)

    assert excinfo.value.attempts == 3
    assert excinfo.value.debit_transaction_id == debit.transaction_id
    assert len(queue.of_type("compensation_failure")) == 1
    assert (await service.read("user-1")).exam_share_credits == 1


@pytest.mark.asyncio
async def test_usage_counters_increment(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)

    await service.record_usage("user-1", UsageCounter.EXAMS_CREATED)
    balance = await service.record_usage("user-1", UsageCounter.EXAMS_CREATED)

    assert balance.exams_created == 2
    assert balance.exam_share_credits == 2


@pytest.mark.asyncio
async def test_reset_to_allotment_records_transactions(tmp_path):
    service = _ledger(InMemoryDBManager(), tmp_path)
    await service.ensure_balance("user-1", SubscriptionTier.PREMIUM)

    balance = await service.reset_to_allotment("user-1", SubscriptionTier.FREE)

    assert (balance.exam_share_credits, balance.practice_share_credits) == (2, 3)
    resets = [
        t
        for t in await service.get_credit_history("user-1")
        if t.transaction_type == TransactionType.DOWNGRADE_RESET
    ]
    assert {t.credit_type for t in resets} == {CreditType.EXAM, CreditType.PRACTICE}
