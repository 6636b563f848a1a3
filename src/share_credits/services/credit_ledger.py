from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import CompensationFailure, DuplicateRecordError, StorageTransientFailure
from ..logging.ledger_logger import LedgerLogger
from ..models.credits import CreditBalance, CreditType, UsageCounter
from ..models.results import DebitResult, LedgerError
from ..models.subscription import SubscriptionTier
from ..models.tier import get_tier_limits
from ..models.transaction import CreditTransaction, TransactionType
from ..timeutils import Clock, now_utc, period_key
from .notification_service import NotificationService

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Owns every user's share-credit balances.

    Each mutation is one atomic store operation (conditional decrement,
    unconditional increment, conditional reset) recorded in the credit
    transaction log within the same store transaction. Nothing is counted
    in process memory, so concurrent requests on several servers stay
    consistent.

    Callers follow debit -> side effect -> `compensate` on failure.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
        clock: Clock = now_utc,
        compensation_max_attempts: int = 3,
    ) -> None:
        if compensation_max_attempts < 1:
            raise ValueError("compensation_max_attempts must be at least 1")
        self._db = db
        self._ledger = ledger
        self._notifications = notifications
        self._clock = clock
        self._max_attempts = compensation_max_attempts

    async def ensure_balance(
        self, user_id: str, tier: Optional[SubscriptionTier] = None
    ) -> CreditBalance:
        """
        Return the user's balance row, creating it if missing with the
        allotment of `tier`, or of the tier the user's subscription grants
        right now when `tier` is not given.
        """
        existing = await self._db.get_credit_balance(user_id)
        if existing is not None:
            return existing
        if tier is None:
            tier = await self._current_tier(user_id)
        limits = get_tier_limits(tier)
        return await self._db.create_credit_balance_if_missing(
            CreditBalance(
                user_id=user_id,
                exam_share_credits=limits.exam_shares_per_month,
                practice_share_credits=limits.practice_shares_per_month,
                last_reset_period=period_key(self._clock()),
            )
        )

    async def read(self, user_id: str) -> CreditBalance:
        return await self.ensure_balance(user_id)

    async def debit(
        self,
        user_id: str,
        credit_type: CreditType,
        amount: int = 1,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> DebitResult:
        if amount <= 0:
            raise ValueError("amount must be positive")

        await self.ensure_balance(user_id)
        async with self._db.transaction():
            balance = await self._db.decrement_share_credits_if_available(
                user_id, credit_type, amount
            )
            if balance is None:
                current = await self._db.get_credit_balance(user_id)
                available = current.credits_for(credit_type) if current else 0
                await self._ledger.log_error(
                    message="Insufficient share credits for debit",
                    details={
                        "credit_type": credit_type.value,
                        "requested": amount,
                        "current": available,
                    },
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                return DebitResult(
                    success=False,
                    credit_type=credit_type,
                    new_balance=available,
                    error=LedgerError.INSUFFICIENT_CREDIT,
                )

            new_balance = balance.credits_for(credit_type)
            tx = await self._db.add_transaction(
                CreditTransaction(
                    user_id=user_id,
                    credit_type=credit_type,
                    transaction_type=TransactionType.DEBIT,
                    amount=amount,
                    balance_after=new_balance,
                    description=description,
                )
            )
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Share credits debited",
                details={
                    "credit_type": credit_type.value,
                    "amount": amount,
                    "new_balance": new_balance,
                    "transaction_id": tx.id,
                },
                correlation_id=correlation_id,
            )

        return DebitResult(
            success=True,
            credit_type=credit_type,
            new_balance=new_balance,
            transaction_id=tx.id,
        )

    async def credit(
        self,
        user_id: str,
        credit_type: CreditType,
        amount: int = 1,
        *,
        transaction_type: TransactionType = TransactionType.CREDIT,
        reference_id: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        """Increment (never set) the balance; concurrent credits all land."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        await self.ensure_balance(user_id)
        async with self._db.transaction():
            balance = await self._db.increment_share_credits(user_id, credit_type, amount)
            if balance is None:
                raise LookupError(f"no credit balance for user {user_id}")

            new_balance = balance.credits_for(credit_type)
            tx = await self._db.add_transaction(
                CreditTransaction(
                    user_id=user_id,
                    credit_type=credit_type,
                    transaction_type=transaction_type,
                    amount=amount,
                    balance_after=new_balance,
                    reference_id=reference_id,
                    description=description,
                )
            )
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Share credits added",
                details={
                    "credit_type": credit_type.value,
                    "amount": amount,
                    "new_balance": new_balance,
                    "transaction_type": transaction_type.value,
                    "reference_id": reference_id or "",
                },
                correlation_id=correlation_id,
            )
            return tx

    async def compensate(
        self,
        user_id: str,
        credit_type: CreditType,
        debit_transaction_id: str,
        amount: int = 1,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        """
        Give back a debit whose side effect failed.

        Before each attempt the transaction log is checked for this debit's
        compensation reference. The reference is unique in the log, so
        neither a retry after an unknown outcome nor a concurrent call
        credits twice. Raises `CompensationFailure` once the attempts are
        exhausted.
        """
        reference_id = f"compensation:{debit_transaction_id}"
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                existing = await self._db.get_transaction_by_reference(reference_id)
                if existing is not None:
                    return existing
                try:
                    return await self.credit(
                        user_id,
                        credit_type,
                        amount,
                        transaction_type=TransactionType.COMPENSATION,
                        reference_id=reference_id,
                        description="Compensation for failed share",
                        correlation_id=correlation_id,
                    )
                except DuplicateRecordError:
                    # A concurrent compensation for this debit committed first;
                    # ours was rolled back with its increment.
                    existing = await self._db.get_transaction_by_reference(reference_id)
                    if existing is None:
                        raise
                    return existing
            except StorageTransientFailure as exc:
                last_error = exc
                logger.warning(
                    "Compensation attempt %s/%s failed: %s",
                    attempt,
                    self._max_attempts,
                    exc,
                    extra={"user_id": user_id, "debit_transaction_id": debit_transaction_id},
                )

        details = {
            "credit_type": credit_type.value,
            "amount": amount,
            "debit_transaction_id": debit_transaction_id,
            "attempts": self._max_attempts,
            "error": str(last_error),
        }
        logger.critical(
            "Share credit compensation failed; balance needs manual reconciliation",
            extra={"user_id": user_id, **details},
        )
        try:
            await self._ledger.log_error(
                message="Compensation failed",
                details=details,
                user_id=user_id,
                correlation_id=correlation_id,
            )
        except StorageTransientFailure:
            logger.exception("Could not record compensation failure in the ledger")
        if self._notifications is not None:
            await self._notifications.notify_compensation_failure(user_id, details)
        raise CompensationFailure(user_id, debit_transaction_id, self._max_attempts) from last_error

    async def reset_to_allotment(
        self,
        user_id: str,
        tier: SubscriptionTier,
        correlation_id: str | None = None,
    ) -> CreditBalance:
        """Set both balances to `tier`'s monthly allotment (used on downgrade)."""
        limits = get_tier_limits(tier)
        await self.ensure_balance(user_id, tier)
        async with self._db.transaction():
            balance = await self._db.set_share_credits(
                user_id,
                limits.exam_shares_per_month,
                limits.practice_shares_per_month,
            )
            if balance is None:
                raise LookupError(f"no credit balance for user {user_id}")
            await self._record_reset(balance, TransactionType.DOWNGRADE_RESET, tier, correlation_id)
            return balance

    async def reset_for_period(
        self, user_id: str, period: str, tier: SubscriptionTier
    ) -> Optional[CreditBalance]:
        """
        Monthly reset keyed on the stored period. Returns None when the row
        was already reset for `period` (by this caller or a concurrent one).
        """
        limits = get_tier_limits(tier)
        await self.ensure_balance(user_id, tier)
        async with self._db.transaction():
            balance = await self._db.reset_period_if_stale(
                user_id,
                period,
                limits.exam_shares_per_month,
                limits.practice_shares_per_month,
            )
            if balance is None:
                return None
            await self._record_reset(balance, TransactionType.PERIOD_RESET, tier, None)
            return balance

    async def record_usage(
        self, user_id: str, counter: UsageCounter, amount: int = 1
    ) -> CreditBalance:
        if amount <= 0:
            raise ValueError("amount must be positive")
        await self.ensure_balance(user_id)
        balance = await self._db.increment_usage(user_id, counter, amount)
        if balance is None:
            raise LookupError(f"no credit balance for user {user_id}")
        return balance

    async def get_credit_history(self, user_id: str) -> Iterable[CreditTransaction]:
        return await self._db.get_transactions(user_id)

    async def _current_tier(self, user_id: str) -> SubscriptionTier:
        record = await self._db.get_subscription(user_id)
        if record is None:
            return SubscriptionTier.FREE
        return record.tier_at(self._clock())

    async def _record_reset(
        self,
        balance: CreditBalance,
        transaction_type: TransactionType,
        tier: SubscriptionTier,
        correlation_id: Optional[str],
    ) -> None:
        for credit_type in CreditType:
            await self._db.add_transaction(
                CreditTransaction(
                    user_id=balance.user_id,
                    credit_type=credit_type,
                    transaction_type=transaction_type,
                    balance_after=balance.credits_for(credit_type),
                    description=f"Reset to {tier.value} allotment",
                    metadata={"period": balance.last_reset_period},
                )
            )
        await self._ledger.log_transaction(
            user_id=balance.user_id,
            message="Share credits reset",
            details={
                "reason": transaction_type.value,
                "tier": tier.value,
                "exam_share_credits": balance.exam_share_credits,
                "practice_share_credits": balance.practice_share_credits,
                "period": balance.last_reset_period,
            },
            correlation_id=correlation_id,
        )
