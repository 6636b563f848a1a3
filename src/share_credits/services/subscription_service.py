from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..config import RepeatFailurePolicy
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.results import SweepResult
from ..models.subscription import (
    PREMIUM_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from ..timeutils import Clock, add_calendar_months, now_utc
from .credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

_CLEARED_GRACE: Dict[str, Any] = {
    "payment_failed_at": None,
    "grace_period_end": None,
    "downgrade_scheduled": False,
    "grace_warning_sent": False,
}


class SubscriptionService:
    """
    Subscription lifecycle state machine.

        trialing -> active -> past_due -> active
                                       -> canceled (grace expired)
        active/trialing -> canceled (cancel at period end)

    Every transition is a single compare-and-set on the record, so a
    transition that races with another (or is replayed) applies at most
    once. Canceled records keep ``tier=free`` and are never deleted.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_ledger: CreditLedger,
        clock: Clock = now_utc,
        grace_period_days: int = 3,
        trial_days: int = 3,
        repeat_failure_policy: RepeatFailurePolicy = RepeatFailurePolicy.KEEP_DEADLINE,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credit_ledger = credit_ledger
        self._clock = clock
        self._grace_period = timedelta(days=grace_period_days)
        self._trial_period = timedelta(days=trial_days)
        self._repeat_failure_policy = repeat_failure_policy

    async def get_subscription(self, user_id: str) -> SubscriptionRecord:
        """Stored record, or an unsaved free record for users who never subscribed."""
        record = await self._db.get_subscription(user_id)
        return record or SubscriptionRecord(user_id=user_id)

    async def effective_tier(self, user_id: str) -> SubscriptionTier:
        """Tier to enforce right now; see `SubscriptionRecord.tier_at`."""
        record = await self.get_subscription(user_id)
        return record.tier_at(self._clock())

    async def start_trial(self, user_id: str) -> SubscriptionRecord:
        now = self._clock()
        trial_end = now + self._trial_period
        record = await self._apply(
            user_id,
            {
                "tier": SubscriptionTier.PREMIUM,
                "status": SubscriptionStatus.TRIALING,
                "trial_end": trial_end,
                "current_period_end": trial_end,
                "cancel_at_period_end": False,
                **_CLEARED_GRACE,
            },
        )
        await self._log(user_id, "Subscription trial started", {"trial_end": trial_end.isoformat()})
        return record

    async def activate(
        self, user_id: str, period_end: Optional[datetime] = None
    ) -> SubscriptionRecord:
        period_end = period_end or add_calendar_months(self._clock(), 1)
        record = await self._apply(
            user_id,
            {
                "tier": SubscriptionTier.PREMIUM,
                "status": SubscriptionStatus.ACTIVE,
                "current_period_end": period_end,
                "cancel_at_period_end": False,
                **_CLEARED_GRACE,
            },
        )
        await self._log(
            user_id, "Subscription activated", {"current_period_end": period_end.isoformat()}
        )
        return record

    async def mark_payment_failed(self, user_id: str) -> Optional[SubscriptionRecord]:
        """
        Enter past_due with a grace deadline. Returns None when nothing
        changed: the user is not premium, is canceled, or is already past
        due under the keep-deadline policy.
        """
        now = self._clock()
        statuses = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
        if self._repeat_failure_policy == RepeatFailurePolicy.EXTEND_DEADLINE:
            statuses.add(SubscriptionStatus.PAST_DUE)

        grace_end = now + self._grace_period
        record = await self._db.update_subscription(
            user_id,
            {
                "status": SubscriptionStatus.PAST_DUE,
                "payment_failed_at": now,
                "grace_period_end": grace_end,
                "downgrade_scheduled": True,
                "grace_warning_sent": False,
            },
            statuses=statuses,
            match={"tier": SubscriptionTier.PREMIUM},
        )
        if record is None:
            logger.info("Payment failure ignored; no transition", extra={"user_id": user_id})
            return None

        await self._log(
            user_id,
            "Payment failed; grace period started",
            {"grace_period_end": grace_end.isoformat()},
        )
        return record

    async def clear_payment_failure(self, user_id: str) -> bool:
        """
        Payment succeeded: back to active with grace fields cleared.
        Returns True only if the record was past due. Canceled records
        stay canceled.
        """
        recovered = await self._db.update_subscription(
            user_id,
            {"status": SubscriptionStatus.ACTIVE, **_CLEARED_GRACE},
            statuses={SubscriptionStatus.PAST_DUE},
            match={"tier": SubscriptionTier.PREMIUM},
        )
        if recovered is not None:
            await self._log(user_id, "Payment recovered; grace period cleared", {})
            return True

        # First successful charge after a trial
        await self._db.update_subscription(
            user_id,
            {"status": SubscriptionStatus.ACTIVE},
            statuses={SubscriptionStatus.TRIALING},
            match={"tier": SubscriptionTier.PREMIUM},
        )
        return False

    async def schedule_cancellation(self, user_id: str) -> Optional[SubscriptionRecord]:
        record = await self._db.update_subscription(
            user_id,
            {"cancel_at_period_end": True},
            statuses=PREMIUM_STATUSES,
        )
        if record is not None:
            await self._log(
                user_id,
                "Cancellation scheduled at period end",
                {"current_period_end": _iso(record.current_period_end)},
            )
        return record

    async def reactivate(self, user_id: str) -> Optional[SubscriptionRecord]:
        record = await self._db.update_subscription(
            user_id,
            {"cancel_at_period_end": False},
            statuses=PREMIUM_STATUSES,
            match={"cancel_at_period_end": True},
        )
        if record is not None:
            await self._log(user_id, "Scheduled cancellation withdrawn", {})
        return record

    async def downgrade_to_free(
        self,
        user_id: str,
        *,
        require_expired_grace: bool = False,
        reason: str = "grace_period_expired",
    ) -> Optional[SubscriptionRecord]:
        """
        Move a user to free/canceled and reset share credits to the free
        allotment in one store transaction. Returns None if the record was
        already canceled (or, with `require_expired_grace`, no longer has an
        expired grace deadline), so repeated or concurrent calls downgrade once.
        """
        now = self._clock()
        conditions: Dict[str, Any] = {
            "statuses": PREMIUM_STATUSES,
        }
        if require_expired_grace:
            conditions.update(
                statuses={SubscriptionStatus.PAST_DUE},
                match={"downgrade_scheduled": True},
                due_field="grace_period_end",
                due_by=now,
            )

        async with self._db.transaction():
            record = await self._db.update_subscription(
                user_id,
                {
                    "tier": SubscriptionTier.FREE,
                    "status": SubscriptionStatus.CANCELED,
                    "cancel_at_period_end": False,
                    "downgrade_scheduled": False,
                    "grace_period_end": None,
                },
                **conditions,
            )
            if record is None:
                return None
            await self._credit_ledger.reset_to_allotment(user_id, SubscriptionTier.FREE)
            await self._log(user_id, "Downgraded to free", {"reason": reason})
        return record

    async def sweep_ended_cancellations(self) -> SweepResult:
        """Cancel every subscription whose scheduled cancellation has come due."""
        now = self._clock()
        result = SweepResult()
        due = await self._db.find_subscriptions(
            statuses={SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING},
            match={"cancel_at_period_end": True},
            due_field="current_period_end",
            due_by=now,
        )
        for record in due:
            try:
                async with self._db.transaction():
                    updated = await self._db.update_subscription(
                        record.user_id,
                        {
                            "tier": SubscriptionTier.FREE,
                            "status": SubscriptionStatus.CANCELED,
                            "cancel_at_period_end": False,
                        },
                        statuses={SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING},
                        match={"cancel_at_period_end": True},
                        due_field="current_period_end",
                        due_by=now,
                    )
                    if updated is None:
                        continue
                    await self._credit_ledger.reset_to_allotment(
                        record.user_id, SubscriptionTier.FREE
                    )
                    await self._log(
                        record.user_id, "Subscription ended at period end", {}
                    )
                result.processed_count += 1
            except Exception as exc:
                logger.exception(
                    "Failed to end subscription", extra={"user_id": record.user_id}
                )
                result.errors.append(f"{record.user_id}: {exc}")
        return result

    async def _apply(self, user_id: str, changes: Dict[str, Any]) -> SubscriptionRecord:
        return await self._db.upsert_subscription(user_id, changes)

    async def _log(self, user_id: str, message: str, details: Dict[str, Any]) -> None:
        await self._ledger.log_subscription(user_id=user_id, message=message, details=details)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
