from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional

from ..db.base import BaseDBManager
from ..models.results import GracePeriodStatus, SweepResult
from ..models.subscription import SubscriptionRecord, SubscriptionStatus
from ..timeutils import Clock, now_utc
from .notification_service import NotificationService
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

_DAY_SECONDS = timedelta(days=1).total_seconds()


class GracePeriodController:
    """
    Drives the payment-failure grace period from the two billing signals
    and a periodic sweep. The deadline is a hard one: once
    ``grace_period_end`` passes, the next sweep downgrades the user to free.
    """

    def __init__(
        self,
        db: BaseDBManager,
        subscriptions: SubscriptionService,
        notifications: Optional[NotificationService] = None,
        clock: Clock = now_utc,
        warning_window_hours: int = 24,
    ) -> None:
        self._db = db
        self._subscriptions = subscriptions
        self._notifications = notifications
        self._clock = clock
        self._warning_window = timedelta(hours=warning_window_hours)

    async def get_status(self, user_id: str) -> GracePeriodStatus:
        record = await self._subscriptions.get_subscription(user_id)
        return self.status_of(record)

    def status_of(self, record: SubscriptionRecord) -> GracePeriodStatus:
        if record.status != SubscriptionStatus.PAST_DUE or record.grace_period_end is None:
            return GracePeriodStatus(in_grace_period=False)

        remaining = (record.grace_period_end - self._clock()).total_seconds()
        return GracePeriodStatus(
            in_grace_period=remaining > 0,
            days_remaining=max(0, math.ceil(remaining / _DAY_SECONDS)),
            has_expired=remaining <= 0,
            will_downgrade=record.downgrade_scheduled,
            grace_period_end=record.grace_period_end,
            payment_failed_at=record.payment_failed_at,
        )

    async def mark_payment_failed(self, user_id: str) -> GracePeriodStatus:
        record = await self._subscriptions.mark_payment_failed(user_id)
        if record is None:
            return await self.get_status(user_id)

        status = self.status_of(record)
        if self._notifications is not None:
            await self._notifications.notify_payment_failed(user_id, status.days_remaining or 0)
        return status

    async def clear_payment_failure(self, user_id: str) -> bool:
        cleared = await self._subscriptions.clear_payment_failure(user_id)
        if cleared and self._notifications is not None:
            await self._notifications.notify_payment_succeeded(user_id)
        return cleared

    async def sweep_expired(self) -> SweepResult:
        """
        Downgrade every user whose grace deadline has passed. Failures are
        collected per user; one bad record never stops the sweep. Safe to
        run concurrently with itself.
        """
        result = SweepResult()
        expired = await self._db.find_subscriptions(
            statuses={SubscriptionStatus.PAST_DUE},
            match={"downgrade_scheduled": True},
            due_field="grace_period_end",
            due_by=self._clock(),
        )
        for record in expired:
            try:
                downgraded = await self._subscriptions.downgrade_to_free(
                    record.user_id, require_expired_grace=True
                )
            except Exception as exc:
                logger.exception(
                    "Grace period downgrade failed", extra={"user_id": record.user_id}
                )
                result.errors.append(f"{record.user_id}: {exc}")
                continue

            if downgraded is None:
                # Lost the race to another sweep or a recovered payment
                continue
            result.processed_count += 1
            if self._notifications is not None:
                await self._notifications.notify_downgrade(
                    record.user_id, "grace_period_expired"
                )

        if result.processed_count or result.errors:
            logger.info(
                "Grace period sweep: %s downgraded, %s errors",
                result.processed_count,
                len(result.errors),
            )
        return result

    async def send_expiry_warnings(self) -> int:
        """Warn once per grace period when the deadline is inside the warning window."""
        now = self._clock()
        horizon = now + self._warning_window
        due = await self._db.find_subscriptions(
            statuses={SubscriptionStatus.PAST_DUE},
            match={"downgrade_scheduled": True, "grace_warning_sent": False},
            due_field="grace_period_end",
            due_by=horizon,
            due_after=now,
        )
        sent = 0
        for record in due:
            claimed = await self._db.update_subscription(
                record.user_id,
                {"grace_warning_sent": True},
                statuses={SubscriptionStatus.PAST_DUE},
                match={"grace_warning_sent": False},
                due_field="grace_period_end",
                due_by=horizon,
            )
            if claimed is None:
                continue
            sent += 1
            if self._notifications is not None:
                status = self.status_of(claimed)
                await self._notifications.notify_grace_period_warning(
                    record.user_id, status.days_remaining or 0
                )
        return sent
