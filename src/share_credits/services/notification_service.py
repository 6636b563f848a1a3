from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..models.credits import CreditType
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.

    Notifications are fire-and-forget relative to the ledger: a failure to
    store or enqueue one is logged and reported as None, never raised into
    the operation that triggered it.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue

    async def notify_reward_earned(
        self, user_id: str, credit_type: CreditType, completion_id: str
    ) -> Optional[NotificationEvent]:
        return await self._dispatch(
            user_id,
            NotificationType.REWARD_EARNED,
            {"credit_type": credit_type.value, "completion_id": completion_id, "amount": 1},
        )

    async def notify_payment_failed(
        self, user_id: str, days_remaining: int
    ) -> Optional[NotificationEvent]:
        return await self._dispatch(
            user_id,
            NotificationType.PAYMENT_FAILED,
            {"days_remaining": days_remaining},
        )

    async def notify_payment_succeeded(self, user_id: str) -> Optional[NotificationEvent]:
        return await self._dispatch(user_id, NotificationType.PAYMENT_SUCCEEDED, {})

    async def notify_grace_period_warning(
        self, user_id: str, days_remaining: int
    ) -> Optional[NotificationEvent]:
        return await self._dispatch(
            user_id,
            NotificationType.GRACE_PERIOD_WARNING,
            {"days_remaining": days_remaining},
        )

    async def notify_downgrade(self, user_id: str, reason: str) -> Optional[NotificationEvent]:
        return await self._dispatch(
            user_id,
            NotificationType.DOWNGRADE_NOTICE,
            {"reason": reason},
        )

    async def notify_compensation_failure(
        self, user_id: str, details: Dict[str, Any]
    ) -> Optional[NotificationEvent]:
        return await self._dispatch(
            user_id,
            NotificationType.COMPENSATION_FAILURE,
            details,
        )

    async def _dispatch(
        self,
        user_id: str,
        notification_type: NotificationType,
        payload: Dict[str, Any],
    ) -> Optional[NotificationEvent]:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        try:
            event = await self._db.add_notification_event(event)
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": event.notification_type.value,
                    "user_id": user_id,
                    "payload": event.payload,
                }
            )
        except Exception:
            logger.exception(
                "Failed to dispatch %s notification",
                notification_type.value,
                extra={"user_id": user_id},
            )
            return None
        return event
