from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from ..timeutils import now_utc
from .base import DBSerializableModel


class NotificationType(str, Enum):
    REWARD_EARNED = "reward_earned"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    GRACE_PERIOD_WARNING = "grace_period_warning"
    DOWNGRADE_NOTICE = "downgrade_notice"
    COMPENSATION_FAILURE = "compensation_failure"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    Stored representation of notifications for auditing/monitoring.
    """

    collection_name: ClassVar[str] = "share_notifications"

    id: Optional[str] = Field(default=None)
    user_id: str
    notification_type: NotificationType
    payload: dict = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)
    sent_at: Optional[datetime] = None
