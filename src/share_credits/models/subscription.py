from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, FrozenSet, Optional

from pydantic import Field

from ..timeutils import now_utc
from .base import DBSerializableModel


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses under which a premium tier keeps premium limits.
# past_due keeps access until the grace period expires.
PREMIUM_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
    }
)


class SubscriptionRecord(DBSerializableModel):
    """
    A user's subscription lifecycle state. One row per user, never deleted;
    canceled accounts keep a record with ``tier=free``.
    """

    collection_name: ClassVar[str] = "share_subscriptions"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    grace_period_end: Optional[datetime] = Field(
        default=None,
        description="Set only while past_due with a downgrade pending.",
    )
    downgrade_scheduled: bool = False
    grace_warning_sent: bool = False
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def retains_premium(self) -> bool:
        return self.tier == SubscriptionTier.PREMIUM and self.status in PREMIUM_STATUSES

    def tier_at(self, now: datetime) -> SubscriptionTier:
        """
        Tier to enforce at `now`. A past_due record whose grace period has
        run out, or a cancel-at-period-end record past its period end, is
        already free even before the sweep writes that down.
        """
        if not self.retains_premium:
            return SubscriptionTier.FREE
        if (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_end is not None
            and self.grace_period_end <= now
        ):
            return SubscriptionTier.FREE
        if (
            self.cancel_at_period_end
            and self.current_period_end is not None
            and self.current_period_end <= now
        ):
            return SubscriptionTier.FREE
        return SubscriptionTier.PREMIUM
