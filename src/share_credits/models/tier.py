"""
Static tier catalog: the numeric limits attached to each subscription tier.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .credits import CreditType
from .subscription import SubscriptionTier


class TierLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    exams_per_month: int = Field(ge=0)
    practices_per_month: int = Field(ge=0)
    exam_shares_per_month: int = Field(ge=0)
    practice_shares_per_month: int = Field(ge=0)
    library_access_count: Optional[int] = Field(
        default=None,
        ge=0,
        description="Lifetime library accesses; None means unlimited.",
    )

    def share_allotment(self, credit_type: CreditType) -> int:
        if credit_type == CreditType.EXAM:
            return self.exam_shares_per_month
        return self.practice_shares_per_month

    def creation_limit(self, credit_type: CreditType) -> int:
        if credit_type == CreditType.EXAM:
            return self.exams_per_month
        return self.practices_per_month


TIER_CATALOG: Mapping[SubscriptionTier, TierLimits] = MappingProxyType(
    {
        SubscriptionTier.FREE: TierLimits(
            exams_per_month=2,
            practices_per_month=3,
            exam_shares_per_month=2,
            practice_shares_per_month=3,
            library_access_count=1,
        ),
        SubscriptionTier.PREMIUM: TierLimits(
            exams_per_month=10,
            practices_per_month=15,
            exam_shares_per_month=10,
            practice_shares_per_month=15,
            library_access_count=None,
        ),
    }
)


def get_tier_limits(tier: SubscriptionTier) -> TierLimits:
    return TIER_CATALOG[tier]
