"""
Typed results returned by the engine's services.

Expected control-flow outcomes (insufficient credit, duplicate grant,
limit reached) travel in these values instead of exceptions.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .credits import CreditType
from .reward import RewardTransaction
from .subscription import SubscriptionTier


class LedgerError(str, Enum):
    INSUFFICIENT_CREDIT = "insufficient_credit"
    DUPLICATE_GRANT = "duplicate_grant"


class UsageAction(str, Enum):
    CREATE_EXAM = "create_exam"
    CREATE_PRACTICE = "create_practice"
    SHARE_EXAM = "share_exam"
    SHARE_PRACTICE = "share_practice"
    ACCESS_LIBRARY = "access_library"

    @classmethod
    def share_for(cls, credit_type: CreditType) -> "UsageAction":
        return cls.SHARE_EXAM if credit_type == CreditType.EXAM else cls.SHARE_PRACTICE

    @classmethod
    def create_for(cls, credit_type: CreditType) -> "UsageAction":
        return cls.CREATE_EXAM if credit_type == CreditType.EXAM else cls.CREATE_PRACTICE


class LimitReason(str, Enum):
    LIMIT_REACHED = "limit_reached"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    LIBRARY_LIMIT_REACHED = "library_limit_reached"


LIMIT_MESSAGES: Dict[LimitReason, str] = {
    LimitReason.LIMIT_REACHED: "Monthly limit reached for this action.",
    LimitReason.INSUFFICIENT_CREDIT: "Not enough share credits.",
    LimitReason.LIBRARY_LIMIT_REACHED: "Library access limit reached.",
}


class DebitResult(BaseModel):
    success: bool
    credit_type: CreditType
    new_balance: int
    error: Optional[LedgerError] = None
    transaction_id: Optional[str] = None


class GrantResult(BaseModel):
    granted: bool
    already_granted: bool = False
    reward: Optional[RewardTransaction] = None
    skipped_reason: Optional[str] = None


class GracePeriodStatus(BaseModel):
    in_grace_period: bool
    days_remaining: Optional[int] = None
    has_expired: bool = False
    will_downgrade: bool = False
    grace_period_end: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None


class SweepResult(BaseModel):
    processed_count: int = 0
    errors: List[str] = Field(default_factory=list)


class ResetResult(BaseModel):
    reset_performed: bool
    period: str


class LimitDecision(BaseModel):
    action: UsageAction
    allowed: bool
    tier: SubscriptionTier
    reason: Optional[LimitReason] = None
    message: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None


class ActionUsage(BaseModel):
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    excess: int = 0


class UsageSummary(BaseModel):
    user_id: str
    tier: SubscriptionTier
    usage: Dict[UsageAction, ActionUsage]
    exam_share_credits: int
    practice_share_credits: int
    over_limit: bool = False


class ShareAttempt(BaseModel):
    """Outcome of the permission + debit half of the share protocol."""

    user_id: str
    credit_type: CreditType
    permitted: bool
    reason: Optional[LimitReason] = None
    message: Optional[str] = None
    debit_transaction_id: Optional[str] = None
    remaining_credits: Optional[int] = None


class DeletedContentRewards(BaseModel):
    content_id: str
    rewards_earned: int
    rewards_still_valid: bool = True


class TickResult(BaseModel):
    grace_downgrades: SweepResult
    ended_cancellations: SweepResult
    warnings_sent: int = 0
