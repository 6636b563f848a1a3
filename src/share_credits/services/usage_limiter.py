"""
Usage limits per tier, including what happens after a downgrade.

Nothing created or earned before a downgrade is revoked. A user over the
new tier's limits keeps everything and is simply refused new actions
until the monthly reset or an upgrade brings them back under.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Tuple

from ..models.credits import CreditBalance, CreditType, UsageCounter
from ..models.results import (
    LIMIT_MESSAGES,
    ActionUsage,
    LimitDecision,
    LimitReason,
    UsageAction,
    UsageSummary,
)
from ..models.subscription import SubscriptionTier
from ..models.tier import get_tier_limits
from .credit_ledger import CreditLedger
from .subscription_service import SubscriptionService

_CREATION: Mapping[UsageAction, Tuple[CreditType, UsageCounter]] = {
    UsageAction.CREATE_EXAM: (CreditType.EXAM, UsageCounter.EXAMS_CREATED),
    UsageAction.CREATE_PRACTICE: (CreditType.PRACTICE, UsageCounter.PRACTICES_CREATED),
}

_SHARING: Mapping[UsageAction, CreditType] = {
    UsageAction.SHARE_EXAM: CreditType.EXAM,
    UsageAction.SHARE_PRACTICE: CreditType.PRACTICE,
}


class UsageLimiter:
    def __init__(self, credit_ledger: CreditLedger, subscriptions: SubscriptionService) -> None:
        self._credit_ledger = credit_ledger
        self._subscriptions = subscriptions

    async def can_perform(self, user_id: str, action: UsageAction) -> LimitDecision:
        tier = await self._subscriptions.effective_tier(user_id)
        balance = await self._credit_ledger.ensure_balance(user_id, tier)
        return self.decide(action, tier, balance)

    @staticmethod
    def decide(
        action: UsageAction, tier: SubscriptionTier, balance: CreditBalance
    ) -> LimitDecision:
        """Pure decision from a tier and a balance snapshot."""
        limits = get_tier_limits(tier)

        if action in _CREATION:
            credit_type, counter = _CREATION[action]
            limit = limits.creation_limit(credit_type)
            used = balance.usage(counter)
            return _decision(action, tier, used < limit, LimitReason.LIMIT_REACHED, limit, used)

        if action in _SHARING:
            credit_type = _SHARING[action]
            available = balance.credits_for(credit_type)
            return _decision(
                action,
                tier,
                available > 0,
                LimitReason.INSUFFICIENT_CREDIT,
                limits.share_allotment(credit_type),
                None,
            )

        if action == UsageAction.ACCESS_LIBRARY:
            limit = limits.library_access_count
            used = balance.usage(UsageCounter.LIBRARY_ACCESS_USED)
            allowed = limit is None or used < limit
            return _decision(
                action, tier, allowed, LimitReason.LIBRARY_LIMIT_REACHED, limit, used
            )

        raise ValueError(f"unknown action: {action!r}")

    async def usage_summary(self, user_id: str) -> UsageSummary:
        tier = await self._subscriptions.effective_tier(user_id)
        balance = await self._credit_ledger.ensure_balance(user_id, tier)
        limits = get_tier_limits(tier)

        usage: Dict[UsageAction, ActionUsage] = {}
        for action, (credit_type, counter) in _CREATION.items():
            usage[action] = _usage(balance.usage(counter), limits.creation_limit(credit_type))

        for action, credit_type in _SHARING.items():
            allotment = limits.share_allotment(credit_type)
            available = balance.credits_for(credit_type)
            # Rewards can lift the balance above the allotment
            usage[action] = ActionUsage(
                used=max(0, allotment - available),
                limit=allotment,
                remaining=available,
            )

        usage[UsageAction.ACCESS_LIBRARY] = _usage(
            balance.usage(UsageCounter.LIBRARY_ACCESS_USED), limits.library_access_count
        )

        return UsageSummary(
            user_id=user_id,
            tier=tier,
            usage=usage,
            exam_share_credits=balance.exam_share_credits,
            practice_share_credits=balance.practice_share_credits,
            over_limit=any(u.excess > 0 for u in usage.values()),
        )


def _decision(
    action: UsageAction,
    tier: SubscriptionTier,
    allowed: bool,
    denial: LimitReason,
    limit: Optional[int],
    used: Optional[int],
) -> LimitDecision:
    if allowed:
        return LimitDecision(action=action, allowed=True, tier=tier, limit=limit, used=used)
    return LimitDecision(
        action=action,
        allowed=False,
        tier=tier,
        reason=denial,
        message=LIMIT_MESSAGES[denial],
        limit=limit,
        used=used,
    )


def _usage(used: int, limit: Optional[int]) -> ActionUsage:
    if limit is None:
        return ActionUsage(used=used, limit=None, remaining=None)
    return ActionUsage(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        excess=max(0, used - limit),
    )
