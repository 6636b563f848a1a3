from __future__ import annotations

import logging

from ..models.results import ResetResult
from ..timeutils import Clock, now_utc, period_key
from .credit_ledger import CreditLedger
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class MonthlyResetProtocol:
    """
    Lazy calendar-month reset of share credits and monthly usage counters.

    Runs on access rather than on a schedule. The store only applies the
    reset while the row still carries an older period, so concurrent
    callers in a new month reset exactly once.
    """

    def __init__(
        self,
        credit_ledger: CreditLedger,
        subscriptions: SubscriptionService,
        clock: Clock = now_utc,
    ) -> None:
        self._credit_ledger = credit_ledger
        self._subscriptions = subscriptions
        self._clock = clock

    async def reset_if_due(self, user_id: str) -> ResetResult:
        period = period_key(self._clock())
        tier = await self._subscriptions.effective_tier(user_id)
        balance = await self._credit_ledger.ensure_balance(user_id, tier)
        if balance.last_reset_period == period:
            return ResetResult(reset_performed=False, period=period)

        reset = await self._credit_ledger.reset_for_period(user_id, period, tier)
        if reset is None:
            return ResetResult(reset_performed=False, period=period)

        logger.info("Monthly reset to %s allotment for %s", tier.value, period, extra={"user_id": user_id})
        return ResetResult(reset_performed=True, period=period)
