from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ..models.credits import CreditType
from ..models.results import LIMIT_MESSAGES, LimitReason, ShareAttempt, UsageAction
from ..models.transaction import CreditTransaction
from .credit_ledger import CreditLedger
from .reset_service import MonthlyResetProtocol
from .usage_limiter import UsageLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ShareService:
    """
    Debit-first share protocol: reset if a new month started, check the
    limit, debit one credit, run the share, and give the credit back if
    the share did not happen.
    """

    def __init__(
        self,
        credit_ledger: CreditLedger,
        limiter: UsageLimiter,
        reset: MonthlyResetProtocol,
    ) -> None:
        self._credit_ledger = credit_ledger
        self._limiter = limiter
        self._reset = reset

    async def attempt(
        self,
        user_id: str,
        credit_type: CreditType,
        correlation_id: Optional[str] = None,
    ) -> ShareAttempt:
        await self._reset.reset_if_due(user_id)

        decision = await self._limiter.can_perform(user_id, UsageAction.share_for(credit_type))
        if not decision.allowed:
            return ShareAttempt(
                user_id=user_id,
                credit_type=credit_type,
                permitted=False,
                reason=decision.reason,
                message=decision.message,
            )

        result = await self._credit_ledger.debit(
            user_id,
            credit_type,
            1,
            description=f"Share {credit_type.value}",
            correlation_id=correlation_id,
        )
        if not result.success:
            # Balance went to zero between the check and the debit
            return ShareAttempt(
                user_id=user_id,
                credit_type=credit_type,
                permitted=False,
                reason=LimitReason.INSUFFICIENT_CREDIT,
                message=LIMIT_MESSAGES[LimitReason.INSUFFICIENT_CREDIT],
                remaining_credits=result.new_balance,
            )

        return ShareAttempt(
            user_id=user_id,
            credit_type=credit_type,
            permitted=True,
            debit_transaction_id=result.transaction_id,
            remaining_credits=result.new_balance,
        )

    async def complete(
        self,
        attempt: ShareAttempt,
        succeeded: bool,
        correlation_id: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        """Compensate a permitted attempt whose share failed; otherwise a no-op."""
        if succeeded or not attempt.permitted or attempt.debit_transaction_id is None:
            return None

        logger.info(
            "Share failed after debit; compensating",
            extra={"user_id": attempt.user_id, "debit_transaction_id": attempt.debit_transaction_id},
        )
        return await self._credit_ledger.compensate(
            attempt.user_id,
            attempt.credit_type,
            attempt.debit_transaction_id,
            correlation_id=correlation_id,
        )

    async def share(
        self,
        user_id: str,
        credit_type: CreditType,
        side_effect: Callable[[], Awaitable[T]],
        correlation_id: Optional[str] = None,
    ) -> Tuple[ShareAttempt, Optional[T]]:
        """
        Run `side_effect` between the debit and its compensation. Exceptions
        from the side effect propagate after the credit has been returned.
        """
        attempt = await self.attempt(user_id, credit_type, correlation_id)
        if not attempt.permitted:
            return attempt, None

        try:
            value = await side_effect()
        except Exception:
            await self.complete(attempt, succeeded=False, correlation_id=correlation_id)
            raise
        return attempt, value
