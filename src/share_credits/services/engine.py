from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.credits import CreditBalance, CreditType, UsageCounter
from ..models.results import (
    DeletedContentRewards,
    GracePeriodStatus,
    GrantResult,
    LimitDecision,
    ShareAttempt,
    TickResult,
    UsageAction,
    UsageSummary,
)
from ..models.reward import CompletionEvent
from ..models.transaction import CreditTransaction
from ..notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from ..timeutils import Clock, now_utc
from .credit_ledger import CreditLedger
from .grace_period_service import GracePeriodController
from .notification_service import NotificationService
from .reset_service import MonthlyResetProtocol
from .reward_service import RewardGrantEngine
from .share_service import ShareService
from .subscription_service import SubscriptionService
from .usage_limiter import UsageLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CREATION_COUNTERS = {
    CreditType.EXAM: UsageCounter.EXAMS_CREATED,
    CreditType.PRACTICE: UsageCounter.PRACTICES_CREATED,
}


class ShareCreditsEngine:
    """
    Entry point for everything outside the package: billing webhooks,
    completion events, share requests, limit checks and the periodic tick.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_ledger: CreditLedger,
        subscriptions: SubscriptionService,
        grace: GracePeriodController,
        rewards: RewardGrantEngine,
        limiter: UsageLimiter,
        reset: MonthlyResetProtocol,
        shares: ShareService,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.credit_ledger = credit_ledger
        self.subscriptions = subscriptions
        self.grace = grace
        self.rewards = rewards
        self.limiter = limiter
        self.reset = reset
        self.shares = shares
        self.notifications = notifications

    # Billing signals
    async def on_payment_failed(self, user_id: str) -> GracePeriodStatus:
        return await self.grace.mark_payment_failed(user_id)

    async def on_payment_succeeded(self, user_id: str) -> bool:
        return await self.grace.clear_payment_failure(user_id)

    # Content events
    async def on_completion(self, event: CompletionEvent) -> GrantResult:
        if not event.is_self_completion:
            # A reward credited to last month's row would be wiped by its reset
            await self.reset.reset_if_due(event.post_owner_id)
        return await self.rewards.grant(event)

    async def on_content_deleted(self, content_id: str) -> DeletedContentRewards:
        return await self.rewards.on_content_deleted(content_id)

    # Sharing
    async def on_share_attempt(
        self,
        user_id: str,
        credit_type: CreditType,
        correlation_id: Optional[str] = None,
    ) -> ShareAttempt:
        return await self.shares.attempt(user_id, credit_type, correlation_id)

    async def on_share_result(
        self,
        attempt: ShareAttempt,
        succeeded: bool,
        correlation_id: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        return await self.shares.complete(attempt, succeeded, correlation_id)

    async def share(
        self,
        user_id: str,
        credit_type: CreditType,
        side_effect: Callable[[], Awaitable[T]],
        correlation_id: Optional[str] = None,
    ) -> Tuple[ShareAttempt, Optional[T]]:
        return await self.shares.share(user_id, credit_type, side_effect, correlation_id)

    # Limits and usage
    async def can_perform(self, user_id: str, action: UsageAction) -> LimitDecision:
        await self.reset.reset_if_due(user_id)
        return await self.limiter.can_perform(user_id, action)

    async def usage_summary(self, user_id: str) -> UsageSummary:
        await self.reset.reset_if_due(user_id)
        return await self.limiter.usage_summary(user_id)

    async def get_balance(self, user_id: str) -> CreditBalance:
        await self.reset.reset_if_due(user_id)
        return await self.credit_ledger.read(user_id)

    async def record_creation(self, user_id: str, credit_type: CreditType) -> CreditBalance:
        await self.reset.reset_if_due(user_id)
        return await self.credit_ledger.record_usage(user_id, _CREATION_COUNTERS[credit_type])

    async def record_library_access(self, user_id: str) -> CreditBalance:
        await self.reset.reset_if_due(user_id)
        return await self.credit_ledger.record_usage(user_id, UsageCounter.LIBRARY_ACCESS_USED)

    async def grace_status(self, user_id: str) -> GracePeriodStatus:
        return await self.grace.get_status(user_id)

    async def tick(self) -> TickResult:
        """Periodic housekeeping. Idempotent; safe to run from several workers."""
        downgrades = await self.grace.sweep_expired()
        cancellations = await self.subscriptions.sweep_ended_cancellations()
        warnings = await self.grace.send_expiry_warnings()
        return TickResult(
            grace_downgrades=downgrades,
            ended_cancellations=cancellations,
            warnings_sent=warnings,
        )


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI,
            settings.MONGO_DB,
            use_transactions=settings.MONGO_USE_TRANSACTIONS,
        )
    logger.warning("SHARE_CREDITS_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def build_engine(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    clock: Clock = now_utc,
) -> ShareCreditsEngine:
    """Wire every service from configuration."""
    db = db or create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=settings.LEDGER_LOG_PATH)
    notifications = NotificationService(db=db, queue=queue or InMemoryNotificationQueue())
    credit_ledger = CreditLedger(
        db,
        ledger,
        notifications=notifications,
        clock=clock,
        compensation_max_attempts=settings.COMPENSATION_MAX_ATTEMPTS,
    )
    subscriptions = SubscriptionService(
        db,
        ledger,
        credit_ledger,
        clock=clock,
        grace_period_days=settings.GRACE_PERIOD_DAYS,
        trial_days=settings.TRIAL_DAYS,
        repeat_failure_policy=settings.REPEAT_PAYMENT_FAILURE_POLICY,
    )
    grace = GracePeriodController(
        db,
        subscriptions,
        notifications=notifications,
        clock=clock,
        warning_window_hours=settings.GRACE_WARNING_HOURS,
    )
    limiter = UsageLimiter(credit_ledger, subscriptions)
    reset = MonthlyResetProtocol(credit_ledger, subscriptions, clock=clock)
    return ShareCreditsEngine(
        db=db,
        ledger=ledger,
        credit_ledger=credit_ledger,
        subscriptions=subscriptions,
        grace=grace,
        rewards=RewardGrantEngine(db, credit_ledger, ledger, notifications=notifications),
        limiter=limiter,
        reset=reset,
        shares=ShareService(credit_ledger, limiter, reset),
        notifications=notifications,
    )
