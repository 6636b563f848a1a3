from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Iterable, Mapping, Optional

from ..models.credits import CreditBalance, CreditType, UsageCounter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reward import RewardTransaction
from ..models.subscription import SubscriptionRecord, SubscriptionStatus
from ..models.transaction import CreditTransaction


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Every mutating method is a single atomic operation in the backing store
    (conditional update, increment, insert guarded by a unique key). Callers
    needing several writes to commit together wrap them in `transaction()`.
    Nested `transaction()` blocks join the outermost one.

    Conditional methods return None when their condition did not match;
    that is how a losing concurrent caller learns it has nothing to do.
    Connectivity problems surface as `StorageTransientFailure`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # Credit balances
    @abstractmethod
    async def get_credit_balance(self, user_id: str) -> Optional[CreditBalance]: ...

    @abstractmethod
    async def create_credit_balance_if_missing(self, balance: CreditBalance) -> CreditBalance:
        """Insert `balance` unless a row exists; return the stored row either way."""
        ...

    @abstractmethod
    async def increment_share_credits(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        """Unconditional increment; None only if the row does not exist."""
        ...

    @abstractmethod
    async def decrement_share_credits_if_available(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        """Decrement only if the balance is at least `amount`; None otherwise."""
        ...

    @abstractmethod
    async def set_share_credits(
        self, user_id: str, exam_credits: int, practice_credits: int
    ) -> Optional[CreditBalance]: ...

    @abstractmethod
    async def reset_period_if_stale(
        self,
        user_id: str,
        period: str,
        exam_credits: int,
        practice_credits: int,
    ) -> Optional[CreditBalance]:
        """
        Set both balances, zero the per-period usage counters and stamp
        `last_reset_period = period`, only if the stored period differs.
        """
        ...

    @abstractmethod
    async def increment_usage(
        self, user_id: str, counter: UsageCounter, amount: int = 1
    ) -> Optional[CreditBalance]: ...

    # Credit transaction log
    @abstractmethod
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction: ...

    @abstractmethod
    async def get_transactions(self, user_id: str) -> Iterable[CreditTransaction]: ...

    @abstractmethod
    async def get_transaction_by_reference(
        self, reference_id: str
    ) -> Optional[CreditTransaction]: ...

    # Subscriptions
    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]: ...

    @abstractmethod
    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Upsert the whole record keyed by user id."""
        ...

    @abstractmethod
    async def upsert_subscription(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> SubscriptionRecord:
        """
        Apply `changes` in one atomic write, creating the record with
        default values for every other field if it does not exist.
        """
        ...

    @abstractmethod
    async def update_subscription(
        self,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        statuses: Optional[Collection[SubscriptionStatus]] = None,
        match: Optional[Mapping[str, Any]] = None,
        due_field: Optional[str] = None,
        due_by: Optional[datetime] = None,
    ) -> Optional[SubscriptionRecord]:
        """
        Compare-and-set. Applies `changes` only if the record's status is in
        `statuses`, every `match` field equals its value and `due_field` is
        set and not later than `due_by`. Returns the updated record or None.
        """
        ...

    @abstractmethod
    async def find_subscriptions(
        self,
        *,
        statuses: Optional[Collection[SubscriptionStatus]] = None,
        match: Optional[Mapping[str, Any]] = None,
        due_field: Optional[str] = None,
        due_by: Optional[datetime] = None,
        due_after: Optional[datetime] = None,
    ) -> Iterable[SubscriptionRecord]: ...

    # Rewards
    @abstractmethod
    async def add_reward_transaction(self, reward: RewardTransaction) -> RewardTransaction:
        """Insert; raises `DuplicateRecordError` if the completion id exists."""
        ...

    @abstractmethod
    async def get_reward_by_completion(
        self, completion_id: str
    ) -> Optional[RewardTransaction]: ...

    @abstractmethod
    async def get_reward_transactions(
        self, owner_user_id: str
    ) -> Iterable[RewardTransaction]: ...

    @abstractmethod
    async def get_rewards_for_content(
        self, content_id: str
    ) -> Iterable[RewardTransaction]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent: ...

    @abstractmethod
    async def get_notification_events(
        self, user_id: str
    ) -> Iterable[NotificationEvent]: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
