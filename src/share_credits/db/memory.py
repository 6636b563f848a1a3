from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Dict, Iterable, List, Mapping, Optional

from ..errors import DuplicateRecordError
from ..models.credits import PERIOD_COUNTERS, CreditBalance, CreditType, UsageCounter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reward import RewardTransaction
from ..models.subscription import SubscriptionRecord, SubscriptionStatus
from ..models.transaction import CreditTransaction
from ..timeutils import now_utc
from .base import BaseDBManager


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    All access goes through one asyncio lock. `transaction()` holds that lock
    for its whole body, snapshots state on entry and restores it if the body
    raises, so concurrent coroutines observe the same atomicity a real store
    would give them.
    """

    def __init__(self) -> None:
        self._balances: Dict[str, CreditBalance] = {}
        self._transactions: List[CreditTransaction] = []
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._rewards: Dict[str, RewardTransaction] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._lock_held: ContextVar[bool] = ContextVar(
            f"inmemory_lock_held_{id(self)}", default=False
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[None]:
        if self._lock_held.get():
            yield
            return
        async with self._lock:
            token = self._lock_held.set(True)
            try:
                yield
            finally:
                self._lock_held.reset(token)

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "_balances": self._balances,
                "_transactions": self._transactions,
                "_subscriptions": self._subscriptions,
                "_rewards": self._rewards,
                "_notifications": self._notifications,
                "_ledger": self._ledger,
                "_id_counter": self._id_counter,
            }
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._lock_held.get():
            # Nested: join the enclosing transaction
            yield
            return
        async with self._atomic():
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                for attr, value in snapshot.items():
                    setattr(self, attr, value)
                raise

    # Credit balances
    async def get_credit_balance(self, user_id: str) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            return balance.model_copy() if balance else None

    async def create_credit_balance_if_missing(self, balance: CreditBalance) -> CreditBalance:
        async with self._atomic():
            existing = self._balances.get(balance.user_id)
            if existing is None:
                existing = balance.model_copy()
                self._balances[balance.user_id] = existing
            return existing.model_copy()

    async def increment_share_credits(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            if balance is None:
                return None
            field = CreditBalance.credit_field(credit_type)
            setattr(balance, field, getattr(balance, field) + amount)
            balance.updated_at = now_utc()
            return balance.model_copy()

    async def decrement_share_credits_if_available(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            if balance is None:
                return None
            field = CreditBalance.credit_field(credit_type)
            current = getattr(balance, field)
            if current < amount:
                return None
            setattr(balance, field, current - amount)
            balance.updated_at = now_utc()
            return balance.model_copy()

    async def set_share_credits(
        self, user_id: str, exam_credits: int, practice_credits: int
    ) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            if balance is None:
                return None
            balance.exam_share_credits = exam_credits
            balance.practice_share_credits = practice_credits
            balance.updated_at = now_utc()
            return balance.model_copy()

    async def reset_period_if_stale(
        self,
        user_id: str,
        period: str,
        exam_credits: int,
        practice_credits: int,
    ) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            if balance is None or balance.last_reset_period == period:
                return None
            balance.exam_share_credits = exam_credits
            balance.practice_share_credits = practice_credits
            for counter in PERIOD_COUNTERS:
                setattr(balance, counter.value, 0)
            balance.last_reset_period = period
            balance.updated_at = now_utc()
            return balance.model_copy()

    async def increment_usage(
        self, user_id: str, counter: UsageCounter, amount: int = 1
    ) -> Optional[CreditBalance]:
        async with self._atomic():
            balance = self._balances.get(user_id)
            if balance is None:
                return None
            setattr(balance, counter.value, balance.usage(counter) + amount)
            balance.updated_at = now_utc()
            return balance.model_copy()

    # Credit transaction log
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        async with self._atomic():
            if tx.reference_id is not None and any(
                t.reference_id == tx.reference_id for t in self._transactions
            ):
                raise DuplicateRecordError(CreditTransaction.collection_name, tx.reference_id)
            if tx.id is None:
                tx.id = self._next_id()
            self._transactions.append(tx.model_copy())
            return tx

    async def get_transactions(self, user_id: str) -> Iterable[CreditTransaction]:
        async with self._atomic():
            return [t.model_copy() for t in self._transactions if t.user_id == user_id]

    async def get_transaction_by_reference(
        self, reference_id: str
    ) -> Optional[CreditTransaction]:
        async with self._atomic():
            for tx in self._transactions:
                if tx.reference_id == reference_id:
                    return tx.model_copy()
            return None

    # Subscriptions
    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        async with self._atomic():
            record = self._subscriptions.get(user_id)
            return record.model_copy() if record else None

    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        async with self._atomic():
            self._subscriptions[record.user_id] = record.model_copy()
            return record

    async def upsert_subscription(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> SubscriptionRecord:
        async with self._atomic():
            record = self._subscriptions.get(user_id) or SubscriptionRecord(user_id=user_id)
            updated = record.model_copy(update={**changes, "updated_at": now_utc()})
            self._subscriptions[user_id] = updated
            return updated.model_copy()

    @staticmethod
    def _matches(
        record: SubscriptionRecord,
        statuses: Optional[Collection[SubscriptionStatus]],
        match: Optional[Mapping[str, Any]],
        due_field: Optional[str],
        due_by: Optional[datetime],
        due_after: Optional[datetime] = None,
    ) -> bool:
        if statuses is not None and record.status not in statuses:
            return False
        for field, expected in (match or {}).items():
            if getattr(record, field) != expected:
                return False
        if due_field is not None:
            due = getattr(record, due_field)
            if due is None:
                return False
            if due_by is not None and due > due_by:
                return False
            if due_after is not None and due <= due_after:
                return False
        return True

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
        async with self._atomic():
            record = self._subscriptions.get(user_id)
            if record is None or not self._matches(record, statuses, match, due_field, due_by):
                return None
            updated = record.model_copy(update={**changes, "updated_at": now_utc()})
            self._subscriptions[user_id] = updated
            return updated.model_copy()

    async def find_subscriptions(
        self,
        *,
        statuses: Optional[Collection[SubscriptionStatus]] = None,
        match: Optional[Mapping[str, Any]] = None,
        due_field: Optional[str] = None,
        due_by: Optional[datetime] = None,
        due_after: Optional[datetime] = None,
    ) -> Iterable[SubscriptionRecord]:
        async with self._atomic():
            return [
                r.model_copy()
                for r in self._subscriptions.values()
                if self._matches(r, statuses, match, due_field, due_by, due_after)
            ]

    # Rewards
    async def add_reward_transaction(self, reward: RewardTransaction) -> RewardTransaction:
        async with self._atomic():
            if reward.source_completion_id in self._rewards:
                raise DuplicateRecordError(
                    RewardTransaction.collection_name, reward.source_completion_id
                )
            if reward.id is None:
                reward.id = self._next_id()
            self._rewards[reward.source_completion_id] = reward.model_copy()
            return reward

    async def get_reward_by_completion(
        self, completion_id: str
    ) -> Optional[RewardTransaction]:
        async with self._atomic():
            reward = self._rewards.get(completion_id)
            return reward.model_copy() if reward else None

    async def get_reward_transactions(
        self, owner_user_id: str
    ) -> Iterable[RewardTransaction]:
        async with self._atomic():
            return [
                r.model_copy() for r in self._rewards.values() if r.owner_user_id == owner_user_id
            ]

    async def get_rewards_for_content(
        self, content_id: str
    ) -> Iterable[RewardTransaction]:
        async with self._atomic():
            return [
                r.model_copy() for r in self._rewards.values() if r.source_content_id == content_id
            ]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        async with self._atomic():
            if notification.id is None:
                notification.id = self._next_id()
            self._notifications.append(notification.model_copy())
            return notification

    async def get_notification_events(
        self, user_id: str
    ) -> Iterable[NotificationEvent]:
        async with self._atomic():
            return [n.model_copy() for n in self._notifications if n.user_id == user_id]

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._atomic():
            if entry.id is None:
                entry.id = self._next_id()
            self._ledger.append(entry)
            return entry
