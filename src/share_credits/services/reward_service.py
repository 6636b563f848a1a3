from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import DuplicateRecordError
from ..logging.ledger_logger import LedgerLogger
from ..models.results import DeletedContentRewards, GrantResult
from ..models.reward import CompletionEvent, RewardTransaction
from ..models.transaction import TransactionType
from .credit_ledger import CreditLedger
from .notification_service import NotificationService

logger = logging.getLogger(__name__)


class RewardGrantEngine:
    """
    Grants one share credit to a content owner per completion by another user.

    The completion id is the idempotency key: the reward row is inserted
    under a unique constraint and the owner's balance is credited in the
    same store transaction, so a replayed or concurrent event finds the
    existing row and credits nothing.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credit_ledger: CreditLedger,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._db = db
        self._credit_ledger = credit_ledger
        self._ledger = ledger
        self._notifications = notifications

    async def grant(self, event: CompletionEvent) -> GrantResult:
        if event.is_self_completion:
            return GrantResult(granted=False, skipped_reason="self_completion")

        # The balance row is created outside the transaction so a rollback
        # of the grant never removes it.
        await self._credit_ledger.ensure_balance(event.post_owner_id)
        reward = RewardTransaction.from_event(event)
        try:
            async with self._db.transaction():
                reward = await self._db.add_reward_transaction(reward)
                await self._credit_ledger.credit(
                    event.post_owner_id,
                    event.content_type,
                    reward.amount,
                    transaction_type=TransactionType.REWARD,
                    reference_id=f"reward:{event.completion_id}",
                    description="Reward for completion of shared content",
                )
        except DuplicateRecordError:
            existing = await self._db.get_reward_by_completion(event.completion_id)
            logger.info(
                "Reward already granted for completion %s",
                event.completion_id,
                extra={"user_id": event.post_owner_id},
            )
            return GrantResult(granted=False, already_granted=True, reward=existing)

        if self._notifications is not None:
            await self._notifications.notify_reward_earned(
                event.post_owner_id, event.content_type, event.completion_id
            )
        return GrantResult(granted=True, reward=reward)

    async def on_content_deleted(self, content_id: str) -> DeletedContentRewards:
        """Earned rewards stay with their owners; the deletion is only recorded."""
        rewards = list(await self._db.get_rewards_for_content(content_id))
        await self._ledger.log_system(
            message="Shared content deleted; earned rewards retained",
            details={"content_id": content_id, "rewards_earned": len(rewards)},
        )
        return DeletedContentRewards(content_id=content_id, rewards_earned=len(rewards))

    async def list_rewards(self, owner_user_id: str) -> Iterable[RewardTransaction]:
        return await self._db.get_reward_transactions(owner_user_id)
