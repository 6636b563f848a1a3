from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from ..timeutils import now_utc
from .base import DBSerializableModel
from .credits import CreditType


class CompletionEvent(BaseModel):
    """A user finished another user's shared exam or practice set."""

    completion_id: str
    post_owner_id: str
    completing_user_id: str
    content_type: CreditType
    content_id: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)

    @property
    def is_self_completion(self) -> bool:
        return self.completing_user_id == self.post_owner_id


class RewardTransaction(DBSerializableModel):
    """
    Durable proof that a reward was earned. One per source completion;
    never mutated or deleted, even after the shared content is deleted.
    """

    collection_name: ClassVar[str] = "share_reward_transactions"
    unique_fields: ClassVar[Tuple[str, ...]] = ("source_completion_id",)

    id: Optional[str] = Field(default=None)
    owner_user_id: str
    credit_type: CreditType
    amount: int = 1
    source_completion_id: str
    source_content_id: Optional[str] = None
    completing_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)

    @model_validator(mode="after")
    def _single_unit(self) -> "RewardTransaction":
        if self.amount != 1:
            raise ValueError("reward amount is always 1")
        return self

    @classmethod
    def from_event(cls, event: CompletionEvent) -> "RewardTransaction":
        return cls(
            owner_user_id=event.post_owner_id,
            credit_type=event.content_type,
            source_completion_id=event.completion_id,
            source_content_id=event.content_id,
            completing_user_id=event.completing_user_id,
        )
