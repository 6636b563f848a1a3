from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import Field

from ..timeutils import now_utc
from .base import DBSerializableModel
from .credits import CreditType


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"
    COMPENSATION = "compensation"
    REWARD = "reward"
    PERIOD_RESET = "period_reset"
    DOWNGRADE_RESET = "downgrade_reset"


class CreditTransaction(DBSerializableModel):
    """
    Append-only record of one balance mutation, written in the same store
    transaction as the mutation itself.

    ``reference_id`` identifies the logical operation (``compensation:<debit id>``,
    ``reward:<completion id>``) so a caller whose write outcome is unknown can
    check whether it landed before retrying. It is unique when set, so a
    second write for the same operation is rejected.
    """

    collection_name: ClassVar[str] = "share_credit_transactions"
    unique_fields: ClassVar[Tuple[str, ...]] = ("reference_id",)

    id: Optional[str] = Field(default=None)
    user_id: str
    credit_type: Optional[CreditType] = None
    transaction_type: TransactionType
    amount: int = 0
    balance_after: int
    reference_id: Optional[str] = None
    description: Optional[str] = None
    timestamp: datetime = Field(default_factory=now_utc)
    metadata: Dict[str, Any] = Field(default_factory=dict)
