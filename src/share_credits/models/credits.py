from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from ..timeutils import now_utc
from .base import DBSerializableModel


class CreditType(str, Enum):
    EXAM = "exam"
    PRACTICE = "practice"


class UsageCounter(str, Enum):
    """Usage counters tracked on the balance row."""

    EXAMS_CREATED = "exams_created"
    PRACTICES_CREATED = "practices_created"
    LIBRARY_ACCESS_USED = "library_access_used"


# Counters zeroed by the monthly reset; library access is lifetime.
PERIOD_COUNTERS = (UsageCounter.EXAMS_CREATED, UsageCounter.PRACTICES_CREATED)


class CreditBalance(DBSerializableModel):
    """
    Per-user share-credit balances plus the usage counters read by the limiter.

    Balances are only mutated through the credit ledger (debit, credit,
    resets); they never go below zero.
    """

    collection_name: ClassVar[str] = "share_credit_balances"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    exam_share_credits: int = Field(default=0, ge=0)
    practice_share_credits: int = Field(default=0, ge=0)
    last_reset_period: str = Field(description="Calendar month of the last reset, YYYY-MM.")
    exams_created: int = Field(default=0, ge=0)
    practices_created: int = Field(default=0, ge=0)
    library_access_used: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @staticmethod
    def credit_field(credit_type: CreditType) -> str:
        return f"{credit_type.value}_share_credits"

    def credits_for(self, credit_type: CreditType) -> int:
        return getattr(self, self.credit_field(credit_type))

    def usage(self, counter: UsageCounter) -> int:
        return getattr(self, counter.value)
