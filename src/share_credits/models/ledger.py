from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from ..timeutils import now_utc
from .base import DBSerializableModel


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"  # balance mutations
    SUBSCRIPTION = "subscription"  # lifecycle transitions
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Audit record of something the engine did or refused to do. Written
    through the DB manager (inside the caller's store transaction, if any)
    and mirrored to the JSON-lines ledger file.
    """

    collection_name: ClassVar[str] = "share_ledger"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Request id (X-Request-Id) tying entries of one operation together.",
    )
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now_utc)
