"""
Exception taxonomy for the share-credit engine.

Expected outcomes such as an insufficient balance or a duplicate reward
grant are returned as typed results and never raised.
"""

from __future__ import annotations

from typing import Optional


class ShareCreditsError(Exception):
    """Base class for all engine errors."""


class StorageTransientFailure(ShareCreditsError):
    """
    The store could not confirm the outcome of an operation (connection
    loss, timeout, aborted transaction). The write may or may not have
    committed; re-read state before retrying.
    """


class DuplicateRecordError(ShareCreditsError):
    """A uniqueness constraint rejected an insert."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"duplicate key {key!r} in {collection}")
        self.collection = collection
        self.key = key


class CompensationFailure(ShareCreditsError):
    """
    A credit-back after a failed side effect could not be applied.
    The user's balance is short until reconciled manually.
    """

    def __init__(
        self,
        user_id: str,
        debit_transaction_id: Optional[str],
        attempts: int,
    ) -> None:
        super().__init__(
            f"compensation for debit {debit_transaction_id} of user {user_id} "
            f"failed after {attempts} attempt(s)"
        )
        self.user_id = user_id
        self.debit_transaction_id = debit_transaction_id
        self.attempts = attempts
