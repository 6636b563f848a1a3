from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from share_credits.db.mongo import MongoDBManager
from share_credits.errors import DuplicateRecordError, StorageTransientFailure
from share_credits.models.credits import CreditType
from share_credits.models.reward import RewardTransaction
from share_credits.models.subscription import SubscriptionStatus, SubscriptionTier
from share_credits.models.transaction import CreditTransaction, TransactionType


def _manager():
    database = MagicMock()
    collection = database.__getitem__.return_value
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    return MongoDBManager(database, use_transactions=False), collection


@pytest.mark.asyncio
async def test_decrement_is_conditional_on_balance():
    manager, collection = _manager()

    assert await manager.decrement_share_credits_if_available("u-1", CreditType.EXAM, 1) is None

    query, update = collection.find_one_and_update.call_args.args
    assert query == {"_id": "u-1", "exam_share_credits": {"$gte": 1}}
    assert update["$inc"] == {"exam_share_credits": -1}


@pytest.mark.asyncio
async def test_subscription_compare_and_set_filter():
    manager, collection = _manager()
    due_by = datetime(2026, 3, 13, tzinfo=timezone.utc)

    await manager.update_subscription(
        "u-1",
        {"tier": SubscriptionTier.FREE},
        statuses={SubscriptionStatus.PAST_DUE},
        match={"downgrade_scheduled": True},
        due_field="grace_period_end",
        due_by=due_by,
    )

    query, update = collection.find_one_and_update.call_args.args
    assert query == {
        "_id": "u-1",
        "status": {"$in": ["past_due"]},
        "downgrade_scheduled": True,
        "grace_period_end": {"$ne": None, "$lte": due_by},
    }
    assert update["$set"]["tier"] == "free"


@pytest.mark.asyncio
async def test_connection_errors_become_transient_failures():
    manager, collection = _manager()
    collection.find_one_and_update.side_effect = ConnectionFailure("no primary")

    with pytest.raises(StorageTransientFailure):
        await manager.increment_share_credits("u-1", CreditType.PRACTICE, 1)


@pytest.mark.asyncio
async def test_duplicate_reward_maps_to_duplicate_record():
    manager, collection = _manager()
    collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key", code=11000)
    reward = RewardTransaction(
        owner_user_id="owner", credit_type=CreditType.EXAM, source_completion_id="c-1"
    )

    with pytest.raises(DuplicateRecordError) as excinfo:
        await manager.add_reward_transaction(reward)

    assert excinfo.value.key == "c-1"


@pytest.mark.asyncio
async def test_duplicate_transaction_reference_maps_to_duplicate_record():
    manager, collection = _manager()
    collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key", code=11000)
    tx = CreditTransaction(
        user_id="u-1",
        credit_type=CreditType.EXAM,
        transaction_type=TransactionType.COMPENSATION,
        amount=1,
        balance_after=2,
        reference_id="compensation:tx-1",
    )

    with pytest.raises(DuplicateRecordError) as excinfo:
        await manager.add_transaction(tx)

    assert excinfo.value.key == "compensation:tx-1"


@pytest.mark.asyncio
async def test_transaction_reference_index_is_unique_for_set_values():
    manager, collection = _manager()
    collection.create_index = AsyncMock()

    await manager.ensure_indexes()

    [reference_index] = [
        c for c in collection.create_index.call_args_list if c.args[0] == [("reference_id", 1)]
    ]
    assert reference_index.kwargs["unique"] is True
    assert reference_index.kwargs["partialFilterExpression"] == {
        "reference_id": {"$type": "string"}
    }


@pytest.mark.asyncio
async def test_subscription_upsert_is_single_write():
    manager, collection = _manager()
    collection.find_one_and_update.return_value = {
        "_id": "u-1",
        "user_id": "u-1",
        "tier": "premium",
        "status": "active",
    }

    record = await manager.upsert_subscription(
        "u-1", {"tier": SubscriptionTier.PREMIUM, "status": SubscriptionStatus.ACTIVE}
    )

    assert record.status == SubscriptionStatus.ACTIVE
    collection.find_one_and_update.assert_awaited_once()
    call = collection.find_one_and_update.call_args
    query, update = call.args
    assert query == {"_id": "u-1"}
    assert call.kwargs["upsert"] is True
    assert update["$set"]["status"] == "active"
    assert update["$setOnInsert"]["user_id"] == "u-1"
    assert not set(update["$set"]) & set(update["$setOnInsert"])
