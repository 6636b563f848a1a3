from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Collection,
    Dict,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from ..errors import DuplicateRecordError, StorageTransientFailure
from ..models.base import DBSerializableModel
from ..models.credits import PERIOD_COUNTERS, CreditBalance, CreditType, UsageCounter
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.reward import RewardTransaction
from ..models.subscription import SubscriptionRecord, SubscriptionStatus
from ..models.transaction import CreditTransaction
from ..timeutils import now_utc
from .base import BaseDBManager


TModel = TypeVar("TModel", bound=DBSerializableModel)

_TRANSIENT_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Per-user rows (balances, subscriptions) use the user id as `_id`; other
    documents get a string `_id` mirrored in the model's `id` attribute,
    which keeps the rest of the system agnostic of MongoDB specifics.

    Single-document operations rely on MongoDB's document-level atomicity
    (`find_one_and_update` with a filter acting as the compare-and-set
    condition). `transaction()` opens a multi-document transaction on a
    session kept in a context variable, so every call made inside the block
    joins it. Transactions need a replica set; pass
    `use_transactions=False` for a standalone development server.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = True) -> None:
        self._db = database
        self._use_transactions = use_transactions
        self._session_var: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = True
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], use_transactions=use_transactions)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self._use_transactions or self._session_var.get() is not None:
            yield
            return
        with self._translate_errors():
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    token = self._session_var.set(session)
                    try:
                        yield
                    finally:
                        self._session_var.reset(token)

    async def ensure_indexes(self) -> None:
        with self._translate_errors():
            await self._db[RewardTransaction.collection_name].create_index(
                [("source_completion_id", ASCENDING)], unique=True
            )
            await self._db[RewardTransaction.collection_name].create_index(
                [("owner_user_id", ASCENDING)]
            )
            await self._db[RewardTransaction.collection_name].create_index(
                [("source_content_id", ASCENDING)]
            )
            await self._db[CreditTransaction.collection_name].create_index(
                [("user_id", ASCENDING), ("timestamp", ASCENDING)]
            )
            # Unique among string values only; rows without a reference store null
            await self._db[CreditTransaction.collection_name].create_index(
                [("reference_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"reference_id": {"$type": "string"}},
            )
            await self._db[SubscriptionRecord.collection_name].create_index(
                [("downgrade_scheduled", ASCENDING), ("grace_period_end", ASCENDING)]
            )
            await self._db[NotificationEvent.collection_name].create_index(
                [("user_id", ASCENDING)]
            )

    # Helper utilities
    @property
    def _session(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session_var.get()

    @staticmethod
    @contextmanager
    def _translate_errors() -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError:
            raise
        except ConnectionFailure as exc:
            raise StorageTransientFailure(str(exc)) from exc
        except OperationFailure as exc:
            if any(exc.has_error_label(label) for label in _TRANSIENT_LABELS):
                raise StorageTransientFailure(str(exc)) from exc
            raise

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_keyed(model: TModel, key: str) -> Dict[str, Any]:
        data = model.serialize_for_db()
        data["_id"] = data[key]
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        _id = data.pop("_id", None)
        if "id" in model_cls.model_fields and "id" not in data and _id is not None:
            data["id"] = str(_id)
        return model_cls.model_validate(data)

    @staticmethod
    def _plain(value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    async def _find_and_update(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> Optional[TModel]:
        col = self._db[model_cls.collection_name]
        with self._translate_errors():
            doc = await col.find_one_and_update(
                query,
                update,
                upsert=upsert,
                return_document=ReturnDocument.AFTER,
                session=self._session,
            )
        return self._decode(model_cls, doc)

    # Credit balances
    async def get_credit_balance(self, user_id: str) -> Optional[CreditBalance]:
        col = self._db[CreditBalance.collection_name]
        with self._translate_errors():
            doc = await col.find_one({"_id": user_id}, session=self._session)
        return self._decode(CreditBalance, doc)

    async def create_credit_balance_if_missing(self, balance: CreditBalance) -> CreditBalance:
        col = self._db[CreditBalance.collection_name]
        data = balance.serialize_for_db()
        with self._translate_errors():
            try:
                await col.update_one(
                    {"_id": balance.user_id},
                    {"$setOnInsert": data},
                    upsert=True,
                    session=self._session,
                )
            except DuplicateKeyError:
                # A concurrent upsert created it first
                pass
            doc = await col.find_one({"_id": balance.user_id}, session=self._session)
        stored = self._decode(CreditBalance, doc)
        return stored if stored is not None else balance

    async def increment_share_credits(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        return await self._find_and_update(
            CreditBalance,
            {"_id": user_id},
            {
                "$inc": {CreditBalance.credit_field(credit_type): amount},
                "$set": {"updated_at": now_utc()},
            },
        )

    async def decrement_share_credits_if_available(
        self, user_id: str, credit_type: CreditType, amount: int
    ) -> Optional[CreditBalance]:
        field = CreditBalance.credit_field(credit_type)
        return await self._find_and_update(
            CreditBalance,
            {"_id": user_id, field: {"$gte": amount}},
            {"$inc": {field: -amount}, "$set": {"updated_at": now_utc()}},
        )

    async def set_share_credits(
        self, user_id: str, exam_credits: int, practice_credits: int
    ) -> Optional[CreditBalance]:
        return await self._find_and_update(
            CreditBalance,
            {"_id": user_id},
            {
                "$set": {
                    "exam_share_credits": exam_credits,
                    "practice_share_credits": practice_credits,
                    "updated_at": now_utc(),
                }
            },
        )

    async def reset_period_if_stale(
        self,
        user_id: str,
        period: str,
        exam_credits: int,
        practice_credits: int,
    ) -> Optional[CreditBalance]:
        changes: Dict[str, Any] = {
            "exam_share_credits": exam_credits,
            "practice_share_credits": practice_credits,
            "last_reset_period": period,
            "updated_at": now_utc(),
        }
        changes.update({counter.value: 0 for counter in PERIOD_COUNTERS})
        return await self._find_and_update(
            CreditBalance,
            {"_id": user_id, "last_reset_period": {"$ne": period}},
            {"$set": changes},
        )

    async def increment_usage(
        self, user_id: str, counter: UsageCounter, amount: int = 1
    ) -> Optional[CreditBalance]:
        return await self._find_and_update(
            CreditBalance,
            {"_id": user_id},
            {"$inc": {counter.value: amount}, "$set": {"updated_at": now_utc()}},
        )

    # Credit transaction log
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        data = self._prepare_insert(tx)
        try:
            with self._translate_errors():
                await col.insert_one(data, session=self._session)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                CreditTransaction.collection_name, tx.reference_id or ""
            ) from exc
        return tx

    async def get_transactions(self, user_id: str) -> Iterable[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        with self._translate_errors():
            cursor = col.find({"user_id": user_id}, session=self._session).sort("timestamp", 1)
            docs = await cursor.to_list(length=None)
        return [self._decode(CreditTransaction, d) for d in docs]  # type: ignore[misc]

    async def get_transaction_by_reference(
        self, reference_id: str
    ) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        with self._translate_errors():
            doc = await col.find_one({"reference_id": reference_id}, session=self._session)
        return self._decode(CreditTransaction, doc)

    # Subscriptions
    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        col = self._db[SubscriptionRecord.collection_name]
        with self._translate_errors():
            doc = await col.find_one({"_id": user_id}, session=self._session)
        return self._decode(SubscriptionRecord, doc)

    async def save_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        col = self._db[SubscriptionRecord.collection_name]
        data = self._prepare_keyed(record, "user_id")
        with self._translate_errors():
            await col.replace_one(
                {"_id": record.user_id}, data, upsert=True, session=self._session
            )
        return record

    async def upsert_subscription(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> SubscriptionRecord:
        values = {k: self._plain(v) for k, v in changes.items()}
        values["updated_at"] = now_utc()
        defaults = SubscriptionRecord(user_id=user_id).serialize_for_db()
        on_insert = {k: v for k, v in defaults.items() if k not in values}
        update = {"$set": values, "$setOnInsert": on_insert}
        try:
            record = await self._find_and_update(
                SubscriptionRecord, {"_id": user_id}, update, upsert=True
            )
        except DuplicateKeyError:
            # Lost an insert race on _id; the row exists now
            record = await self._find_and_update(
                SubscriptionRecord, {"_id": user_id}, update, upsert=True
            )
        if record is None:
            raise LookupError(f"subscription upsert returned nothing for user {user_id}")
        return record

    def _subscription_query(
        self,
        statuses: Optional[Collection[SubscriptionStatus]],
        match: Optional[Mapping[str, Any]],
        due_field: Optional[str],
        due_by: Optional[datetime],
        due_after: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if statuses is not None:
            query["status"] = {"$in": [self._plain(s) for s in statuses]}
        for field, value in (match or {}).items():
            query[field] = self._plain(value)
        if due_field is not None:
            bounds: Dict[str, Any] = {"$ne": None}
            if due_by is not None:
                bounds["$lte"] = due_by
            if due_after is not None:
                bounds["$gt"] = due_after
            query[due_field] = bounds
        return query

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
        query = self._subscription_query(statuses, match, due_field, due_by)
        query["_id"] = user_id
        values = {k: self._plain(v) for k, v in changes.items()}
        values["updated_at"] = now_utc()
        return await self._find_and_update(SubscriptionRecord, query, {"$set": values})

    async def find_subscriptions(
        self,
        *,
        statuses: Optional[Collection[SubscriptionStatus]] = None,
        match: Optional[Mapping[str, Any]] = None,
        due_field: Optional[str] = None,
        due_by: Optional[datetime] = None,
        due_after: Optional[datetime] = None,
    ) -> Iterable[SubscriptionRecord]:
        col = self._db[SubscriptionRecord.collection_name]
        query = self._subscription_query(statuses, match, due_field, due_by, due_after)
        with self._translate_errors():
            docs = await col.find(query, session=self._session).to_list(length=None)
        return [self._decode(SubscriptionRecord, d) for d in docs]  # type: ignore[misc]

    # Rewards
    async def add_reward_transaction(self, reward: RewardTransaction) -> RewardTransaction:
        col = self._db[RewardTransaction.collection_name]
        data = self._prepare_insert(reward)
        try:
            with self._translate_errors():
                await col.insert_one(data, session=self._session)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                RewardTransaction.collection_name, reward.source_completion_id
            ) from exc
        return reward

    async def get_reward_by_completion(
        self, completion_id: str
    ) -> Optional[RewardTransaction]:
        col = self._db[RewardTransaction.collection_name]
        with self._translate_errors():
            doc = await col.find_one(
                {"source_completion_id": completion_id}, session=self._session
            )
        return self._decode(RewardTransaction, doc)

    async def get_reward_transactions(
        self, owner_user_id: str
    ) -> Iterable[RewardTransaction]:
        col = self._db[RewardTransaction.collection_name]
        with self._translate_errors():
            cursor = col.find({"owner_user_id": owner_user_id}, session=self._session)
            docs = await cursor.sort("created_at", 1).to_list(length=None)
        return [self._decode(RewardTransaction, d) for d in docs]  # type: ignore[misc]

    async def get_rewards_for_content(
        self, content_id: str
    ) -> Iterable[RewardTransaction]:
        col = self._db[RewardTransaction.collection_name]
        with self._translate_errors():
            cursor = col.find({"source_content_id": content_id}, session=self._session)
            docs = await cursor.to_list(length=None)
        return [self._decode(RewardTransaction, d) for d in docs]  # type: ignore[misc]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_insert(notification)
        with self._translate_errors():
            await col.insert_one(data, session=self._session)
        return notification

    async def get_notification_events(
        self, user_id: str
    ) -> Iterable[NotificationEvent]:
        col = self._db[NotificationEvent.collection_name]
        with self._translate_errors():
            cursor = col.find({"user_id": user_id}, session=self._session)
            docs = await cursor.sort("created_at", 1).to_list(length=None)
        return [self._decode(NotificationEvent, d) for d in docs]  # type: ignore[misc]

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        with self._translate_errors():
            await col.insert_one(data, session=self._session)
        return entry
