from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BaseDBManager
from ..errors import PersistenceFailure
from ..models.base import DBSerializableModel, utcnow
from ..models.execution import CreditSource, ExecutionRecord
from ..models.ledger import LedgerEntry
from ..models.plan import PlanId
from ..models.promotion import AdminGrant, Promotion
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import Transaction, TransactionType
from ..models.user import CreditPool, PromotionalCredit, UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

_PROMO_FIELD = "credits.promotional"
_CLAIMED_FIELD = "credits.claimed_offers"


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Counter mutations use conditional `$inc` updates so a decrement can never
    drive a balance or pool below zero, even across processes. Per-user
    serialization is a lease document in `code_credits_user_locks`; a lease
    left behind by a crashed process expires after `lock_ttl_seconds`.

    Note: The `transaction()` context manager is currently a no-op. Services
    compensate failed multi-document writes explicitly instead.
    """

    LOCK_COLLECTION = "code_credits_user_locks"

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        lock_ttl_seconds: int = 60,
        lock_wait_seconds: float = 10.0,
    ) -> None:
        self._db = database
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._lock_wait = lock_wait_seconds

    @classmethod
    def from_client_uri(
        cls,
        uri: str,
        db_name: str,
        lock_ttl_seconds: int = 60,
        lock_wait_seconds: float = 10.0,
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], lock_ttl_seconds, lock_wait_seconds)

    async def ensure_indexes(self) -> None:
        await self._db[ExecutionRecord.collection_name].create_index(
            [("user_id", ASCENDING), ("credit_source", ASCENDING), ("created_at", ASCENDING)]
        )
        await self._db[Subscription.collection_name].create_index(
            [("user_id", ASCENDING), ("active", ASCENDING)]
        )
        await self._db[Subscription.collection_name].create_index(
            [("status", ASCENDING), ("start_date", ASCENDING)]
        )
        await self._db[Transaction.collection_name].create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._db[Promotion.collection_name].create_index("offer_name", unique=True)
        await self._db[UserAccount.collection_name].create_index(f"{_PROMO_FIELD}.offer_name")
        await self._db[LedgerEntry.collection_name].create_index(
            [("user_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._db[LedgerEntry.collection_name].create_index("execution_id", sparse=True)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Individual document writes are atomic in MongoDB.
        yield

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        col = self._db[self.LOCK_COLLECTION]
        token = uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_wait
        while True:
            now = utcnow()
            try:
                # Matches only an expired lease; a live one makes the upsert collide on _id
                await col.update_one(
                    {"_id": user_id, "expires_at": {"$lt": now}},
                    {"$set": {"token": token, "expires_at": now + self._lock_ttl}},
                    upsert=True,
                )
                break
            except DuplicateKeyError:
                if loop.time() >= deadline:
                    raise PersistenceFailure(
                        f"Timed out waiting for lock on user {user_id}", user_id=user_id
                    ) from None
                await asyncio.sleep(0.05)
        try:
            yield
        finally:
            await col.delete_one({"_id": user_id, "token": token})

    # Helper utilities
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
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        return model_cls.model_validate(data)

    async def _find_many(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        sort: Optional[list] = None,
        limit: Optional[int] = None,
    ) -> list[TModel]:
        cursor = self._db[model_cls.collection_name].find(query)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        data = self._prepare_insert(user)
        await col.insert_one(data)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id})
        return self._decode(UserAccount, doc)

    async def list_user_ids(self) -> list[str]:
        col = self._db[UserAccount.collection_name]
        docs = await col.find({}, {"_id": 1}).to_list(length=None)
        return [str(d["_id"]) for d in docs]

    async def _conditional_inc(self, user_id: str, field: str, delta: int) -> Optional[int]:
        col = self._db[UserAccount.collection_name]
        query: Dict[str, Any] = {"_id": user_id}
        if delta < 0:
            query[field] = {"$gte": -delta}
        doc = await col.find_one_and_update(
            query,
            {"$inc": {field: delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        value: Any = doc
        for part in field.split("."):
            value = value[part]
        return int(value)

    async def adjust_balance(self, user_id: str, delta: int) -> Optional[int]:
        return await self._conditional_inc(user_id, "balance_in_paisa", delta)

    async def adjust_credit_pool(
        self, user_id: str, pool: CreditPool, delta: int
    ) -> Optional[int]:
        return await self._conditional_inc(user_id, f"credits.{pool.value}", delta)

    async def consume_promotional_credit(
        self, user_id: str, entry_id: str, now: datetime
    ) -> Optional[PromotionalCredit]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one_and_update(
            {
                "_id": user_id,
                _PROMO_FIELD: {
                    "$elemMatch": {
                        "id": entry_id,
                        "amount": {"$gt": 0},
                        "start_date": {"$lte": now},
                        "end_date": {"$gte": now},
                    }
                },
            },
            {"$inc": {f"{_PROMO_FIELD}.$.amount": -1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        raw = next(e for e in doc["credits"]["promotional"] if e["id"] == entry_id)
        entry = PromotionalCredit.model_validate(raw)
        if entry.amount <= 0:
            await col.update_one(
                {"_id": user_id},
                {"$pull": {_PROMO_FIELD: {"id": entry_id, "amount": {"$lte": 0}}}},
            )
        return entry

    async def restore_promotional_credit(
        self, user_id: str, entry: PromotionalCredit
    ) -> None:
        col = self._db[UserAccount.collection_name]
        result = await col.update_one(
            {"_id": user_id, f"{_PROMO_FIELD}.id": entry.id},
            {"$inc": {f"{_PROMO_FIELD}.$.amount": 1}},
        )
        if result.matched_count == 0:
            restored = entry.model_copy(update={"amount": 1})
            await col.update_one(
                {"_id": user_id}, {"$push": {_PROMO_FIELD: restored.model_dump()}}
            )

    async def set_active_subscription(
        self, user_id: str, subscription_id: Optional[str]
    ) -> None:
        col = self._db[UserAccount.collection_name]
        await col.update_one(
            {"_id": user_id},
            {"$set": {"active_subscription_id": subscription_id, "updated_at": utcnow()}},
        )

    async def set_auto_renew(self, user_id: str, enabled: bool) -> None:
        col = self._db[UserAccount.collection_name]
        await col.update_one(
            {"_id": user_id}, {"$set": {"auto_renew": enabled, "updated_at": utcnow()}}
        )

    @staticmethod
    def _missing_offer(offer_name: str) -> Dict[str, Any]:
        return {_CLAIMED_FIELD: {"$ne": offer_name}}

    @staticmethod
    def _push_entry(entry: PromotionalCredit) -> Dict[str, Any]:
        return {
            "$push": {_PROMO_FIELD: entry.model_dump()},
            "$addToSet": {_CLAIMED_FIELD: entry.offer_name},
        }

    async def add_promotional_entry(
        self, user_id: str, entry: PromotionalCredit, only_missing: bool = True
    ) -> bool:
        col = self._db[UserAccount.collection_name]
        query: Dict[str, Any] = {"_id": user_id}
        if only_missing:
            query.update(self._missing_offer(entry.offer_name))
        result = await col.update_one(query, self._push_entry(entry))
        return result.modified_count > 0

    async def add_promotional_entry_to_users(
        self, entry: PromotionalCredit, only_missing: bool = True
    ) -> int:
        col = self._db[UserAccount.collection_name]
        query = self._missing_offer(entry.offer_name) if only_missing else {}
        result = await col.update_many(query, self._push_entry(entry))
        return result.modified_count

    async def update_promotional_entries(
        self,
        offer_name: str,
        amount: int,
        start_date: datetime,
        end_date: datetime,
    ) -> int:
        col = self._db[UserAccount.collection_name]
        result = await col.update_many(
            {f"{_PROMO_FIELD}.offer_name": offer_name},
            {
                "$set": {
                    f"{_PROMO_FIELD}.$[entry].amount": amount,
                    f"{_PROMO_FIELD}.$[entry].start_date": start_date,
                    f"{_PROMO_FIELD}.$[entry].end_date": end_date,
                }
            },
            array_filters=[{"entry.offer_name": offer_name}],
        )
        return result.modified_count

    async def remove_promotional_entries(self, offer_name: str) -> int:
        col = self._db[UserAccount.collection_name]
        result = await col.update_many(
            {f"{_PROMO_FIELD}.offer_name": offer_name},
            {"$pull": {_PROMO_FIELD: {"offer_name": offer_name}}},
        )
        await col.update_many(
            {_CLAIMED_FIELD: offer_name}, {"$pull": {_CLAIMED_FIELD: offer_name}}
        )
        return result.modified_count

    async def remove_expired_promotional_entries(self, now: datetime) -> int:
        col = self._db[UserAccount.collection_name]
        result = await col.update_many(
            {f"{_PROMO_FIELD}.end_date": {"$lt": now}},
            {"$pull": {_PROMO_FIELD: {"end_date": {"$lt": now}}}},
        )
        return result.modified_count

    async def count_users_with_offer(self, offer_name: str) -> int:
        col = self._db[UserAccount.collection_name]
        return await col.count_documents({f"{_PROMO_FIELD}.offer_name": offer_name})

    # Subscription operations
    async def add_subscription(self, sub: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        data = self._prepare_insert(sub)
        await col.insert_one(data)
        return sub

    async def update_subscription(self, sub: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        sub.updated_at = utcnow()
        data = self._prepare_update(sub)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False)
        return sub

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one({"_id": subscription_id})
        return self._decode(Subscription, doc)

    async def delete_subscription(self, subscription_id: str) -> None:
        col = self._db[Subscription.collection_name]
        await col.delete_one({"_id": subscription_id})

    async def get_active_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self._find_many(
            Subscription,
            {"user_id": user_id, "active": True},
            sort=[("start_date", DESCENDING)],
        )

    async def get_scheduled_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one(
            {"user_id": user_id, "status": SubscriptionStatus.SCHEDULED.value}
        )
        return self._decode(Subscription, doc)

    async def get_user_subscriptions(
        self, user_id: str, plan: Optional[PlanId] = None
    ) -> list[Subscription]:
        query: Dict[str, Any] = {"user_id": user_id}
        if plan is not None:
            query["plan"] = plan.value
        return await self._find_many(Subscription, query, sort=[("created_at", ASCENDING)])

    async def deactivate_subscriptions(
        self,
        user_id: str,
        status: SubscriptionStatus,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        col = self._db[Subscription.collection_name]
        query: Dict[str, Any] = {"user_id": user_id, "active": True}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        result = await col.update_many(
            query,
            {"$set": {"active": False, "status": status.value, "updated_at": now or utcnow()}},
        )
        return result.modified_count

    async def get_due_scheduled_subscriptions(self, now: datetime) -> list[Subscription]:
        return await self._find_many(
            Subscription,
            {"status": SubscriptionStatus.SCHEDULED.value, "start_date": {"$lte": now}},
            sort=[("start_date", ASCENDING)],
        )

    async def get_lapsed_active_subscriptions(self, now: datetime) -> list[Subscription]:
        return await self._find_many(
            Subscription,
            {"active": True, "end_date": {"$lte": now}},
            sort=[("end_date", ASCENDING)],
        )

    # Execution records
    async def add_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        col = self._db[ExecutionRecord.collection_name]
        data = self._prepare_insert(record)
        await col.insert_one(data)
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        col = self._db[ExecutionRecord.collection_name]
        doc = await col.find_one({"_id": execution_id})
        return self._decode(ExecutionRecord, doc)

    async def count_executions(
        self,
        user_id: str,
        source: CreditSource,
        start: datetime,
        end: datetime,
    ) -> int:
        col = self._db[ExecutionRecord.collection_name]
        return await col.count_documents(
            {
                "user_id": user_id,
                "credit_source": source.value,
                "credits_used": {"$gt": 0},
                "created_at": {"$gte": start, "$lt": end},
            }
        )

    async def get_executions(self, user_id: str, limit: int = 50) -> list[ExecutionRecord]:
        return await self._find_many(
            ExecutionRecord,
            {"user_id": user_id},
            sort=[("created_at", DESCENDING)],
            limit=limit,
        )

    # Transaction / ledger operations
    async def add_transaction(self, tx: Transaction) -> Transaction:
        col = self._db[Transaction.collection_name]
        data = self._prepare_insert(tx)
        await col.insert_one(data)
        return tx

    async def get_transactions(
        self,
        user_id: str,
        types: Optional[Iterable[TransactionType]] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        query: Dict[str, Any] = {"user_id": user_id}
        if types is not None:
            query["transaction_type"] = {"$in": [t.value for t in types]}
        return await self._find_many(
            Transaction, query, sort=[("created_at", DESCENDING)], limit=limit
        )

    # Promotions
    async def add_promotion(self, promotion: Promotion) -> Promotion:
        col = self._db[Promotion.collection_name]
        data = self._prepare_insert(promotion)
        await col.insert_one(data)
        return promotion

    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        col = self._db[Promotion.collection_name]
        doc = await col.find_one({"_id": promotion_id})
        return self._decode(Promotion, doc)

    async def get_promotion_by_offer_name(self, offer_name: str) -> Optional[Promotion]:
        col = self._db[Promotion.collection_name]
        doc = await col.find_one({"offer_name": offer_name})
        return self._decode(Promotion, doc)

    async def update_promotion(self, promotion: Promotion) -> Promotion:
        col = self._db[Promotion.collection_name]
        data = self._prepare_update(promotion)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False)
        return promotion

    async def delete_promotion(self, promotion_id: str) -> None:
        col = self._db[Promotion.collection_name]
        await col.delete_one({"_id": promotion_id})

    async def get_promotions(self) -> list[Promotion]:
        return await self._find_many(Promotion, {}, sort=[("created_at", DESCENDING)])

    async def get_active_promotions(self, now: datetime) -> list[Promotion]:
        return await self._find_many(
            Promotion, {"start_date": {"$lte": now}, "end_date": {"$gte": now}}
        )

    # Audit
    async def add_admin_grant(self, grant: AdminGrant) -> AdminGrant:
        col = self._db[AdminGrant.collection_name]
        data = self._prepare_insert(grant)
        await col.insert_one(data)
        return grant

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data)
        return entry

    async def get_ledger_entries(
        self,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        wanted = {
            "user_id": user_id,
            "execution_id": execution_id,
            "subscription_id": subscription_id,
        }
        query = {k: v for k, v in wanted.items() if v is not None}
        return await self._find_many(
            LedgerEntry, query, sort=[("created_at", DESCENDING)], limit=limit
        )
