from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest
from pymongo.errors import DuplicateKeyError

from code_credits.db.mongo import MongoDBManager
from code_credits.errors import PersistenceFailure
from code_credits.models.user import CreditPool

from conftest import DAY, NOW


class FakeResult:
    def __init__(self, matched: int = 1) -> None:
        self.matched_count = matched
        self.modified_count = matched


class FakeCollection:
    """Records the documents sent by the manager and replays canned replies."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict, Any]] = []
        self.reply: Optional[dict] = None
        self.duplicate_keys = 0

    async def find_one_and_update(self, query, update, return_document=None):
        self.calls.append(("find_one_and_update", query, update))
        return self.reply

    async def update_one(self, query, update, upsert=False):
        self.calls.append(("update_one", query, update))
        if upsert and self.duplicate_keys:
            self.duplicate_keys -= 1
            raise DuplicateKeyError("E11000 duplicate key error")
        return FakeResult()

    async def delete_one(self, query):
        self.calls.append(("delete_one", query, None))
        return FakeResult()


class FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def mongo_db():
    return FakeDatabase()


@pytest.fixture
def mongo(mongo_db):
    return MongoDBManager(mongo_db, lock_ttl_seconds=30, lock_wait_seconds=5)


def _promo(amount: int) -> dict:
    return {
        "id": "entry-1",
        "amount": amount,
        "offer_name": "launch",
        "start_date": NOW - DAY,
        "end_date": NOW + DAY,
    }


# In-memory backend


@pytest.mark.asyncio
async def test_memory_user_lock_serializes_and_is_dropped_when_idle(db):
    order = []

    async def hold(tag):
        async with db.user_lock("u-1"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(hold("a"), hold("b"), hold("c"))

    assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
    assert db._locks == {}


@pytest.mark.asyncio
async def test_memory_user_lock_is_dropped_after_error(db):
    with pytest.raises(RuntimeError):
        async with db.user_lock("u-1"):
            raise RuntimeError("boom")

    assert db._locks == {}
    async with db.user_lock("u-1"):
        assert set(db._locks) == {"u-1"}


# Mongo backend


@pytest.mark.asyncio
async def test_consume_promotional_credit_is_guarded_and_positional(mongo, mongo_db):
    users = mongo_db["code_credits_users"]
    users.reply = {"_id": "u-1", "credits": {"promotional": [_promo(amount=2)]}}

    entry = await mongo.consume_promotional_credit("u-1", "entry-1", NOW)

    assert entry.amount == 2
    op, query, update = users.calls[0]
    assert op == "find_one_and_update"
    assert query["_id"] == "u-1"
    match = query["credits.promotional"]["$elemMatch"]
    assert match["id"] == "entry-1"
    assert match["amount"] == {"$gt": 0}
    assert match["start_date"] == {"$lte": NOW}
    assert match["end_date"] == {"$gte": NOW}
    assert update["$inc"] == {"credits.promotional.$.amount": -1}
    assert len(users.calls) == 1


@pytest.mark.asyncio
async def test_consume_last_promotional_credit_pulls_entry(mongo, mongo_db):
    users = mongo_db["code_credits_users"]
    users.reply = {"_id": "u-1", "credits": {"promotional": [_promo(amount=0)]}}

    entry = await mongo.consume_promotional_credit("u-1", "entry-1", NOW)

    assert entry.amount == 0
    op, query, update = users.calls[1]
    assert op == "update_one"
    assert update == {"$pull": {"credits.promotional": {"id": "entry-1", "amount": {"$lte": 0}}}}


@pytest.mark.asyncio
async def test_consume_promotional_credit_without_match(mongo, mongo_db):
    assert await mongo.consume_promotional_credit("u-1", "entry-1", NOW) is None
    assert len(mongo_db["code_credits_users"].calls) == 1


@pytest.mark.asyncio
async def test_decrements_never_go_below_zero(mongo, mongo_db):
    users = mongo_db["code_credits_users"]
    users.reply = {"_id": "u-1", "balance_in_paisa": 1500, "credits": {"purchased": 3}}

    assert await mongo.adjust_balance("u-1", -500) == 1500
    assert await mongo.adjust_credit_pool("u-1", CreditPool.PURCHASED, 2) == 3

    _, debit_query, debit = users.calls[0]
    assert debit_query == {"_id": "u-1", "balance_in_paisa": {"$gte": 500}}
    assert debit["$inc"] == {"balance_in_paisa": -500}
    _, credit_query, credit = users.calls[1]
    assert credit_query == {"_id": "u-1"}
    assert credit["$inc"] == {"credits.purchased": 2}


@pytest.mark.asyncio
async def test_user_lock_waits_for_lease_then_releases_own_token(mongo, mongo_db):
    leases = mongo_db[MongoDBManager.LOCK_COLLECTION]
    leases.duplicate_keys = 2

    async with mongo.user_lock("u-1"):
        assert len(leases.calls) == 3

    _, acquire_query, acquire = leases.calls[2]
    assert acquire_query["_id"] == "u-1"
    assert "$lt" in acquire_query["expires_at"]
    token = acquire["$set"]["token"]
    assert leases.calls[-1] == ("delete_one", {"_id": "u-1", "token": token}, None)


@pytest.mark.asyncio
async def test_user_lock_gives_up_after_wait(mongo_db):
    mongo = MongoDBManager(mongo_db, lock_wait_seconds=0)
    mongo_db[MongoDBManager.LOCK_COLLECTION].duplicate_keys = 1

    with pytest.raises(PersistenceFailure):
        async with mongo.user_lock("u-1"):
            pass

    assert all(op != "delete_one" for op, _, _ in mongo_db[MongoDBManager.LOCK_COLLECTION].calls)
