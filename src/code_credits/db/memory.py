from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from .base import BaseDBManager
from ..models.base import utcnow
from ..models.execution import CreditSource, ExecutionRecord
from ..models.ledger import LedgerEntry
from ..models.plan import PlanId
from ..models.promotion import AdminGrant, Promotion
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import Transaction, TransactionType
from ..models.user import CreditPool, PromotionalCredit, UserAccount


TModel = TypeVar("TModel", bound=BaseModel)


def _copy(model: Optional[TModel]) -> Optional[TModel]:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Reads return deep copies so callers cannot mutate stored state
    behind the manager's back, which mirrors what a real store does.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._transactions: List[Transaction] = []
        self._promotions: Dict[str, Promotion] = {}
        self._admin_grants: List[AdminGrant] = []
        self._ledger: List[LedgerEntry] = []
        # user_id -> (lock, holders and waiters); dropped once nobody uses it
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(user_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[user_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[user_id]
            if users == 1:
                del self._locks[user_id]
            else:
                self._locks[user_id] = (lock, users - 1)

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            user.id = self._next_id()
        self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return _copy(self._users.get(user_id))

    async def list_user_ids(self) -> list[str]:
        return list(self._users)

    async def adjust_balance(self, user_id: str, delta: int) -> Optional[int]:
        user = self._users.get(user_id)
        if user is None or user.balance_in_paisa + delta < 0:
            return None
        user.balance_in_paisa += delta
        user.updated_at = utcnow()
        return user.balance_in_paisa

    async def adjust_credit_pool(
        self, user_id: str, pool: CreditPool, delta: int
    ) -> Optional[int]:
        user = self._users.get(user_id)
        if user is None:
            return None
        current = user.credits.pool(pool)
        if current + delta < 0:
            return None
        setattr(user.credits, pool.value, current + delta)
        user.updated_at = utcnow()
        return current + delta

    async def consume_promotional_credit(
        self, user_id: str, entry_id: str, now: datetime
    ) -> Optional[PromotionalCredit]:
        user = self._users.get(user_id)
        if user is None:
            return None
        for entry in user.credits.promotional:
            if entry.id == entry_id and entry.is_usable(now):
                entry.amount -= 1
                after = entry.model_copy()
                if entry.amount == 0:
                    user.credits.promotional.remove(entry)
                user.updated_at = utcnow()
                return after
        return None

    async def restore_promotional_credit(
        self, user_id: str, entry: PromotionalCredit
    ) -> None:
        user = self._users.get(user_id)
        if user is None:
            return
        for existing in user.credits.promotional:
            if existing.id == entry.id:
                existing.amount += 1
                return
        user.credits.promotional.append(entry.model_copy(update={"amount": 1}))

    async def set_active_subscription(
        self, user_id: str, subscription_id: Optional[str]
    ) -> None:
        user = self._users.get(user_id)
        if user is not None:
            user.active_subscription_id = subscription_id
            user.updated_at = utcnow()

    async def set_auto_renew(self, user_id: str, enabled: bool) -> None:
        user = self._users.get(user_id)
        if user is not None:
            user.auto_renew = enabled
            user.updated_at = utcnow()

    async def add_promotional_entry(
        self, user_id: str, entry: PromotionalCredit, only_missing: bool = True
    ) -> bool:
        user = self._users.get(user_id)
        if user is None:
            return False
        if only_missing and entry.offer_name in user.credits.claimed_offers:
            return False
        user.credits.promotional.append(entry.model_copy())
        if entry.offer_name not in user.credits.claimed_offers:
            user.credits.claimed_offers.append(entry.offer_name)
        return True

    async def add_promotional_entry_to_users(
        self, entry: PromotionalCredit, only_missing: bool = True
    ) -> int:
        changed = 0
        for user_id in list(self._users):
            if await self.add_promotional_entry(user_id, entry, only_missing):
                changed += 1
        return changed

    async def update_promotional_entries(
        self,
        offer_name: str,
        amount: int,
        start_date: datetime,
        end_date: datetime,
    ) -> int:
        changed = 0
        for user in self._users.values():
            touched = False
            for entry in user.credits.promotional:
                if entry.offer_name == offer_name:
                    entry.amount = amount
                    entry.start_date = start_date
                    entry.end_date = end_date
                    touched = True
            changed += touched
        return changed

    async def remove_promotional_entries(self, offer_name: str) -> int:
        for user in self._users.values():
            if offer_name in user.credits.claimed_offers:
                user.credits.claimed_offers.remove(offer_name)
        return self._prune(lambda e: e.offer_name == offer_name)

    async def remove_expired_promotional_entries(self, now: datetime) -> int:
        return self._prune(lambda e: e.is_expired(now))

    def _prune(self, predicate) -> int:
        changed = 0
        for user in self._users.values():
            kept = [e for e in user.credits.promotional if not predicate(e)]
            if len(kept) != len(user.credits.promotional):
                user.credits.promotional = kept
                changed += 1
        return changed

    async def count_users_with_offer(self, offer_name: str) -> int:
        return sum(
            1
            for user in self._users.values()
            if any(e.offer_name == offer_name for e in user.credits.promotional)
        )

    # Subscription operations
    async def add_subscription(self, sub: Subscription) -> Subscription:
        if sub.id is None:
            sub.id = uuid4().hex
        self._subscriptions[sub.id] = sub.model_copy(deep=True)
        return sub

    async def update_subscription(self, sub: Subscription) -> Subscription:
        if sub.id is None or sub.id not in self._subscriptions:
            raise ValueError("Subscription must exist to be updated")
        sub.updated_at = utcnow()
        self._subscriptions[sub.id] = sub.model_copy(deep=True)
        return sub

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return _copy(self._subscriptions.get(subscription_id))

    async def delete_subscription(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    def _user_subs(self, user_id: str) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.user_id == user_id]

    async def get_active_subscriptions(self, user_id: str) -> list[Subscription]:
        active = [s for s in self._user_subs(user_id) if s.active]
        active.sort(key=lambda s: s.start_date, reverse=True)
        return [s.model_copy(deep=True) for s in active]

    async def get_scheduled_subscription(self, user_id: str) -> Optional[Subscription]:
        for sub in self._user_subs(user_id):
            if sub.status is SubscriptionStatus.SCHEDULED:
                return _copy(sub)
        return None

    async def get_user_subscriptions(
        self, user_id: str, plan: Optional[PlanId] = None
    ) -> list[Subscription]:
        subs = [s for s in self._user_subs(user_id) if plan is None or s.plan is plan]
        subs.sort(key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in subs]

    async def deactivate_subscriptions(
        self,
        user_id: str,
        status: SubscriptionStatus,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        changed = 0
        for sub in self._user_subs(user_id):
            if sub.active and sub.id != exclude_id:
                sub.active = False
                sub.status = status
                sub.updated_at = now or utcnow()
                changed += 1
        return changed

    async def get_due_scheduled_subscriptions(self, now: datetime) -> list[Subscription]:
        due = [
            s
            for s in self._subscriptions.values()
            if s.status is SubscriptionStatus.SCHEDULED and s.start_date <= now
        ]
        due.sort(key=lambda s: s.start_date)
        return [s.model_copy(deep=True) for s in due]

    async def get_lapsed_active_subscriptions(self, now: datetime) -> list[Subscription]:
        lapsed = [s for s in self._subscriptions.values() if s.active and s.end_date <= now]
        lapsed.sort(key=lambda s: s.end_date)
        return [s.model_copy(deep=True) for s in lapsed]

    # Execution records
    async def add_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.id in self._executions:
            raise ValueError(f"Execution {record.id} already recorded")
        self._executions[record.id] = record.model_copy(deep=True)
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return _copy(self._executions.get(execution_id))

    async def count_executions(
        self,
        user_id: str,
        source: CreditSource,
        start: datetime,
        end: datetime,
    ) -> int:
        return sum(
            1
            for r in self._executions.values()
            if r.user_id == user_id
            and r.credit_source is source
            and r.credits_used > 0
            and start <= r.created_at < end
        )

    async def get_executions(self, user_id: str, limit: int = 50) -> list[ExecutionRecord]:
        records = [r for r in self._executions.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    # Transaction operations
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions.append(tx.model_copy(deep=True))
        return tx

    async def get_transactions(
        self,
        user_id: str,
        types: Optional[Iterable[TransactionType]] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        wanted = set(types) if types is not None else None
        txs = [
            t
            for t in self._transactions
            if t.user_id == user_id and (wanted is None or t.transaction_type in wanted)
        ]
        # Stable sort keeps insertion order for equal timestamps
        txs = list(reversed(txs))
        txs.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            txs = txs[:limit]
        return [t.model_copy(deep=True) for t in txs]

    # Promotions
    async def add_promotion(self, promotion: Promotion) -> Promotion:
        if promotion.id is None:
            promotion.id = self._next_id()
        self._promotions[promotion.id] = promotion.model_copy(deep=True)
        return promotion

    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        return _copy(self._promotions.get(promotion_id))

    async def get_promotion_by_offer_name(self, offer_name: str) -> Optional[Promotion]:
        for promo in self._promotions.values():
            if promo.offer_name == offer_name:
                return _copy(promo)
        return None

    async def update_promotion(self, promotion: Promotion) -> Promotion:
        if promotion.id is None:
            raise ValueError("Promotion must have id to be updated")
        self._promotions[promotion.id] = promotion.model_copy(deep=True)
        return promotion

    async def delete_promotion(self, promotion_id: str) -> None:
        self._promotions.pop(promotion_id, None)

    async def get_promotions(self) -> list[Promotion]:
        promos = sorted(self._promotions.values(), key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in promos]

    async def get_active_promotions(self, now: datetime) -> list[Promotion]:
        return [p.model_copy(deep=True) for p in self._promotions.values() if p.is_active(now)]

    # Audit
    async def add_admin_grant(self, grant: AdminGrant) -> AdminGrant:
        if grant.id is None:
            grant.id = self._next_id()
        self._admin_grants.append(grant.model_copy(deep=True))
        return grant

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
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
        found = [
            e
            for e in reversed(self._ledger)
            if all(v is None or getattr(e, k) == v for k, v in wanted.items())
        ]
        if limit is not None:
            found = found[:limit]
        return [e.model_copy(deep=True) for e in found]
