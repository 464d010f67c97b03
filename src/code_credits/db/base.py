from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from ..models.execution import CreditSource, ExecutionRecord
from ..models.ledger import LedgerEntry
from ..models.plan import PlanId
from ..models.promotion import AdminGrant, Promotion
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import Transaction, TransactionType
from ..models.user import CreditPool, PromotionalCredit, UserAccount


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB) implement these methods.
    User documents are never saved whole: every change to balance or credit
    counters goes through a targeted atomic operation, so concurrent writers
    on different fields of the same user cannot lose each other's updates.

    Read-modify-write sequences that span several documents are serialized
    per user with `user_lock()`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    @abstractmethod
    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """
        Mutual exclusion for all state transitions of one user.
        Not re-entrant: never acquire it twice for the same user in one flow.
        """
        yield

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def list_user_ids(self) -> list[str]: ...

    @abstractmethod
    async def adjust_balance(self, user_id: str, delta: int) -> Optional[int]:
        """
        Atomically add `delta` (may be negative) to the wallet balance.
        Returns the new balance, or None if the user is missing or the
        balance would go below zero (nothing is changed in that case).
        """
        ...

    @abstractmethod
    async def adjust_credit_pool(
        self, user_id: str, pool: CreditPool, delta: int
    ) -> Optional[int]:
        """Same contract as `adjust_balance` for a finite credit pool."""
        ...

    @abstractmethod
    async def consume_promotional_credit(
        self, user_id: str, entry_id: str, now: datetime
    ) -> Optional[PromotionalCredit]:
        """
        Decrement one usable promotional entry by 1 and prune it at zero.
        Returns the entry as it was after the decrement, or None when the
        entry is missing, empty, or outside its validity window.
        """
        ...

    @abstractmethod
    async def restore_promotional_credit(
        self, user_id: str, entry: PromotionalCredit
    ) -> None:
        """Give back one unit taken by `consume_promotional_credit`."""
        ...

    @abstractmethod
    async def set_active_subscription(
        self, user_id: str, subscription_id: Optional[str]
    ) -> None: ...

    @abstractmethod
    async def set_auto_renew(self, user_id: str, enabled: bool) -> None: ...

    @abstractmethod
    async def add_promotional_entry(
        self, user_id: str, entry: PromotionalCredit, only_missing: bool = True
    ) -> bool:
        """Append an entry; with `only_missing`, skip users already holding its offer."""
        ...

    @abstractmethod
    async def add_promotional_entry_to_users(
        self, entry: PromotionalCredit, only_missing: bool = True
    ) -> int:
        """Bulk append to every user. Returns the number of users changed."""
        ...

    @abstractmethod
    async def update_promotional_entries(
        self,
        offer_name: str,
        amount: int,
        start_date: datetime,
        end_date: datetime,
    ) -> int: ...

    @abstractmethod
    async def remove_promotional_entries(self, offer_name: str) -> int: ...

    @abstractmethod
    async def remove_expired_promotional_entries(self, now: datetime) -> int: ...

    @abstractmethod
    async def count_users_with_offer(self, offer_name: str) -> int: ...

    # Subscription operations
    @abstractmethod
    async def add_subscription(self, sub: Subscription) -> Subscription: ...

    @abstractmethod
    async def update_subscription(self, sub: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def get_active_subscriptions(self, user_id: str) -> list[Subscription]:
        """All rows with active=True, most recently started first."""
        ...

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        active = await self.get_active_subscriptions(user_id)
        return active[0] if active else None

    @abstractmethod
    async def get_scheduled_subscription(self, user_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def get_user_subscriptions(
        self, user_id: str, plan: Optional[PlanId] = None
    ) -> list[Subscription]:
        """History for a user, oldest first."""
        ...

    @abstractmethod
    async def deactivate_subscriptions(
        self,
        user_id: str,
        status: SubscriptionStatus,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    @abstractmethod
    async def get_due_scheduled_subscriptions(self, now: datetime) -> list[Subscription]: ...

    @abstractmethod
    async def get_lapsed_active_subscriptions(self, now: datetime) -> list[Subscription]: ...

    # Execution records
    @abstractmethod
    async def add_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]: ...

    @abstractmethod
    async def count_executions(
        self,
        user_id: str,
        source: CreditSource,
        start: datetime,
        end: datetime,
    ) -> int:
        """Billed records (credits_used > 0) with start <= created_at < end."""
        ...

    @abstractmethod
    async def get_executions(self, user_id: str, limit: int = 50) -> list[ExecutionRecord]: ...

    # Transaction / ledger operations
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(
        self,
        user_id: str,
        types: Optional[Iterable[TransactionType]] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Newest first."""
        ...

    # Promotions
    @abstractmethod
    async def add_promotion(self, promotion: Promotion) -> Promotion: ...

    @abstractmethod
    async def get_promotion(self, promotion_id: str) -> Optional[Promotion]: ...

    @abstractmethod
    async def get_promotion_by_offer_name(self, offer_name: str) -> Optional[Promotion]: ...

    @abstractmethod
    async def update_promotion(self, promotion: Promotion) -> Promotion: ...

    @abstractmethod
    async def delete_promotion(self, promotion_id: str) -> None: ...

    @abstractmethod
    async def get_promotions(self) -> list[Promotion]: ...

    @abstractmethod
    async def get_active_promotions(self, now: datetime) -> list[Promotion]: ...

    # Audit
    @abstractmethod
    async def add_admin_grant(self, grant: AdminGrant) -> AdminGrant: ...

    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entries(
        self,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]: ...
