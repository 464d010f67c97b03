from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

from ..catalog import PlanCatalog
from ..db.base import BaseDBManager
from ..errors import InsufficientCredits, InvalidInput, PersistenceFailure, UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.execution import (
    CreditDecision,
    CreditSource,
    ExecutionRecord,
    ExecutionStatus,
    Exhausted,
)
from ..models.plan import PlanId
from ..models.promotion import AdminGrant
from ..models.status import CreditStatus, SubscriptionSummary
from ..models.subscription import Subscription
from ..models.transaction import Transaction, TransactionType
from ..models.user import CreditPool, UserAccount
from .promotion_service import active_entries
from .transaction_ledger import TransactionLedger


Undo = Optional[Callable[[], Awaitable[None]]]


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    """UTC calendar day containing `now`, as a half-open interval."""
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class CreditLedger:
    """
    Decides which credit pool funds an execution and commits its consumption.

    Free and paid-plan daily quotas are metered by counting today's billed
    execution records: remaining = allotment - count(records for the user,
    source and UTC day). Nothing is ever reset; a new day is a new bucket.
    Purchased, granted and promotional pools are finite counters decremented
    with atomic decrement-if-positive operations.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        transactions: TransactionLedger,
        catalog: PlanCatalog,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._transactions = transactions
        self._catalog = catalog

    # Selection

    async def select_source(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Union[CreditDecision, Exhausted]:
        now = now or utcnow()
        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            sub = await self._current_subscription(user_id, now)
            return await self._select(user, sub, now)

    async def _select(
        self, user: UserAccount, sub: Optional[Subscription], now: datetime
    ) -> Union[CreditDecision, Exhausted]:
        user_id = user.id or ""
        paid = sub if sub is not None and sub.is_paid else None
        plan = paid.plan if paid is not None else PlanId.FREE

        def decide(source: CreditSource, **extra) -> CreditDecision:
            return CreditDecision(
                user_id=user_id, credit_source=source, plan=plan, decided_at=now, **extra
            )

        if paid is not None and paid.is_unlimited:
            return decide(CreditSource.SUBSCRIPTION, unlimited=True)

        if paid is not None:
            used = await self._count_today(user_id, CreditSource.SUBSCRIPTION, now)
            if used < int(paid.credits_per_day):
                return decide(CreditSource.SUBSCRIPTION)

        if user.credits.purchased > 0:
            return decide(CreditSource.PURCHASED)

        if user.credits.granted > 0:
            return decide(CreditSource.GRANTED)

        entries = active_entries(user, now)
        if entries:
            return decide(CreditSource.PROMOTIONAL, promo_id=entries[0].id)

        if paid is None:
            used = await self._count_today(user_id, CreditSource.FREE, now)
            if used < self._free_allotment():
                return decide(CreditSource.FREE)

        return self._exhausted(user_id, plan)

    def _exhausted(self, user_id: str, plan: PlanId) -> Exhausted:
        upgrades = self._catalog.higher_than(plan)
        if plan is PlanId.FREE:
            message = "Daily free credits are used up. Purchase credits or upgrade your plan."
            remediation = ["purchase_credits", "upgrade_plan"]
        else:
            message = (
                "Today's plan credits are used up. Purchase credits, "
                "upgrade your plan, or wait for tomorrow's allotment."
            )
            remediation = ["purchase_credits", "upgrade_plan", "wait_for_daily_reset"]
        if not upgrades:
            remediation.remove("upgrade_plan")
        return Exhausted(
            user_id=user_id,
            plan=plan,
            message=message,
            remediation=remediation,
            upgrade_options=upgrades,
        )

    # Commit

    async def commit(
        self,
        decision: CreditDecision,
        status: ExecutionStatus,
        *,
        execution_time: float = 0.0,
        language: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionRecord:
        """
        Consume the decided credit and write the execution record.

        Idempotent on `decision.execution_id`: a retried commit returns the
        record already written and never decrements twice. The source is
        re-validated here, so a pool drained by a concurrent request since
        selection raises InsufficientCredits.
        """
        now = now or utcnow()
        async with self._db.user_lock(decision.user_id):
            existing = await self._db.get_execution(decision.execution_id)
            if existing is not None:
                return existing

            async with self._db.transaction():
                undo = await self._consume(decision, now)
                record = self._record(
                    decision, status, execution_time, language, error, now, credits_used=1
                )
                await self._persist(record, undo)

        await self._ledger.log_execution(record, "Execution credit consumed")
        return record

    async def commit_unbilled(
        self,
        decision: CreditDecision,
        status: ExecutionStatus,
        *,
        execution_time: float = 0.0,
        language: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionRecord:
        """Record an attempt that no pool could pay for after it ran."""
        now = now or utcnow()
        async with self._db.user_lock(decision.user_id):
            existing = await self._db.get_execution(decision.execution_id)
            if existing is not None:
                return existing
            record = self._record(
                decision, status, execution_time, language, error, now, credits_used=0
            )
            await self._persist(record, None)

        await self._ledger.log_error(
            "Execution recorded without billing; credit pools drained concurrently",
            user_id=decision.user_id,
            execution_id=decision.execution_id,
            credit_source=decision.credit_source,
        )
        return record

    @staticmethod
    def _record(
        decision: CreditDecision,
        status: ExecutionStatus,
        execution_time: float,
        language: Optional[str],
        error: Optional[str],
        now: datetime,
        credits_used: int,
    ) -> ExecutionRecord:
        return ExecutionRecord(
            id=decision.execution_id,
            user_id=decision.user_id,
            credit_source=decision.credit_source,
            promo_id=decision.promo_id,
            plan_at_time=decision.plan,
            language=language,
            status=status,
            error=error,
            execution_time=execution_time,
            credits_used=credits_used,
            created_at=now,
        )

    async def _persist(self, record: ExecutionRecord, undo: Undo) -> None:
        try:
            await self._db.add_execution(record)
        except Exception as exc:
            # Decrement and record are one unit: give the credit back
            if undo is not None:
                await undo()
            await self._ledger.log_error(
                "Execution record write failed",
                user_id=record.user_id,
                execution_id=record.id,
                credit_source=record.credit_source,
                error=exc,
            )
            raise PersistenceFailure(
                "Could not record execution", execution_id=record.id
            ) from exc

    async def _consume(self, decision: CreditDecision, now: datetime) -> Undo:
        user_id = decision.user_id
        source = decision.credit_source

        if source is CreditSource.SUBSCRIPTION:
            sub = await self._current_subscription(user_id, now)
            if sub is None or not sub.is_paid:
                raise InsufficientCredits("No active paid subscription", credit_source=source.value)
            if not sub.is_unlimited:
                used = await self._count_today(user_id, source, now)
                if used >= int(sub.credits_per_day):
                    raise InsufficientCredits(
                        "Daily plan credits exhausted", credit_source=source.value
                    )
            return None

        if source is CreditSource.FREE:
            used = await self._count_today(user_id, source, now)
            if used >= self._free_allotment():
                raise InsufficientCredits("Daily free credits exhausted", credit_source=source.value)
            return None

        if source in (CreditSource.PURCHASED, CreditSource.GRANTED):
            pool = CreditPool(source.value)
            if await self._db.adjust_credit_pool(user_id, pool, -1) is None:
                raise InsufficientCredits(f"No {pool.value} credits left", credit_source=source.value)

            async def undo_pool() -> None:
                await self._db.adjust_credit_pool(user_id, pool, 1)

            return undo_pool

        if source is CreditSource.PROMOTIONAL:
            if decision.promo_id is None:
                raise InsufficientCredits("Promotional decision without an entry", credit_source=source.value)
            entry = await self._db.consume_promotional_credit(user_id, decision.promo_id, now)
            if entry is None:
                raise InsufficientCredits(
                    "Promotional credit is no longer available",
                    credit_source=source.value,
                    promo_id=decision.promo_id,
                )

            async def undo_promo() -> None:
                await self._db.restore_promotional_credit(user_id, entry)

            return undo_promo

        raise ValueError(f"Unhandled credit source {source!r}")

    # Admin grants

    async def grant_credits(
        self,
        admin_id: str,
        user_id: str,
        amount: int,
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInput("Credit amount must be a positive integer", amount=amount)

        async with self._db.user_lock(user_id):
            await self._require_user(user_id)
            async with self._db.transaction():
                granted_total = await self._db.adjust_credit_pool(
                    user_id, CreditPool.GRANTED, amount
                )
                if granted_total is None:
                    raise UserNotFound(user_id)
                await self._db.add_admin_grant(
                    AdminGrant(admin_id=admin_id, user_id=user_id, credits=amount)
                )
                return await self._transactions.create(
                    user_id,
                    TransactionType.CREDIT_GRANT,
                    f"Admin granted {amount} credits",
                    credits=amount,
                    metadata={"admin_id": admin_id, "granted_total": granted_total},
                    correlation_id=correlation_id,
                )

    # Reads

    async def get_credit_status(
        self, user_id: str, now: Optional[datetime] = None
    ) -> CreditStatus:
        now = now or utcnow()
        user = await self._require_user(user_id)
        sub = await self._current_subscription(user_id, now)
        scheduled = await self._db.get_scheduled_subscription(user_id)
        paid = sub if sub is not None and sub.is_paid else None

        free_allotment = self._free_allotment()
        free_used = 0
        if paid is None:
            free_used = await self._count_today(user_id, CreditSource.FREE, now)

        if paid is not None and paid.is_unlimited:
            allotment: Union[int, str] = "Unlimited"
            used = await self._count_today(user_id, CreditSource.SUBSCRIPTION, now)
            remaining: Union[int, str] = "Unlimited"
        elif paid is not None:
            allotment = int(paid.credits_per_day)
            used = await self._count_today(user_id, CreditSource.SUBSCRIPTION, now)
            remaining = max(allotment - used, 0)
        else:
            allotment = free_allotment
            used = free_used
            remaining = max(free_allotment - free_used, 0)

        entries = active_entries(user, now)
        return CreditStatus(
            user_id=user_id,
            plan=paid.plan if paid is not None else PlanId.FREE,
            unlimited=paid is not None and paid.is_unlimited,
            daily_allotment=allotment,
            used_today=used,
            remaining_today=remaining,
            free_used_today=free_used,
            free_remaining_today=max(free_allotment - free_used, 0) if paid is None else 0,
            purchased=user.credits.purchased,
            granted=user.credits.granted,
            promotional=entries,
            promotional_total=sum(e.amount for e in entries),
            balance_in_paisa=user.balance_in_paisa,
            active_subscription=SubscriptionSummary.from_subscription(sub) if sub else None,
            scheduled_subscription=(
                SubscriptionSummary.from_subscription(scheduled) if scheduled else None
            ),
        )

    async def execution_history(self, user_id: str, limit: int = 50) -> list[ExecutionRecord]:
        await self._require_user(user_id)
        return await self._db.get_executions(user_id, limit=limit)

    # Helpers

    def _free_allotment(self) -> int:
        return int(self._catalog.free_plan.credits_per_day)

    async def _count_today(self, user_id: str, source: CreditSource, now: datetime) -> int:
        start, end = day_bounds(now)
        return await self._db.count_executions(user_id, source, start, end)

    async def _current_subscription(
        self, user_id: str, now: datetime
    ) -> Optional[Subscription]:
        # A row past its end date is treated as lapsed even before the renewal sweep runs
        sub = await self._db.get_active_subscription(user_id)
        if sub is not None and sub.is_current(now):
            return sub
        return None

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user
