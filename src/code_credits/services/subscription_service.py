from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional, Union

from ..catalog import PlanCatalog
from ..config import DowngradePolicy
from ..db.base import BaseDBManager
from ..errors import (
    CancellationWindowError,
    CannotCancelFree,
    DowngradeNotAllowed,
    InsufficientBalance,
    InvalidDirection,
    InvalidInput,
    InvalidTransition,
    SamePlan,
    ScheduleConflict,
    SubscriptionNotFound,
    UserNotFound,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.plan import Plan, PlanId
from ..models.status import RenewalOutcome, SubscriptionOverview, SubscriptionSummary
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserAccount, UserCredits
from .transaction_ledger import TransactionLedger


class SubscriptionService:
    """
    Subscription lifecycle: register, subscribe, upgrade (now or scheduled),
    downgrade, cancel, and the activation/renewal transitions driven by the
    background sweeps.

    Every transition runs under the per-user lock, so a user-initiated change
    and a sweep on the same user cannot both leave an active subscription.
    Subscription rows are authoritative; `UserAccount.active_subscription_id`
    is a cache refreshed by each transition.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        transactions: TransactionLedger,
        catalog: PlanCatalog,
        *,
        cancellation_window_hours: int = 24,
        downgrade_policy: DowngradePolicy = DowngradePolicy.IMMEDIATE,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._transactions = transactions
        self._catalog = catalog
        self._cancellation_window_hours = cancellation_window_hours
        self._downgrade_policy = downgrade_policy

    # Registration

    async def register(
        self,
        username: str,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserAccount:
        """Create a user with an active free subscription for one free-plan period."""
        now = now or utcnow()
        free = self._catalog.free_plan
        user = UserAccount(
            username=username,
            email=email,
            registration_date=now,
            credits=UserCredits(free=int(free.credits_per_day)),
            created_at=now,
            updated_at=now,
        )
        user = await self._db.add_user(user)
        user_id = user.id or ""

        async with self._db.user_lock(user_id):
            async with self._db.transaction():
                sub = await self._db.add_subscription(
                    self._build(user_id, free, start=now, end=self._free_end(user, now), now=now)
                )
                await self._db.set_active_subscription(user_id, sub.id)
                await self._transactions.create(
                    user_id,
                    TransactionType.SUBSCRIPTION_ACTIVATION,
                    "Free plan activated on registration",
                    credits=self._plan_credits(free),
                    metadata={"plan": free.id.value, "subscription_id": sub.id},
                )
        user.active_subscription_id = sub.id
        return user

    # User-initiated transitions

    async def subscribe(
        self,
        user_id: str,
        plan_id: Union[PlanId, str],
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = now or utcnow()
        plan = self._catalog.lookup(plan_id)
        if not plan.is_paid:
            raise InvalidInput("Only paid plans can be subscribed to", plan=plan.id.value)

        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            current = await self._db.get_active_subscription(user_id)
            if current is not None and current.is_paid and current.is_current(now):
                raise InvalidTransition(
                    "An active paid subscription already exists",
                    current_plan=current.plan.value,
                    valid_alternatives=["upgrade", "downgrade", "cancel"],
                )
            # A paid-for schedule takes over at the next activation sweep
            await self._ensure_no_schedule(user_id)
            old_status = self._replaced_status(current, now, SubscriptionStatus.UPGRADED)
            return await self._start_paid(
                user,
                plan,
                now,
                TransactionType.SUBSCRIPTION_PAYMENT,
                old_status,
                f"Subscribed to {plan.name}",
            )

    async def upgrade(
        self,
        user_id: str,
        plan_id: Union[PlanId, str],
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Move to a higher tier. From free (or a paid plan whose period has
        already ended) the change is immediate. From a running paid plan a
        scheduled subscription is created to start when the current one ends;
        it is paid for now.
        """
        now = now or utcnow()
        plan = self._catalog.lookup(plan_id)

        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            current = await self._db.get_active_subscription(user_id)
            current_plan = current.plan if current is not None else PlanId.FREE
            if plan.id is current_plan:
                raise SamePlan(plan.id.value)
            if plan.tier <= self._catalog.tier_of(current_plan):
                raise InvalidDirection(
                    current_plan.value,
                    plan.id.value,
                    self._catalog.higher_than(current_plan),
                    "upgrade",
                )
            await self._ensure_no_schedule(user_id)

            if current is None or not current.is_paid:
                return await self._start_paid(
                    user,
                    plan,
                    now,
                    TransactionType.SUBSCRIPTION_PAYMENT,
                    SubscriptionStatus.UPGRADED,
                    f"Upgraded from free to {plan.name}",
                )
            if not current.is_current(now):
                return await self._start_paid(
                    user,
                    plan,
                    now,
                    TransactionType.SUBSCRIPTION_UPGRADE,
                    SubscriptionStatus.EXPIRED,
                    f"Upgraded from {current.plan.value} to {plan.name}",
                )

            start = current.end_date
            async with self._db.transaction():
                async with self._charge(user, plan.price_in_paisa) as balance:
                    scheduled = await self._db.add_subscription(
                        self._build(
                            user_id,
                            plan,
                            start=start,
                            now=now,
                            status=SubscriptionStatus.SCHEDULED,
                            active=False,
                        )
                    )
                    await self._transactions.create(
                        user_id,
                        TransactionType.SUBSCRIPTION_UPGRADE,
                        f"Scheduled upgrade from {current.plan.value} to {plan.name}",
                        amount_in_paisa=plan.price_in_paisa,
                        credits=self._plan_credits(plan),
                        balance_after_in_paisa=balance,
                        metadata={
                            "plan": plan.id.value,
                            "previous_plan": current.plan.value,
                            "subscription_id": scheduled.id,
                            "scheduled": True,
                            "starts_at": start.isoformat(),
                        },
                    )
            return scheduled

    async def downgrade(
        self,
        user_id: str,
        plan_id: Union[PlanId, str],
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Move to a lower tier.

        Mid-term behaviour follows the configured downgrade policy: IMMEDIATE
        switches now for the remainder of the already-paid term at no charge,
        END_OF_TERM refuses. Once the current term has ended both policies
        charge the new plan for a fresh full period.
        """
        now = now or utcnow()
        plan = self._catalog.lookup(plan_id)

        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            current = await self._db.get_active_subscription(user_id)
            current_plan = current.plan if current is not None else PlanId.FREE
            if plan.id is current_plan:
                raise SamePlan(plan.id.value)
            if current is None or plan.tier >= self._catalog.tier_of(current_plan):
                raise InvalidDirection(
                    current_plan.value,
                    plan.id.value,
                    self._catalog.lower_than(current_plan),
                    "downgrade",
                )
            await self._ensure_no_schedule(user_id)

            mid_term = current.is_current(now)
            if mid_term and self._downgrade_policy is DowngradePolicy.END_OF_TERM:
                raise DowngradeNotAllowed(
                    "Downgrade is only possible once the current term ends",
                    current_plan=current_plan.value,
                    current_term_ends=current.end_date.isoformat(),
                    valid_alternatives=["cancel"],
                )

            description = f"Downgraded from {current_plan.value} to {plan.name}"
            async with self._db.transaction():
                if not plan.is_paid:
                    sub = await self._restore_free(user, now, SubscriptionStatus.DOWNGRADED)
                    amount = 0
                    balance = user.balance_in_paisa
                elif mid_term:
                    sub = await self._activate_new(
                        user_id,
                        self._build(
                            user_id, plan, start=now, end=current.end_date, now=now, price=0
                        ),
                        SubscriptionStatus.DOWNGRADED,
                        now,
                    )
                    amount = 0
                    balance = user.balance_in_paisa
                else:
                    return await self._start_paid(
                        user,
                        plan,
                        now,
                        TransactionType.SUBSCRIPTION_DOWNGRADE,
                        SubscriptionStatus.EXPIRED,
                        description,
                    )

                await self._transactions.create(
                    user_id,
                    TransactionType.SUBSCRIPTION_DOWNGRADE,
                    description,
                    amount_in_paisa=amount,
                    credits=self._plan_credits(plan),
                    balance_after_in_paisa=balance,
                    metadata={
                        "plan": plan.id.value,
                        "previous_plan": current_plan.value,
                        "subscription_id": sub.id,
                        "ends_at": sub.end_date.isoformat(),
                    },
                )
            return sub

    async def cancel(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """
        Cancel the active paid plan and fall back to the free plan.
        A pending scheduled upgrade is cancelled and refunded first.
        """
        now = now or utcnow()
        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            current = await self._db.get_active_subscription(user_id)
            if current is None:
                raise SubscriptionNotFound("No active subscription found", user_id=user_id)
            if not current.is_paid:
                raise CannotCancelFree()

            hours_elapsed = (now - current.start_date).total_seconds() / 3600
            if hours_elapsed < self._cancellation_window_hours:
                raise CancellationWindowError(self._cancellation_window_hours, hours_elapsed)

            async with self._db.transaction():
                scheduled = await self._db.get_scheduled_subscription(user_id)
                if scheduled is not None:
                    await self._refund_scheduled(user, scheduled, "Scheduled upgrade refunded on cancellation")

                current.active = False
                current.status = SubscriptionStatus.CANCELLED
                current.cancelled_at = now
                current.end_date = now
                await self._db.update_subscription(current)

                free_sub = await self._restore_free(user, now, SubscriptionStatus.CANCELLED)
                await self._transactions.create(
                    user_id,
                    TransactionType.SUBSCRIPTION_CANCELLATION,
                    f"Cancelled {current.plan.value} plan subscription and reverted to free plan",
                    credits=self._plan_credits(self._catalog.free_plan),
                    metadata={
                        "cancelled_subscription_id": current.id,
                        "cancelled_plan": current.plan.value,
                        "subscription_id": free_sub.id,
                    },
                )
            return free_sub

    async def cancel_scheduled_upgrade(self, user_id: str) -> Transaction:
        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            scheduled = await self._db.get_scheduled_subscription(user_id)
            if scheduled is None:
                raise SubscriptionNotFound("No scheduled plan change to cancel", user_id=user_id)
            async with self._db.transaction():
                return await self._refund_scheduled(user, scheduled, "Scheduled upgrade cancelled")

    async def set_auto_renew(self, user_id: str, enabled: bool) -> UserAccount:
        async with self._db.user_lock(user_id):
            await self._require_user(user_id)
            await self._db.set_auto_renew(user_id, enabled)
            user = await self._require_user(user_id)
        await self._ledger.log_user_event(
            user_id,
            "Auto-renew updated",
            subscription_id=user.active_subscription_id,
            auto_renew=enabled,
        )
        return user

    # Reads

    async def get_status(self, user_id: str) -> SubscriptionOverview:
        user = await self._require_user(user_id)
        active = await self._db.get_active_subscription(user_id)
        scheduled = await self._db.get_scheduled_subscription(user_id)
        return SubscriptionOverview(
            user_id=user_id,
            auto_renew=user.auto_renew,
            active=SubscriptionSummary.from_subscription(active) if active else None,
            scheduled=SubscriptionSummary.from_subscription(scheduled) if scheduled else None,
        )

    async def subscription_transactions(
        self, user_id: str, limit: Optional[int] = 50
    ) -> list[Transaction]:
        await self._require_user(user_id)
        types = [t for t in TransactionType if t.is_subscription_event]
        return await self._transactions.history(user_id, types=types, limit=limit)

    async def repair_active_subscription(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Subscription:
        """
        Re-establish exactly one active subscription and re-sync the cached
        id on the user document.
        """
        now = now or utcnow()
        async with self._db.user_lock(user_id):
            user = await self._require_user(user_id)
            active = await self._db.get_active_subscriptions(user_id)
            if not active:
                keep = await self._restore_free(user, now, SubscriptionStatus.EXPIRED)
            else:
                keep = active[0]
                if len(active) > 1:
                    await self._db.deactivate_subscriptions(
                        user_id, SubscriptionStatus.EXPIRED, exclude_id=keep.id, now=now
                    )
                if user.active_subscription_id != keep.id:
                    await self._db.set_active_subscription(user_id, keep.id)

        if len(active) != 1 or user.active_subscription_id != keep.id:
            await self._ledger.log_error(
                "Active subscription repaired",
                user_id=user_id,
                subscription_id=keep.id,
                active_rows=len(active),
                cached_id=user.active_subscription_id,
            )
        return keep

    # Sweep-driven transitions

    async def activate_scheduled_subscription(
        self, subscription_id: str, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """Activate a due scheduled subscription. None if it is no longer due."""
        now = now or utcnow()
        sub = await self._db.get_subscription(subscription_id)
        if sub is None:
            return None
        async with self._db.user_lock(sub.user_id):
            return await self._activate_scheduled_locked(subscription_id, now)

    async def renew_or_expire(
        self, subscription_id: str, now: Optional[datetime] = None
    ) -> RenewalOutcome:
        """
        Settle an active subscription whose period has ended: a due scheduled
        subscription takes over, free plans roll over, paid plans renew when
        auto-renew is on and the wallet covers the price, otherwise expire
        and the user falls back to the free plan.
        """
        now = now or utcnow()
        sub = await self._db.get_subscription(subscription_id)
        if sub is None:
            return RenewalOutcome.SKIPPED

        async with self._db.user_lock(sub.user_id):
            sub = await self._db.get_subscription(subscription_id)
            if sub is None or not sub.active or sub.end_date > now:
                return RenewalOutcome.SKIPPED

            scheduled = await self._db.get_scheduled_subscription(sub.user_id)
            if scheduled is not None and scheduled.start_date <= now:
                await self._activate_scheduled_locked(scheduled.id or "", now)
                return RenewalOutcome.ACTIVATED_SCHEDULED

            user = await self._require_user(sub.user_id)
            plan = self._catalog.lookup(sub.plan)
            async with self._db.transaction():
                if not plan.is_paid:
                    await self._renew(user, sub, plan, now, user.balance_in_paisa)
                    return RenewalOutcome.RENEWED

                if user.auto_renew and user.balance_in_paisa >= plan.price_in_paisa:
                    try:
                        async with self._charge(user, plan.price_in_paisa) as balance:
                            await self._renew(user, sub, plan, now, balance)
                        return RenewalOutcome.RENEWED
                    except InsufficientBalance:
                        # Balance moved since it was read
                        pass

                sub.active = False
                sub.status = SubscriptionStatus.EXPIRED
                await self._db.update_subscription(sub)
                await self._transactions.create(
                    user.id or "",
                    TransactionType.SUBSCRIPTION_EXPIRY,
                    f"{plan.name} expired",
                    metadata={
                        "subscription_id": sub.id,
                        "plan": plan.id.value,
                        "auto_renew": user.auto_renew,
                    },
                )
                await self._restore_free(user, now, SubscriptionStatus.EXPIRED)
            return RenewalOutcome.EXPIRED

    async def _activate_scheduled_locked(
        self, subscription_id: str, now: datetime
    ) -> Optional[Subscription]:
        sub = await self._db.get_subscription(subscription_id)
        if sub is None or sub.status is not SubscriptionStatus.SCHEDULED or sub.start_date > now:
            return None

        async with self._db.transaction():
            sub.active = True
            sub.status = SubscriptionStatus.ACTIVE
            sub = await self._activate_new(sub.user_id, sub, SubscriptionStatus.EXPIRED, now)
            await self._transactions.create(
                sub.user_id,
                TransactionType.SUBSCRIPTION_ACTIVATION,
                f"Scheduled {sub.plan.value} plan activated",
                credits=self._plan_credits(self._catalog.lookup(sub.plan)),
                metadata={"plan": sub.plan.value, "subscription_id": sub.id},
            )
        return sub

    async def _renew(
        self,
        user: UserAccount,
        sub: Subscription,
        plan: Plan,
        now: datetime,
        balance: int,
    ) -> None:
        start = sub.end_date
        if start + timedelta(days=plan.duration_days) <= now:
            start = now
        sub.start_date = start
        sub.end_date = start + timedelta(days=plan.duration_days)
        sub.status = SubscriptionStatus.RENEWED
        sub.price_in_paisa = plan.price_in_paisa
        await self._db.update_subscription(sub)
        await self._transactions.create(
            user.id or "",
            TransactionType.SUBSCRIPTION_RENEWAL,
            f"{plan.name} renewed",
            amount_in_paisa=plan.price_in_paisa,
            credits=self._plan_credits(plan),
            balance_after_in_paisa=balance,
            metadata={
                "subscription_id": sub.id,
                "plan": plan.id.value,
                "ends_at": sub.end_date.isoformat(),
            },
        )

    # Helpers

    @asynccontextmanager
    async def _charge(self, user: UserAccount, amount: int) -> AsyncIterator[int]:
        """
        Debit the wallet for the duration of the block; refunded if the
        block raises. Yields the balance after the debit.
        """
        user_id = user.id or ""
        if amount == 0:
            current = await self._require_user(user_id)
            yield current.balance_in_paisa
            return
        balance = await self._db.adjust_balance(user_id, -amount)
        if balance is None:
            current = await self._require_user(user_id)
            raise InsufficientBalance(amount, current.balance_in_paisa)
        try:
            yield balance
        except BaseException:
            await self._db.adjust_balance(user_id, amount)
            raise

    async def _start_paid(
        self,
        user: UserAccount,
        plan: Plan,
        now: datetime,
        tx_type: TransactionType,
        old_status: SubscriptionStatus,
        description: str,
    ) -> Subscription:
        user_id = user.id or ""
        async with self._db.transaction():
            async with self._charge(user, plan.price_in_paisa) as balance:
                sub = await self._activate_new(
                    user_id, self._build(user_id, plan, start=now, now=now), old_status, now
                )
                await self._transactions.create(
                    user_id,
                    tx_type,
                    description,
                    amount_in_paisa=plan.price_in_paisa,
                    credits=self._plan_credits(plan),
                    balance_after_in_paisa=balance,
                    metadata={"plan": plan.id.value, "subscription_id": sub.id},
                )
        return sub

    async def _activate_new(
        self,
        user_id: str,
        sub: Subscription,
        old_status: SubscriptionStatus,
        now: datetime,
    ) -> Subscription:
        """Deactivate the incumbent, then make `sub` the one active row."""
        if sub.id is None:
            await self._db.deactivate_subscriptions(user_id, old_status, now=now)
            sub = await self._db.add_subscription(sub)
        else:
            await self._db.deactivate_subscriptions(
                user_id, old_status, exclude_id=sub.id, now=now
            )
            sub = await self._db.update_subscription(sub)
        await self._db.set_active_subscription(user_id, sub.id)
        return sub

    async def _restore_free(
        self, user: UserAccount, now: datetime, old_status: SubscriptionStatus
    ) -> Subscription:
        """
        Reactivate the user's earliest free subscription (removing duplicate
        free rows) or recreate it, ending one free period after registration.
        """
        user_id = user.id or ""
        free = self._catalog.free_plan
        end = self._free_end(user, now)
        free_rows = await self._db.get_user_subscriptions(user_id, plan=PlanId.FREE)

        if not free_rows:
            return await self._activate_new(
                user_id,
                self._build(user_id, free, start=user.registration_date, end=end, now=now),
                old_status,
                now,
            )

        keep, duplicates = free_rows[0], free_rows[1:]
        for dup in duplicates:
            await self._db.delete_subscription(dup.id or "")
        keep.active = True
        keep.status = SubscriptionStatus.ACTIVE
        keep.end_date = end
        keep.cancelled_at = None
        keep.price_in_paisa = 0
        keep.credits_per_day = free.credits_per_day
        return await self._activate_new(user_id, keep, old_status, now)

    async def _refund_scheduled(
        self, user: UserAccount, scheduled: Subscription, description: str
    ) -> Transaction:
        user_id = user.id or ""
        balance = await self._db.adjust_balance(user_id, scheduled.price_in_paisa)
        if balance is None:
            raise UserNotFound(user_id)
        await self._db.delete_subscription(scheduled.id or "")
        return await self._transactions.create(
            user_id,
            TransactionType.SUBSCRIPTION_REFUND,
            description,
            amount_in_paisa=scheduled.price_in_paisa,
            balance_after_in_paisa=balance,
            metadata={"plan": scheduled.plan.value, "subscription_id": scheduled.id},
        )

    async def _ensure_no_schedule(self, user_id: str) -> None:
        scheduled = await self._db.get_scheduled_subscription(user_id)
        if scheduled is not None:
            raise ScheduleConflict(scheduled.plan.value, scheduled.start_date.isoformat())

    def _free_end(self, user: UserAccount, now: datetime) -> datetime:
        period = timedelta(days=self._catalog.free_plan.duration_days)
        end = user.registration_date + period
        while end <= now:
            end += period
        return end

    @staticmethod
    def _build(
        user_id: str,
        plan: Plan,
        *,
        start: datetime,
        now: datetime,
        end: Optional[datetime] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        active: bool = True,
        price: Optional[int] = None,
    ) -> Subscription:
        return Subscription(
            user_id=user_id,
            plan=plan.id,
            price_in_paisa=plan.price_in_paisa if price is None else price,
            start_date=start,
            end_date=end or start + timedelta(days=plan.duration_days),
            credits_per_day=plan.credits_per_day,
            active=active,
            status=status,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _replaced_status(
        current: Optional[Subscription], now: datetime, default: SubscriptionStatus
    ) -> SubscriptionStatus:
        if current is not None and current.is_paid and not current.is_current(now):
            return SubscriptionStatus.EXPIRED
        return default

    @staticmethod
    def _plan_credits(plan: Plan) -> int:
        return 0 if plan.is_unlimited else int(plan.credits_per_day)

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user
