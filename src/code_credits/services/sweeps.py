from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.status import RenewalOutcome, SweepReport
from ..models.subscription import Subscription
from .promotion_service import PromotionService
from .subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class SubscriptionSweeper:
    """
    Background passes over all users: activation of due scheduled
    subscriptions, renewal or expiry of lapsed ones, and the promotion
    apply/cleanup passes.

    Each item goes through the same per-user lock as user-initiated
    transitions. A failing item is logged and counted; the batch continues.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        subscriptions: SubscriptionService,
        promotions: PromotionService,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._promotions = promotions

    async def activate_scheduled_subscriptions(
        self, now: Optional[datetime] = None
    ) -> SweepReport:
        now = now or utcnow()
        due = await self._db.get_due_scheduled_subscriptions(now)

        async def activate(sub: Subscription) -> bool:
            return await self._subscriptions.activate_scheduled_subscription(sub.id or "", now) is not None

        return await self._run("scheduled_activation", due, activate, now)

    async def renew_or_expire_subscriptions(
        self, now: Optional[datetime] = None
    ) -> SweepReport:
        now = now or utcnow()
        lapsed = await self._db.get_lapsed_active_subscriptions(now)

        async def settle(sub: Subscription) -> bool:
            outcome = await self._subscriptions.renew_or_expire(sub.id or "", now)
            return outcome is not RenewalOutcome.SKIPPED

        return await self._run("renewal", lapsed, settle, now)

    async def run_promotion_sweeps(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport(sweep="promotions", started_at=now)
        for name, step in (
            ("cleanup", self._promotions.cleanup_expired_promotions),
            ("apply", self._promotions.apply_active_promotions),
        ):
            report.processed += 1
            try:
                changed = await step(now)
                report.succeeded += 1
                logger.info("Promotion %s sweep changed %d users", name, changed)
            except Exception as exc:
                report.failed += 1
                report.failures.append(f"{name}: {exc!r}")
                logger.exception("Promotion %s sweep failed", name)
                await self._ledger.log_error(f"Promotion {name} sweep failed", error=exc)
        return await self._finish(report)

    async def _run(
        self,
        sweep: str,
        items: list[Subscription],
        action: Callable[[Subscription], Awaitable[bool]],
        now: datetime,
    ) -> SweepReport:
        report = SweepReport(sweep=sweep, started_at=now)
        for sub in items:
            report.processed += 1
            try:
                if await action(sub):
                    report.succeeded += 1
                else:
                    report.skipped += 1
            except Exception as exc:
                report.failed += 1
                report.failures.append(f"{sub.id}: {exc!r}")
                logger.exception(
                    "Sweep %s failed for subscription %s", sweep, sub.id,
                    extra={"user_id": sub.user_id},
                )
                await self._ledger.log_error(
                    f"Sweep {sweep} failed",
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    error=exc,
                )
        return await self._finish(report)

    async def _finish(self, report: SweepReport) -> SweepReport:
        report.finished_at = utcnow()
        if report.processed:
            await self._ledger.log_system(
                f"Sweep {report.sweep} finished",
                **report.model_dump(mode="json", exclude={"sweep"}),
            )
        logger.info(
            "Sweep %s: processed=%d succeeded=%d failed=%d skipped=%d",
            report.sweep,
            report.processed,
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report
