from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..db.base import BaseDBManager
from ..errors import InvalidInput, PromotionNotFound, UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.promotion import Promotion, PromotionChange, PromotionSummary
from ..models.user import PromotionalCredit, UserAccount


def active_entries(user: UserAccount, now: datetime) -> list[PromotionalCredit]:
    """
    Usable promotional entries, soonest-expiring first.

    Expired entries are treated as absent here whether or not the cleanup
    sweep has pruned them yet.
    """
    usable = [e for e in user.credits.promotional if e.is_usable(now)]
    usable.sort(key=lambda e: e.end_date)
    return usable


class PromotionService:
    """
    Admin-defined, time-boxed bonus credit offers.

    Creating a promotion broadcasts an entry to every existing user. Users
    registered later receive it from the nightly `apply_active_promotions`
    sweep, and `cleanup_expired_promotions` prunes entries past their end.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def create_promotion(
        self,
        offer_name: str,
        credits: int,
        start_date: datetime,
        end_date: datetime,
        created_by: str,
    ) -> PromotionChange:
        offer_name = (offer_name or "").strip()
        if not offer_name:
            raise InvalidInput("offer_name is required")
        self._validate(credits, start_date, end_date)
        if await self._db.get_promotion_by_offer_name(offer_name) is not None:
            raise InvalidInput(
                f"A promotion named {offer_name!r} already exists", offer_name=offer_name
            )

        promotion = await self._db.add_promotion(
            Promotion(
                offer_name=offer_name,
                credits=credits,
                start_date=start_date,
                end_date=end_date,
                created_by=created_by,
            )
        )
        users_updated = await self._db.add_promotional_entry_to_users(promotion.to_entry())

        await self._ledger.log_system(
            "Promotion created",
            promotion_id=promotion.id,
            offer_name=offer_name,
            credits=credits,
            users_updated=users_updated,
            created_by=created_by,
        )
        return PromotionChange(promotion=promotion, users_updated=users_updated)

    async def update_promotion(
        self,
        promotion_id: str,
        *,
        credits: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> PromotionChange:
        promotion = await self._require(promotion_id)
        if credits is not None:
            promotion.credits = credits
        if start_date is not None:
            promotion.start_date = start_date
        if end_date is not None:
            promotion.end_date = end_date
        self._validate(promotion.credits, promotion.start_date, promotion.end_date)
        promotion.updated_at = utcnow()

        promotion = await self._db.update_promotion(promotion)
        users_updated = await self._db.update_promotional_entries(
            promotion.offer_name,
            amount=promotion.credits,
            start_date=promotion.start_date,
            end_date=promotion.end_date,
        )

        await self._ledger.log_system(
            "Promotion updated",
            promotion_id=promotion.id,
            offer_name=promotion.offer_name,
            users_updated=users_updated,
        )
        return PromotionChange(promotion=promotion, users_updated=users_updated)

    async def delete_promotion(self, promotion_id: str) -> PromotionChange:
        promotion = await self._require(promotion_id)
        await self._db.delete_promotion(promotion_id)
        users_updated = await self._db.remove_promotional_entries(promotion.offer_name)

        await self._ledger.log_system(
            "Promotion deleted", promotion_id=promotion_id, offer_name=promotion.offer_name
        )
        return PromotionChange(promotion=promotion, users_updated=users_updated)

    async def grant_promotion_to_user(self, promotion_id: str, user_id: str) -> bool:
        """Hand one promotion to a single user. False if they already received it."""
        promotion = await self._require(promotion_id)
        if await self._db.get_user(user_id) is None:
            raise UserNotFound(user_id)
        granted = await self._db.add_promotional_entry(user_id, promotion.to_entry())
        if granted:
            await self._ledger.log_user_event(
                user_id,
                "Promotional credits granted",
                promotion_id=promotion.id,
                credits=promotion.credits,
                offer_name=promotion.offer_name,
            )
        return granted

    async def list_promotions(self) -> list[PromotionSummary]:
        promotions = await self._db.get_promotions()
        return [
            PromotionSummary(
                promotion=p,
                user_count=await self._db.count_users_with_offer(p.offer_name),
            )
            for p in promotions
        ]

    async def get_promotion(self, promotion_id: str) -> Promotion:
        return await self._require(promotion_id)

    # Sweeps

    async def apply_active_promotions(self, now: Optional[datetime] = None) -> int:
        """Give every running promotion to users who have never received it."""
        now = now or utcnow()
        total = 0
        for promotion in await self._db.get_active_promotions(now):
            total += await self._db.add_promotional_entry_to_users(promotion.to_entry())
        return total

    async def cleanup_expired_promotions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return await self._db.remove_expired_promotional_entries(now)

    @staticmethod
    def active_entries(user: UserAccount, now: Optional[datetime] = None) -> list[PromotionalCredit]:
        return active_entries(user, now or utcnow())

    # Helpers

    @staticmethod
    def _validate(credits: int, start_date: datetime, end_date: datetime) -> None:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidInput("Promotion credits must be a positive integer", credits=credits)
        if start_date >= end_date:
            raise InvalidInput("Promotion start_date must be before end_date")

    async def _require(self, promotion_id: str) -> Promotion:
        promotion = await self._db.get_promotion(promotion_id)
        if promotion is None:
            raise PromotionNotFound(promotion_id)
        return promotion
