from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .plan import UNLIMITED, DailyCredits, PlanId


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    RENEWED = "renewed"
    SCHEDULED = "scheduled"


class Subscription(DBSerializableModel):
    """
    One plan period for a user. A user has at most one row with
    ``active=True``; scheduled rows are never active.
    """

    collection_name: ClassVar[str] = "code_credits_subscriptions"

    id: Optional[str] = Field(default=None)
    user_id: str
    plan: PlanId
    price_in_paisa: int = Field(default=0, ge=0)
    start_date: datetime
    end_date: datetime
    credits_per_day: DailyCredits
    active: bool = True
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_paid(self) -> bool:
        return self.plan is not PlanId.FREE

    @property
    def is_unlimited(self) -> bool:
        return self.credits_per_day == UNLIMITED

    def is_current(self, now: datetime) -> bool:
        return self.active and self.end_date > now
