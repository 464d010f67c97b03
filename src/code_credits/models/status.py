"""
Read-only projections returned by the status surfaces and the sweeps.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from .plan import PlanId
from .subscription import Subscription, SubscriptionStatus
from .user import PromotionalCredit


class SubscriptionSummary(BaseModel):
    id: str
    plan: PlanId
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    price_in_paisa: int
    credits_per_day: Union[int, str]

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionSummary":
        return cls(
            id=sub.id or "",
            plan=sub.plan,
            status=sub.status,
            start_date=sub.start_date,
            end_date=sub.end_date,
            price_in_paisa=sub.price_in_paisa,
            credits_per_day=sub.credits_per_day,
        )


class SubscriptionOverview(BaseModel):
    user_id: str
    auto_renew: bool
    active: Optional[SubscriptionSummary] = None
    scheduled: Optional[SubscriptionSummary] = None


class CreditStatus(BaseModel):
    user_id: str
    plan: PlanId
    unlimited: bool = False
    daily_allotment: Union[int, str]
    used_today: int = 0
    remaining_today: Union[int, str]
    free_used_today: int = 0
    free_remaining_today: int = 0
    purchased: int = 0
    granted: int = 0
    promotional: list[PromotionalCredit] = Field(default_factory=list)
    promotional_total: int = 0
    balance_in_paisa: int = 0
    active_subscription: Optional[SubscriptionSummary] = None
    scheduled_subscription: Optional[SubscriptionSummary] = None


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    EXPIRED = "expired"
    ACTIVATED_SCHEDULED = "activated_scheduled"
    SKIPPED = "skipped"


class SweepReport(BaseModel):
    """Per-run counters for a background sweep."""

    sweep: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[str] = Field(default_factory=list)
