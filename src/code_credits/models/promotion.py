from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow
from .user import PromotionalCredit


class Promotion(DBSerializableModel):
    """
    Admin-defined, time-boxed bonus credit offer broadcast to every user.
    """

    collection_name: ClassVar[str] = "code_credits_promotions"

    id: Optional[str] = Field(default=None)
    offer_name: str
    credits: int = Field(gt=0)
    start_date: datetime
    end_date: datetime
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return self.start_date <= now <= self.end_date

    def to_entry(self) -> PromotionalCredit:
        return PromotionalCredit(
            amount=self.credits,
            offer_name=self.offer_name,
            start_date=self.start_date,
            end_date=self.end_date,
        )


class PromotionChange(BaseModel):
    promotion: Promotion
    users_updated: int = 0


class PromotionSummary(BaseModel):
    promotion: Promotion
    user_count: int = 0


class AdminGrant(DBSerializableModel):
    """Audit record of credits granted to a user by an administrator."""

    collection_name: ClassVar[str] = "code_credits_admin_grants"

    id: Optional[str] = Field(default=None)
    admin_id: str
    user_id: str
    credits: int = Field(gt=0)
    created_at: datetime = Field(default_factory=utcnow)
