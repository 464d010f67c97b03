from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


DEFAULT_FREE_CREDITS = 15


class CreditPool(str, Enum):
    """Finite, decrement-on-use credit counters held on the user document."""

    PURCHASED = "purchased"
    GRANTED = "granted"


class PromotionalCredit(BaseModel):
    """
    A bonus grant with its own validity window. Entries are matched to their
    Promotion by ``offer_name``.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    amount: int = Field(ge=0)
    offer_name: str
    start_date: datetime
    end_date: datetime

    def is_usable(self, now: datetime) -> bool:
        return self.amount > 0 and self.start_date <= now <= self.end_date

    def is_expired(self, now: datetime) -> bool:
        return self.end_date < now


class UserCredits(BaseModel):
    free: int = Field(default=DEFAULT_FREE_CREDITS, ge=0)
    purchased: int = Field(default=0, ge=0)
    granted: int = Field(default=0, ge=0)
    promotional: list[PromotionalCredit] = Field(default_factory=list)
    claimed_offers: list[str] = Field(
        default_factory=list,
        description="Offer names ever received, so a spent and pruned entry is not re-granted.",
    )

    def pool(self, pool: CreditPool) -> int:
        return getattr(self, pool.value)


class UserAccount(DBSerializableModel):
    """
    Internal user representation for the credit system.

    Credit counters are only changed through the DB manager's targeted
    atomic operations, never by saving a whole modified document.
    """

    collection_name: ClassVar[str] = "code_credits_users"

    id: Optional[str] = Field(default=None)
    username: str
    email: Optional[str] = None
    registration_date: datetime = Field(default_factory=utcnow)
    balance_in_paisa: int = Field(default=0, ge=0)
    auto_renew: bool = True
    active_subscription_id: Optional[str] = Field(
        default=None,
        description="Cached id of the active Subscription; Subscription rows are authoritative.",
    )
    credits: UserCredits = Field(default_factory=UserCredits)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
