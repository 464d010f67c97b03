from __future__ import annotations

from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


UNLIMITED = "unlimited"

DailyCredits = Union[int, Literal["unlimited"]]


class PlanId(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    THREE_MONTH = "three_month"
    SIX_MONTH = "six_month"
    YEARLY = "yearly"


class Plan(BaseModel):
    """
    One subscription tier. Plans are immutable configuration, never persisted.
    """

    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    credits_per_day: DailyCredits
    price_in_paisa: int = Field(ge=0)
    duration_days: int = Field(gt=0)
    tier: int = Field(ge=0)
    features: tuple[str, ...] = ()

    @property
    def is_paid(self) -> bool:
        return self.id is not PlanId.FREE

    @property
    def is_unlimited(self) -> bool:
        return self.credits_per_day == UNLIMITED


class PlanListing(BaseModel):
    """Read-only projection of a plan for the plan listing surface."""

    id: PlanId
    name: str
    credits_per_day: Union[int, str]
    price_in_paisa: int
    duration_days: int
    price_per_day_in_paisa: int
    total_credits: Union[int, str]
    features: list[str] = Field(default_factory=list)
