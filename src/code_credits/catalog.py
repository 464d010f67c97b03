"""
Immutable subscription plan catalog.

Built once at startup and passed into the services that need it, so tests can
substitute an alternate catalog without patching module state.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Union

from .errors import PlanNotFound
from .models.plan import UNLIMITED, Plan, PlanId, PlanListing


_DEFAULT_PLANS = (
    Plan(
        id=PlanId.FREE,
        name="Free Plan",
        credits_per_day=15,
        price_in_paisa=0,
        duration_days=365,
        tier=0,
        features=("Basic compilation", "Standard support"),
    ),
    Plan(
        id=PlanId.MONTHLY,
        name="Monthly Plan",
        credits_per_day=1500,
        price_in_paisa=49900,
        duration_days=30,
        tier=1,
        features=("Advanced compilation", "Priority support", "API access"),
    ),
    Plan(
        id=PlanId.THREE_MONTH,
        name="Three Months Plan",
        credits_per_day=2000,
        price_in_paisa=129900,
        duration_days=90,
        tier=2,
        features=(
            "Advanced compilation",
            "Priority support",
            "API access",
            "Bulk compilation",
        ),
    ),
    Plan(
        id=PlanId.SIX_MONTH,
        name="Six Months Plan",
        credits_per_day=3000,
        price_in_paisa=199900,
        duration_days=180,
        tier=3,
        features=(
            "Advanced compilation",
            "Premium support",
            "API access",
            "Bulk compilation",
        ),
    ),
    Plan(
        id=PlanId.YEARLY,
        name="Yearly Plan",
        credits_per_day=UNLIMITED,
        price_in_paisa=359900,
        duration_days=365,
        tier=4,
        features=(
            "Advanced compilation",
            "Premium support",
            "Unlimited API access",
            "Bulk compilation",
            "Custom features",
        ),
    ),
)


class PlanCatalog:
    def __init__(self, plans: Iterable[Plan]) -> None:
        ordered = sorted(plans, key=lambda p: p.tier)
        self._plans: Mapping[PlanId, Plan] = {p.id: p for p in ordered}
        if len(self._plans) != len(ordered):
            raise ValueError("Plan ids must be unique")
        if PlanId.FREE not in self._plans:
            raise ValueError("Catalog must define the free plan")

    @classmethod
    def default(cls) -> "PlanCatalog":
        return cls(_DEFAULT_PLANS)

    def lookup(self, plan_id: Union[PlanId, str]) -> Plan:
        try:
            return self._plans[PlanId(plan_id)]
        except (KeyError, ValueError):
            raise PlanNotFound(str(getattr(plan_id, "value", plan_id)), available=self.plan_ids()) from None

    def tier_of(self, plan_id: Union[PlanId, str]) -> int:
        return self.lookup(plan_id).tier

    def plans(self) -> list[Plan]:
        return list(self._plans.values())

    def plan_ids(self) -> list[str]:
        return [p.id.value for p in self._plans.values()]

    @property
    def free_plan(self) -> Plan:
        return self._plans[PlanId.FREE]

    def higher_than(self, plan_id: Union[PlanId, str]) -> list[str]:
        tier = self.tier_of(plan_id)
        return [p.id.value for p in self._plans.values() if p.tier > tier]

    def lower_than(self, plan_id: Union[PlanId, str]) -> list[str]:
        tier = self.tier_of(plan_id)
        return [p.id.value for p in self._plans.values() if p.tier < tier]

    def listing(self) -> list[PlanListing]:
        """Pure projection of the catalog for the plan listing surface."""
        listings = []
        for plan in self._plans.values():
            if plan.is_unlimited:
                per_day: Union[int, str] = "Unlimited"
                total: Union[int, str] = "Unlimited"
            else:
                per_day = plan.credits_per_day
                total = plan.credits_per_day * plan.duration_days
            listings.append(
                PlanListing(
                    id=plan.id,
                    name=plan.name,
                    credits_per_day=per_day,
                    price_in_paisa=plan.price_in_paisa,
                    duration_days=plan.duration_days,
                    price_per_day_in_paisa=round(plan.price_in_paisa / plan.duration_days),
                    total_credits=total,
                    features=list(plan.features),
                )
            )
        return listings
