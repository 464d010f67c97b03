from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..container import Services
from ..errors import InvalidInput
from ..models.api_models import (
    AutoRenewRequest,
    BalanceResponse,
    DepositRequest,
    ExecuteRequest,
    ExecuteResponse,
    GrantCreditsRequest,
    PlanChangeRequest,
    PromotionRequest,
    PromotionUpdateRequest,
    PurchaseCreditsRequest,
    RegisterRequest,
)
from ..models.execution import ExecutionRecord
from ..models.ledger import LedgerEntry
from ..models.plan import PlanListing
from ..models.promotion import PromotionChange, PromotionSummary
from ..models.status import CreditStatus, SubscriptionOverview, SweepReport
from ..models.subscription import Subscription
from ..models.transaction import BalanceReconciliation, Transaction
from ..models.user import UserAccount


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return user_id


def current_admin_id(x_admin_id: Optional[str] = Header(default=None)) -> str:
    if not x_admin_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Admin-Id header")
    return x_admin_id


def request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


# Public

public_router = APIRouter(tags=["plans"])


@public_router.get("/plans", response_model=list[PlanListing])
async def list_plans(services: Services = Depends(get_services)) -> list[PlanListing]:
    return services.catalog.listing()


@public_router.post("/users/register", response_model=UserAccount, status_code=201)
async def register(
    payload: RegisterRequest, services: Services = Depends(get_services)
) -> UserAccount:
    return await services.subscriptions.register(payload.username, payload.email)


# Subscription

subscription_router = APIRouter(prefix="/subscription", tags=["subscription"])


@subscription_router.get("/status", response_model=SubscriptionOverview)
async def subscription_status(
    user_id: str = Depends(current_user_id), services: Services = Depends(get_services)
) -> SubscriptionOverview:
    return await services.subscriptions.get_status(user_id)


@subscription_router.post("/subscribe", response_model=Subscription)
async def subscribe(
    payload: PlanChangeRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Subscription:
    return await services.subscriptions.subscribe(user_id, payload.plan)


@subscription_router.post("/upgrade", response_model=Subscription)
async def upgrade(
    payload: PlanChangeRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Subscription:
    return await services.subscriptions.upgrade(user_id, payload.plan)


@subscription_router.post("/downgrade", response_model=Subscription)
async def downgrade(
    payload: PlanChangeRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Subscription:
    return await services.subscriptions.downgrade(user_id, payload.plan)


@subscription_router.post("/cancel", response_model=Subscription)
async def cancel(
    user_id: str = Depends(current_user_id), services: Services = Depends(get_services)
) -> Subscription:
    return await services.subscriptions.cancel(user_id)


@subscription_router.delete("/scheduled", response_model=Transaction)
async def cancel_scheduled_upgrade(
    user_id: str = Depends(current_user_id), services: Services = Depends(get_services)
) -> Transaction:
    return await services.subscriptions.cancel_scheduled_upgrade(user_id)


@subscription_router.put("/auto-renew", response_model=UserAccount)
async def set_auto_renew(
    payload: AutoRenewRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> UserAccount:
    return await services.subscriptions.set_auto_renew(user_id, payload.enabled)


@subscription_router.get("/transactions", response_model=list[Transaction])
async def subscription_transactions(
    limit: int = 50,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> list[Transaction]:
    return await services.subscriptions.subscription_transactions(user_id, limit=limit)


# Credits

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("/status", response_model=CreditStatus)
async def credit_status(
    user_id: str = Depends(current_user_id), services: Services = Depends(get_services)
) -> CreditStatus:
    return await services.credits.get_credit_status(user_id)


@credits_router.post("/execute", response_model=ExecuteResponse)
async def execute(
    payload: ExecuteRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> ExecuteResponse:
    outcome = await services.executions.execute(
        user_id, payload.language, payload.code, payload.input
    )
    record = outcome.record
    return ExecuteResponse(
        execution_id=record.id,
        output=outcome.output,
        error=outcome.error,
        credit_source=record.credit_source.value,
        credits_used=record.credits_used,
        execution_time=record.execution_time,
    )


@credits_router.get("/history", response_model=list[ExecutionRecord])
async def execution_history(
    limit: int = 50,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> list[ExecutionRecord]:
    return await services.credits.execution_history(user_id, limit=limit)


# Wallet

wallet_router = APIRouter(prefix="/wallet", tags=["wallet"])


@wallet_router.get("/balance", response_model=BalanceResponse)
async def wallet_balance(
    user_id: str = Depends(current_user_id), services: Services = Depends(get_services)
) -> BalanceResponse:
    user = await services.wallet.get_balance(user_id)
    return BalanceResponse(
        user_id=user_id,
        balance_in_paisa=user.balance_in_paisa,
        purchased_credits=user.credits.purchased,
    )


@wallet_router.post("/deposit", response_model=Transaction)
async def deposit(
    payload: DepositRequest,
    request: Request,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Transaction:
    return await services.wallet.deposit(
        user_id, payload.amount_in_paisa, correlation_id=request_id(request)
    )


@wallet_router.post("/purchase", response_model=Transaction)
async def purchase_credits(
    payload: PurchaseCreditsRequest,
    request: Request,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> Transaction:
    return await services.wallet.purchase_credits(
        user_id, payload.credits, correlation_id=request_id(request)
    )


@wallet_router.get("/transactions", response_model=list[Transaction])
async def wallet_transactions(
    limit: int = 50,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> list[Transaction]:
    return await services.transactions.history(user_id, limit=limit)


# Admin

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.post("/credits/grant", response_model=Transaction)
async def grant_credits(
    payload: GrantCreditsRequest,
    request: Request,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> Transaction:
    return await services.credits.grant_credits(
        admin_id, payload.user_id, payload.amount, correlation_id=request_id(request)
    )


@admin_router.get("/promotions", response_model=list[PromotionSummary])
async def list_promotions(
    admin_id: str = Depends(current_admin_id), services: Services = Depends(get_services)
) -> list[PromotionSummary]:
    return await services.promotions.list_promotions()


@admin_router.post("/promotions", response_model=PromotionChange, status_code=201)
async def create_promotion(
    payload: PromotionRequest,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> PromotionChange:
    return await services.promotions.create_promotion(
        payload.offer_name,
        payload.credits,
        payload.start_date,
        payload.end_date,
        created_by=admin_id,
    )


@admin_router.patch("/promotions/{promotion_id}", response_model=PromotionChange)
async def update_promotion(
    promotion_id: str,
    payload: PromotionUpdateRequest,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> PromotionChange:
    return await services.promotions.update_promotion(
        promotion_id,
        credits=payload.credits,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )


@admin_router.delete("/promotions/{promotion_id}", response_model=PromotionChange)
async def delete_promotion(
    promotion_id: str,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> PromotionChange:
    return await services.promotions.delete_promotion(promotion_id)


@admin_router.post("/promotions/{promotion_id}/users/{user_id}")
async def grant_promotion(
    promotion_id: str,
    user_id: str,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> dict:
    granted = await services.promotions.grant_promotion_to_user(promotion_id, user_id)
    return {"success": True, "granted": granted}


@admin_router.post("/sweeps/{sweep}", response_model=SweepReport)
async def run_sweep(
    sweep: str,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> SweepReport:
    runners = {
        "activation": services.sweeper.activate_scheduled_subscriptions,
        "renewal": services.sweeper.renew_or_expire_subscriptions,
        "promotions": services.sweeper.run_promotion_sweeps,
    }
    runner = runners.get(sweep)
    if runner is None:
        raise InvalidInput(f"Unknown sweep {sweep!r}", available_sweeps=list(runners))
    return await runner()


@admin_router.post("/users/{user_id}/repair", response_model=Subscription)
async def repair_subscription(
    user_id: str,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> Subscription:
    return await services.subscriptions.repair_active_subscription(user_id)


@admin_router.get("/users/{user_id}/reconcile", response_model=BalanceReconciliation)
async def reconcile_balance(
    user_id: str,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> BalanceReconciliation:
    return await services.transactions.reconcile_balance(user_id)


@admin_router.get("/users/{user_id}/ledger", response_model=list[LedgerEntry])
async def user_ledger(
    user_id: str,
    execution_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    limit: int = 100,
    admin_id: str = Depends(current_admin_id),
    services: Services = Depends(get_services),
) -> list[LedgerEntry]:
    return await services.ledger.entries(
        user_id=user_id,
        execution_id=execution_id,
        subscription_id=subscription_id,
        limit=limit,
    )


router = APIRouter(prefix="/api")
router.include_router(public_router)
router.include_router(subscription_router)
router.include_router(credits_router)
router.include_router(wallet_router)
router.include_router(admin_router)
