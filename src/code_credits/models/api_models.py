from datetime import datetime

from pydantic import BaseModel, Field

from .plan import PlanId


class RegisterRequest(BaseModel):
    username: str
    email: str | None = None


class PlanChangeRequest(BaseModel):
    plan: PlanId


class AutoRenewRequest(BaseModel):
    enabled: bool


class DepositRequest(BaseModel):
    amount_in_paisa: int


class PurchaseCreditsRequest(BaseModel):
    credits: int


class GrantCreditsRequest(BaseModel):
    user_id: str
    amount: int


class ExecuteRequest(BaseModel):
    language: str
    code: str
    input: str = ""


class ExecuteResponse(BaseModel):
    execution_id: str
    output: str | None = None
    error: str | None = None
    credit_source: str
    credits_used: int
    execution_time: float


class PromotionRequest(BaseModel):
    offer_name: str
    credits: int
    start_date: datetime
    end_date: datetime


class PromotionUpdateRequest(BaseModel):
    credits: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class BalanceResponse(BaseModel):
    user_id: str
    balance_in_paisa: int
    purchased_credits: int = Field(default=0)
