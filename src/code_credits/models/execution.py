from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow
from .plan import PlanId


class CreditSource(str, Enum):
    """The closed set of pools that can fund an execution."""

    FREE = "free"
    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"
    GRANTED = "granted"
    PROMOTIONAL = "promotional"

    @property
    def is_counted(self) -> bool:
        # Metered by counting execution records rather than by decrementing
        return self in (CreditSource.FREE, CreditSource.SUBSCRIPTION)


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionRecord(DBSerializableModel):
    """
    Immutable usage record, one per execution attempt.

    The id is the execution id issued when the credit source was selected,
    so committing the same decision twice cannot write two records.
    """

    collection_name: ClassVar[str] = "code_credits_executions"

    id: str
    user_id: str
    credit_source: CreditSource
    promo_id: Optional[str] = None
    plan_at_time: PlanId = PlanId.FREE
    language: Optional[str] = None
    status: ExecutionStatus
    error: Optional[str] = None
    execution_time: float = Field(default=0.0, description="Wall time in seconds.")
    credits_used: int = Field(default=1, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class CreditDecision(BaseModel):
    """
    Request-scoped outcome of source selection, threaded from selection
    through the external execution call to the commit.
    """

    execution_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    credit_source: CreditSource
    promo_id: Optional[str] = None
    plan: PlanId = PlanId.FREE
    unlimited: bool = False
    decided_at: datetime = Field(default_factory=utcnow)


class Exhausted(BaseModel):
    """No pool can fund the request. A normal outcome, not a fault."""

    user_id: str
    plan: PlanId
    message: str
    remediation: list[str] = Field(default_factory=list)
    upgrade_options: list[str] = Field(default_factory=list)
