from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .execution import CreditSource


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    EXECUTION = "execution"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit entry persisted to DB and mirrored to the ledger file.

    The reference fields tie an entry to the execution, subscription,
    wallet transaction or promotion it is about, so an audit can be pulled
    per object without parsing ``details``.
    """

    collection_name: ClassVar[str] = "code_credits_ledger"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Request id of the API call that caused the event, when known.",
    )
    execution_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    promotion_id: Optional[str] = None
    credit_source: Optional[CreditSource] = None
    amount_in_paisa: Optional[int] = None
    credits: Optional[int] = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
