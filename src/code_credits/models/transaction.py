from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field, computed_field

from .base import DBSerializableModel, utcnow


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    CREDIT_PURCHASE = "credit_purchase"
    CREDIT_GRANT = "credit_grant"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    SUBSCRIPTION_DOWNGRADE = "subscription_downgrade"
    SUBSCRIPTION_CANCELLATION = "subscription_cancellation"
    SUBSCRIPTION_REFUND = "subscription_refund"
    SUBSCRIPTION_ACTIVATION = "subscription_activation"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    SUBSCRIPTION_EXPIRY = "subscription_expiry"

    @property
    def balance_direction(self) -> int:
        """+1 credits the wallet, -1 debits it, 0 leaves it untouched."""
        if self in (TransactionType.DEPOSIT, TransactionType.SUBSCRIPTION_REFUND):
            return 1
        if self in _DEBITS:
            return -1
        return 0

    @property
    def is_subscription_event(self) -> bool:
        return self.value.startswith("subscription_")


_DEBITS = frozenset(
    {
        TransactionType.CREDIT_PURCHASE,
        TransactionType.SUBSCRIPTION_PAYMENT,
        TransactionType.SUBSCRIPTION_UPGRADE,
        TransactionType.SUBSCRIPTION_DOWNGRADE,
        TransactionType.SUBSCRIPTION_RENEWAL,
    }
)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(DBSerializableModel):
    """
    Append-only ledger entry for money and credit movements.
    ``amount_in_paisa`` is always a non-negative magnitude; the direction
    comes from the transaction type.
    """

    collection_name: ClassVar[str] = "code_credits_transactions"

    id: Optional[str] = Field(default=None)
    user_id: str
    transaction_type: TransactionType
    amount_in_paisa: int = Field(default=0, ge=0)
    credits: int = 0
    balance_after_in_paisa: Optional[int] = None
    description: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BalanceReconciliation(BaseModel):
    user_id: str
    ledger_balance_in_paisa: int
    live_balance_in_paisa: int
    transactions_considered: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def drift_in_paisa(self) -> int:
        return self.live_balance_in_paisa - self.ledger_balance_in_paisa

    @computed_field  # type: ignore[prop-decorator]
    @property
    def consistent(self) -> bool:
        return self.drift_in_paisa == 0
