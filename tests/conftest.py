from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from code_credits.catalog import PlanCatalog
from code_credits.config import DowngradePolicy
from code_credits.db.memory import InMemoryDBManager
from code_credits.execution.delegate import DelegateResult, ExecutionDelegate
from code_credits.logging.ledger_logger import LedgerLogger
from code_credits.models.plan import PlanId
from code_credits.services.credit_ledger import CreditLedger
from code_credits.services.promotion_service import PromotionService
from code_credits.services.subscription_service import SubscriptionService
from code_credits.services.sweeps import SubscriptionSweeper
from code_credits.services.transaction_ledger import TransactionLedger
from code_credits.services.wallet_service import WalletService


NOW = datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def small_catalog(free: int = 15, monthly: int = 1500) -> PlanCatalog:
    """Default catalog with reduced daily quotas so exhaustion is cheap to reach."""
    overrides = {PlanId.FREE: free, PlanId.MONTHLY: monthly}
    return PlanCatalog(
        p.model_copy(update={"credits_per_day": overrides[p.id]}) if p.id in overrides else p
        for p in PlanCatalog.default().plans()
    )


class EchoDelegate(ExecutionDelegate):
    """Runs nothing; echoes the input back as output."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, Optional[str]]] = []

    async def run(self, language, code, input="", request_id=None) -> DelegateResult:
        self.calls.append((language, code, input, request_id))
        if "raise" in code:
            return DelegateResult(error="Traceback: boom")
        return DelegateResult(output=input or "ok")


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def catalog():
    return PlanCatalog.default()


@pytest.fixture
def transactions(db, ledger):
    return TransactionLedger(db=db, ledger=ledger)


@pytest.fixture
def credits(db, ledger, transactions, catalog):
    return CreditLedger(db=db, ledger=ledger, transactions=transactions, catalog=catalog)


@pytest.fixture
def downgrade_policy():
    return DowngradePolicy.IMMEDIATE


@pytest.fixture
def subscriptions(db, ledger, transactions, catalog, downgrade_policy):
    return SubscriptionService(
        db=db,
        ledger=ledger,
        transactions=transactions,
        catalog=catalog,
        cancellation_window_hours=24,
        downgrade_policy=downgrade_policy,
    )


@pytest.fixture
def wallet(db, transactions):
    return WalletService(db=db, transactions=transactions)


@pytest.fixture
def promotions(db, ledger):
    return PromotionService(db=db, ledger=ledger)


@pytest.fixture
def sweeper(db, ledger, subscriptions, promotions):
    return SubscriptionSweeper(
        db=db, ledger=ledger, subscriptions=subscriptions, promotions=promotions
    )


@pytest.fixture
def delegate():
    return EchoDelegate()
