"""
Wiring of the database manager, ledger logger and services.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .catalog import PlanCatalog
from .config import Settings, settings as default_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .execution.delegate import ExecutionDelegate, HttpExecutionDelegate
from .execution.service import ExecutionService
from .logging.ledger_logger import LedgerLogger
from .services.credit_ledger import CreditLedger
from .services.promotion_service import PromotionService
from .services.scheduler import SweepScheduler
from .services.subscription_service import SubscriptionService
from .services.sweeps import SubscriptionSweeper
from .services.transaction_ledger import TransactionLedger
from .services.wallet_service import WalletService


def _create_db_manager(config: Settings) -> BaseDBManager:
    if config.MONGO_URI:
        return MongoDBManager.from_client_uri(
            config.MONGO_URI,
            config.MONGO_DB,
            lock_ttl_seconds=config.USER_LOCK_TTL_SECONDS,
            lock_wait_seconds=config.USER_LOCK_WAIT_SECONDS,
        )
    return InMemoryDBManager()


class Services:
    """Everything the HTTP layer and the sweeps need, built once per app."""

    def __init__(
        self,
        config: Settings,
        db: BaseDBManager,
        delegate: ExecutionDelegate,
        catalog: Optional[PlanCatalog] = None,
    ) -> None:
        self.config = config
        self.db = db
        self.catalog = catalog or PlanCatalog.default()
        self.ledger = LedgerLogger(db=db, file_path=Path(config.LEDGER_LOG_PATH))
        self.transactions = TransactionLedger(db=db, ledger=self.ledger)
        self.credits = CreditLedger(
            db=db, ledger=self.ledger, transactions=self.transactions, catalog=self.catalog
        )
        self.subscriptions = SubscriptionService(
            db=db,
            ledger=self.ledger,
            transactions=self.transactions,
            catalog=self.catalog,
            cancellation_window_hours=config.CANCELLATION_WINDOW_HOURS,
            downgrade_policy=config.DOWNGRADE_POLICY,
        )
        self.wallet = WalletService(
            db=db,
            transactions=self.transactions,
            credit_price_in_paisa=config.CREDIT_PRICE_IN_PAISA,
            min_deposit_in_paisa=config.MIN_DEPOSIT_IN_PAISA,
        )
        self.promotions = PromotionService(db=db, ledger=self.ledger)
        self.sweeper = SubscriptionSweeper(
            db=db,
            ledger=self.ledger,
            subscriptions=self.subscriptions,
            promotions=self.promotions,
        )
        self.executions = ExecutionService(
            credits=self.credits,
            delegate=delegate,
            ledger=self.ledger,
            timeout_seconds=config.EXECUTION_TIMEOUT_SECONDS,
        )

    def scheduler(self) -> SweepScheduler:
        return SweepScheduler(
            self.sweeper,
            activation_interval_minutes=self.config.ACTIVATION_SWEEP_INTERVAL_MINUTES,
            renewal_interval_minutes=self.config.RENEWAL_SWEEP_INTERVAL_MINUTES,
            promotion_interval_minutes=self.config.PROMOTION_SWEEP_INTERVAL_MINUTES,
        )


def build_services(
    config: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
    delegate: Optional[ExecutionDelegate] = None,
) -> Services:
    config = config or default_settings
    return Services(
        config=config,
        db=db or _create_db_manager(config),
        delegate=delegate
        or HttpExecutionDelegate(
            config.EXECUTION_GATEWAY_URL, timeout_seconds=config.EXECUTION_TIMEOUT_SECONDS
        ),
    )
