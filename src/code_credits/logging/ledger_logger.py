from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.execution import CreditSource, ExecutionRecord
from ..models.ledger import LedgerEntry, LedgerEventType
from ..models.transaction import Transaction


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Audit trail for credit, wallet and subscription activity.

    Every entry is stored through the configured `BaseDBManager` and
    appended to a line-delimited JSON file for log aggregators. Entries
    carry the id of the execution, subscription, transaction or promotion
    they concern as first-class fields; free-form extras go in ``details``.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self, tx: Transaction, correlation_id: Optional[str] = None
    ) -> LedgerEntry:
        """Mirror a wallet or plan transaction that has just been stored."""
        return await self._log(
            LedgerEntry(
                event_type=LedgerEventType.TRANSACTION,
                user_id=tx.user_id,
                correlation_id=correlation_id,
                transaction_id=tx.id,
                subscription_id=tx.metadata.get("subscription_id"),
                amount_in_paisa=tx.amount_in_paisa,
                credits=tx.credits,
                message=tx.description,
                details={
                    "transaction_type": tx.transaction_type.value,
                    "balance_after_in_paisa": tx.balance_after_in_paisa,
                    "status": tx.status.value,
                },
            )
        )

    async def log_execution(
        self, record: ExecutionRecord, message: str, **details: Any
    ) -> LedgerEntry:
        return await self._log(
            LedgerEntry(
                event_type=LedgerEventType.EXECUTION,
                user_id=record.user_id,
                execution_id=record.id,
                credit_source=record.credit_source,
                credits=record.credits_used,
                message=message,
                details={
                    "status": record.status.value,
                    "plan": record.plan_at_time.value,
                    "promo_id": record.promo_id,
                    **details,
                },
            )
        )

    async def log_user_event(
        self,
        user_id: str,
        message: str,
        *,
        subscription_id: Optional[str] = None,
        promotion_id: Optional[str] = None,
        credits: Optional[int] = None,
        **details: Any,
    ) -> LedgerEntry:
        """Account changes that move no money, e.g. an auto-renew toggle."""
        return await self._log(
            LedgerEntry(
                event_type=LedgerEventType.TRANSACTION,
                user_id=user_id,
                subscription_id=subscription_id,
                promotion_id=promotion_id,
                credits=credits,
                message=message,
                details=details,
            )
        )

    async def log_error(
        self,
        message: str,
        *,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        credit_source: Optional[CreditSource] = None,
        error: Optional[BaseException] = None,
        correlation_id: Optional[str] = None,
        **details: Any,
    ) -> LedgerEntry:
        if error is not None:
            details["error"] = repr(error)
        return await self._log(
            LedgerEntry(
                event_type=LedgerEventType.ERROR,
                user_id=user_id,
                correlation_id=correlation_id,
                execution_id=execution_id,
                subscription_id=subscription_id,
                credit_source=credit_source,
                message=message,
                details=details,
            )
        )

    async def log_system(
        self, message: str, *, promotion_id: Optional[str] = None, **details: Any
    ) -> LedgerEntry:
        """Events not tied to one user, e.g. a sweep run summary."""
        return await self._log(
            LedgerEntry(
                event_type=LedgerEventType.SYSTEM,
                promotion_id=promotion_id,
                message=message,
                details=details,
            )
        )

    async def entries(
        self,
        *,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """Stored entries matching every given reference, newest first."""
        return await self._db.get_ledger_entries(
            user_id=user_id,
            execution_id=execution_id,
            subscription_id=subscription_id,
            limit=limit,
        )

    async def _log(self, entry: LedgerEntry) -> LedgerEntry:
        entry = await self._db.add_ledger_entry(entry)
        # The file mirror is best-effort; the DB row above is the record.
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json(exclude_none=True) + "\n")
        except OSError as e:
            logger.warning("Ledger file write failed: %s", e, extra={"path": str(self._file_path)})
        return entry
