from __future__ import annotations

from typing import Any, Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import (
    BalanceReconciliation,
    Transaction,
    TransactionStatus,
    TransactionType,
)


class TransactionLedger:
    """
    Append-only record of monetary and credit-granting events.

    Every balance- or plan-affecting action writes exactly one Transaction
    through `create`. The live balance stays on the user document; this
    ledger is what it is reconciled against.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def create(
        self,
        user_id: str,
        transaction_type: TransactionType,
        description: str,
        *,
        amount_in_paisa: int = 0,
        credits: int = 0,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        balance_after_in_paisa: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        if amount_in_paisa < 0:
            raise ValueError("amount_in_paisa is a magnitude and must be >= 0")
        tx = Transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount_in_paisa=amount_in_paisa,
            credits=credits,
            balance_after_in_paisa=balance_after_in_paisa,
            description=description,
            status=status,
            metadata=metadata or {},
        )
        tx = await self._db.add_transaction(tx)

        await self._ledger.log_transaction(tx, correlation_id=correlation_id)
        return tx

    async def history(
        self,
        user_id: str,
        types: Optional[Iterable[TransactionType]] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        return await self._db.get_transactions(user_id, types=types, limit=limit)

    async def reconcile_balance(self, user_id: str) -> BalanceReconciliation:
        """
        Recompute the wallet balance from completed transactions and compare
        it with the live balance on the user document.
        """
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        txs = await self._db.get_transactions(user_id)
        computed = 0
        considered = 0
        for tx in txs:
            if tx.status is not TransactionStatus.COMPLETED:
                continue
            direction = tx.transaction_type.balance_direction
            if direction:
                computed += direction * tx.amount_in_paisa
                considered += 1

        result = BalanceReconciliation(
            user_id=user_id,
            ledger_balance_in_paisa=computed,
            live_balance_in_paisa=user.balance_in_paisa,
            transactions_considered=considered,
        )
        if not result.consistent:
            await self._ledger.log_error(
                "Wallet balance drift detected",
                user_id=user_id,
                ledger_balance_in_paisa=computed,
                live_balance_in_paisa=user.balance_in_paisa,
                drift_in_paisa=result.drift_in_paisa,
            )
        return result
