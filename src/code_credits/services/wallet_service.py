from __future__ import annotations

from typing import Optional

from ..db.base import BaseDBManager
from ..errors import InsufficientBalance, InvalidInput, PersistenceFailure, UserNotFound
from ..models.transaction import Transaction, TransactionType
from ..models.user import CreditPool, UserAccount
from .transaction_ledger import TransactionLedger


class WalletService:
    """
    Wallet balance (integer paisa) and credit purchases funded from it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        transactions: TransactionLedger,
        *,
        credit_price_in_paisa: int = 50,
        min_deposit_in_paisa: int = 10000,
    ) -> None:
        self._db = db
        self._transactions = transactions
        self._credit_price = credit_price_in_paisa
        self._min_deposit = min_deposit_in_paisa

    async def get_balance(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def deposit(
        self,
        user_id: str,
        amount_in_paisa: int,
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        if isinstance(amount_in_paisa, bool) or not isinstance(amount_in_paisa, int):
            raise InvalidInput("Deposit amount must be an integer number of paisa")
        if amount_in_paisa < self._min_deposit:
            raise InvalidInput(
                f"Minimum deposit is {self._min_deposit} paisa",
                minimum_in_paisa=self._min_deposit,
                amount_in_paisa=amount_in_paisa,
            )

        async with self._db.user_lock(user_id):
            async with self._db.transaction():
                balance = await self._db.adjust_balance(user_id, amount_in_paisa)
                if balance is None:
                    raise UserNotFound(user_id)
                return await self._transactions.create(
                    user_id,
                    TransactionType.DEPOSIT,
                    "Wallet deposit",
                    amount_in_paisa=amount_in_paisa,
                    balance_after_in_paisa=balance,
                    correlation_id=correlation_id,
                )

    async def purchase_credits(
        self,
        user_id: str,
        credits: int,
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidInput("Number of credits must be a positive integer", credits=credits)
        cost = credits * self._credit_price

        async with self._db.user_lock(user_id):
            user = await self._db.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id)
            async with self._db.transaction():
                balance = await self._db.adjust_balance(user_id, -cost)
                if balance is None:
                    raise InsufficientBalance(cost, user.balance_in_paisa)
                try:
                    await self._db.adjust_credit_pool(user_id, CreditPool.PURCHASED, credits)
                except Exception as exc:
                    await self._db.adjust_balance(user_id, cost)
                    raise PersistenceFailure("Credit purchase could not be completed") from exc
                return await self._transactions.create(
                    user_id,
                    TransactionType.CREDIT_PURCHASE,
                    f"Purchased {credits} credits",
                    amount_in_paisa=cost,
                    credits=credits,
                    balance_after_in_paisa=balance,
                    metadata={"price_per_credit_in_paisa": self._credit_price},
                    correlation_id=correlation_id,
                )
