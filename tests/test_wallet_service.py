from __future__ import annotations

import json

import pytest

from code_credits.errors import InsufficientBalance, InvalidInput, UserNotFound
from code_credits.models.plan import PlanId
from code_credits.models.transaction import TransactionType

from conftest import NOW


@pytest.mark.asyncio
async def test_deposit_and_purchase(subscriptions, wallet, db):
    user = await subscriptions.register("alice", now=NOW)

    deposit = await wallet.deposit(user.id, 10000, correlation_id="req-1")
    assert deposit.transaction_type is TransactionType.DEPOSIT
    assert deposit.balance_after_in_paisa == 10000

    purchase = await wallet.purchase_credits(user.id, 20)
    assert purchase.amount_in_paisa == 1000
    assert purchase.credits == 20
    assert purchase.balance_after_in_paisa == 9000

    account = await wallet.get_balance(user.id)
    assert account.balance_in_paisa == 9000
    assert account.credits.purchased == 20


@pytest.mark.asyncio
async def test_deposit_minimum(subscriptions, wallet):
    user = await subscriptions.register("bob", now=NOW)

    with pytest.raises(InvalidInput) as excinfo:
        await wallet.deposit(user.id, 9999)
    assert excinfo.value.details["minimum_in_paisa"] == 10000

    with pytest.raises(UserNotFound):
        await wallet.deposit("ghost", 10000)


@pytest.mark.asyncio
async def test_purchase_needs_balance(subscriptions, wallet, db):
    user = await subscriptions.register("carol", now=NOW)

    with pytest.raises(InsufficientBalance):
        await wallet.purchase_credits(user.id, 1)
    with pytest.raises(InvalidInput):
        await wallet.purchase_credits(user.id, 0)

    account = await db.get_user(user.id)
    assert account.balance_in_paisa == 0
    assert account.credits.purchased == 0


@pytest.mark.asyncio
async def test_reconcile_balance(subscriptions, wallet, transactions, db):
    user = await subscriptions.register("dave", now=NOW)
    await wallet.deposit(user.id, 300000)
    await subscriptions.subscribe(user.id, PlanId.MONTHLY, now=NOW)
    await subscriptions.upgrade(user.id, PlanId.SIX_MONTH, now=NOW)
    await subscriptions.cancel_scheduled_upgrade(user.id)
    await wallet.purchase_credits(user.id, 10)

    result = await transactions.reconcile_balance(user.id)
    assert result.consistent
    assert result.ledger_balance_in_paisa == 300000 - 49900 - 500
    assert result.transactions_considered == 5

    # A write that bypassed the ledger shows up as drift
    await db.adjust_balance(user.id, 100)
    drifted = await transactions.reconcile_balance(user.id)
    assert not drifted.consistent
    assert drifted.drift_in_paisa == 100
    assert drifted.model_dump()["drift_in_paisa"] == 100


@pytest.mark.asyncio
async def test_transaction_amount_is_a_magnitude(subscriptions, transactions):
    user = await subscriptions.register("erin", now=NOW)
    with pytest.raises(ValueError):
        await transactions.create(user.id, TransactionType.DEPOSIT, "bad", amount_in_paisa=-1)


@pytest.mark.asyncio
async def test_ledger_file_mirror(subscriptions, wallet, tmp_path):
    user = await subscriptions.register("finn", now=NOW)
    tx = await wallet.deposit(user.id, 10000, correlation_id="req-9")

    lines = (tmp_path / "ledger.log").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    deposit = [e for e in entries if e.get("correlation_id") == "req-9"]
    assert len(deposit) == 1
    assert deposit[0]["event_type"] == "transaction"
    assert deposit[0]["transaction_id"] == tx.id
    assert deposit[0]["amount_in_paisa"] == 10000
    assert deposit[0]["details"]["transaction_type"] == "deposit"
    assert "execution_id" not in deposit[0]
