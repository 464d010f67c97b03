from __future__ import annotations

import pytest

from code_credits.errors import (
    InsufficientCredits,
    InvalidInput,
    PersistenceFailure,
    UserNotFound,
)
from code_credits.models.execution import CreditDecision, CreditSource, ExecutionStatus, Exhausted
from code_credits.models.plan import PlanId
from code_credits.models.transaction import TransactionType
from code_credits.models.user import PromotionalCredit
from code_credits.services.credit_ledger import CreditLedger, day_bounds
from code_credits.services.subscription_service import SubscriptionService

from conftest import DAY, HOUR, NOW, small_catalog


async def _spend(credits: CreditLedger, user_id: str, now=NOW):
    decision = await credits.select_source(user_id, now=now)
    if isinstance(decision, Exhausted):
        return decision
    return await credits.commit(decision, ExecutionStatus.SUCCESS, language="python", now=now)


def test_day_bounds_is_utc_calendar_day():
    start, end = day_bounds(NOW)
    assert start.isoformat() == "2025-03-10T00:00:00+00:00"
    assert end - start == DAY


@pytest.mark.asyncio
async def test_free_credits_exhaust_then_reset_next_day(subscriptions, credits):
    user = await subscriptions.register("alice", now=NOW)

    for _ in range(15):
        record = await _spend(credits, user.id)
        assert record.credit_source is CreditSource.FREE

    exhausted = await credits.select_source(user.id, now=NOW)
    assert isinstance(exhausted, Exhausted)
    assert exhausted.plan is PlanId.FREE
    assert exhausted.remediation == ["purchase_credits", "upgrade_plan"]
    assert "monthly" in exhausted.upgrade_options

    # A new UTC day is a new bucket; nothing had to be reset
    tomorrow = await credits.select_source(user.id, now=NOW + DAY)
    assert isinstance(tomorrow, CreditDecision)
    assert tomorrow.credit_source is CreditSource.FREE


@pytest.mark.asyncio
async def test_priority_order_for_paid_user(db, ledger, transactions, wallet):
    catalog = small_catalog(monthly=2)
    credits = CreditLedger(db=db, ledger=ledger, transactions=transactions, catalog=catalog)
    subscriptions = SubscriptionService(
        db=db, ledger=ledger, transactions=transactions, catalog=catalog
    )

    user = await subscriptions.register("bob", now=NOW - DAY)
    await wallet.deposit(user.id, 60000)
    await subscriptions.subscribe(user.id, PlanId.MONTHLY, now=NOW)
    await wallet.purchase_credits(user.id, 1)
    await credits.grant_credits("admin-1", user.id, 1)

    late = PromotionalCredit(amount=1, offer_name="late", start_date=NOW - DAY, end_date=NOW + 10 * DAY)
    soon = PromotionalCredit(amount=1, offer_name="soon", start_date=NOW - DAY, end_date=NOW + DAY)
    await db.add_promotional_entry(user.id, late)
    await db.add_promotional_entry(user.id, soon)

    used = []
    for _ in range(6):
        record = await _spend(credits, user.id)
        used.append((record.credit_source, record.promo_id))

    assert used == [
        (CreditSource.SUBSCRIPTION, None),
        (CreditSource.SUBSCRIPTION, None),
        (CreditSource.PURCHASED, None),
        (CreditSource.GRANTED, None),
        (CreditSource.PROMOTIONAL, soon.id),
        (CreditSource.PROMOTIONAL, late.id),
    ]

    # Paid users never fall back to the free allotment
    exhausted = await credits.select_source(user.id, now=NOW)
    assert isinstance(exhausted, Exhausted)
    assert exhausted.plan is PlanId.MONTHLY
    assert "wait_for_daily_reset" in exhausted.remediation

    stored = await db.get_user(user.id)
    assert stored.credits.purchased == 0
    assert stored.credits.granted == 0
    assert stored.credits.promotional == []


@pytest.mark.asyncio
async def test_yearly_plan_is_unlimited(subscriptions, credits, wallet, db):
    user = await subscriptions.register("carol", now=NOW)
    await wallet.deposit(user.id, 359900)
    await subscriptions.upgrade(user.id, PlanId.YEARLY, now=NOW)

    for _ in range(10_000):
        decision = await credits.select_source(user.id, now=NOW)
        assert isinstance(decision, CreditDecision)
        assert decision.unlimited
        await credits.commit(decision, ExecutionStatus.SUCCESS, now=NOW)

    status = await credits.get_credit_status(user.id, now=NOW)
    assert status.unlimited
    assert status.remaining_today == "Unlimited"
    assert status.used_today == 10_000
    stored = await db.get_user(user.id)
    assert stored.credits.purchased == 0


@pytest.mark.asyncio
async def test_commit_is_idempotent(subscriptions, credits, wallet, db):
    user = await subscriptions.register("dave", now=NOW)
    await wallet.deposit(user.id, 10000)
    await wallet.purchase_credits(user.id, 2)

    decision = await credits.select_source(user.id, now=NOW)
    assert decision.credit_source is CreditSource.PURCHASED

    first = await credits.commit(decision, ExecutionStatus.SUCCESS, now=NOW)
    second = await credits.commit(decision, ExecutionStatus.SUCCESS, now=NOW)

    assert first.id == second.id == decision.execution_id
    stored = await db.get_user(user.id)
    assert stored.credits.purchased == 1


@pytest.mark.asyncio
async def test_commit_revalidates_drained_pool(subscriptions, credits, wallet, db):
    user = await subscriptions.register("erin", now=NOW)
    await wallet.deposit(user.id, 10000)
    await wallet.purchase_credits(user.id, 1)

    a = await credits.select_source(user.id, now=NOW)
    b = await credits.select_source(user.id, now=NOW)
    assert a.credit_source is b.credit_source is CreditSource.PURCHASED

    await credits.commit(a, ExecutionStatus.SUCCESS, now=NOW)
    with pytest.raises(InsufficientCredits):
        await credits.commit(b, ExecutionStatus.SUCCESS, now=NOW)

    stored = await db.get_user(user.id)
    assert stored.credits.purchased == 0
    assert await db.get_execution(b.execution_id) is None


@pytest.mark.asyncio
async def test_failed_record_write_gives_credit_back(subscriptions, credits, wallet, db, monkeypatch):
    user = await subscriptions.register("frank", now=NOW)
    await wallet.deposit(user.id, 10000)
    await wallet.purchase_credits(user.id, 1)
    decision = await credits.select_source(user.id, now=NOW)

    async def broken_add_execution(record):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "add_execution", broken_add_execution)

    with pytest.raises(PersistenceFailure):
        await credits.commit(decision, ExecutionStatus.SUCCESS, now=NOW)

    stored = await db.get_user(user.id)
    assert stored.credits.purchased == 1


@pytest.mark.asyncio
async def test_failed_promotional_write_restores_entry(subscriptions, credits, db, monkeypatch):
    user = await subscriptions.register("gina", now=NOW)
    entry = PromotionalCredit(amount=1, offer_name="launch", start_date=NOW - DAY, end_date=NOW + DAY)
    await db.add_promotional_entry(user.id, entry)

    decision = await credits.select_source(user.id, now=NOW)
    assert decision.credit_source is CreditSource.PROMOTIONAL

    async def broken_add_execution(record):
        raise RuntimeError("write conflict")

    monkeypatch.setattr(db, "add_execution", broken_add_execution)
    with pytest.raises(PersistenceFailure):
        await credits.commit(decision, ExecutionStatus.SUCCESS, now=NOW)

    stored = await db.get_user(user.id)
    assert [(e.id, e.amount) for e in stored.credits.promotional] == [(entry.id, 1)]


@pytest.mark.asyncio
async def test_expired_promotional_entry_is_ignored(subscriptions, credits, db):
    user = await subscriptions.register("hank", now=NOW)
    stale = PromotionalCredit(amount=5, offer_name="old", start_date=NOW - 3 * DAY, end_date=NOW - HOUR)
    await db.add_promotional_entry(user.id, stale)

    decision = await credits.select_source(user.id, now=NOW)
    assert decision.credit_source is CreditSource.FREE


@pytest.mark.asyncio
async def test_lapsed_paid_plan_uses_free_allotment(subscriptions, credits, wallet):
    user = await subscriptions.register("iris", now=NOW)
    await wallet.deposit(user.id, 49900)
    await subscriptions.subscribe(user.id, PlanId.MONTHLY, now=NOW)

    # Renewal sweep has not run yet, but the period is over
    decision = await credits.select_source(user.id, now=NOW + 31 * DAY)
    assert decision.credit_source is CreditSource.FREE
    assert decision.plan is PlanId.FREE


@pytest.mark.asyncio
async def test_failed_attempts_count_against_quota(subscriptions, credits):
    user = await subscriptions.register("jack", now=NOW)
    decision = await credits.select_source(user.id, now=NOW)
    await credits.commit(decision, ExecutionStatus.FAILED, error="SyntaxError", now=NOW)

    status = await credits.get_credit_status(user.id, now=NOW)
    assert status.used_today == 1
    assert status.remaining_today == 14
    assert status.free_remaining_today == 14


@pytest.mark.asyncio
async def test_unbilled_records_do_not_count(subscriptions, credits):
    user = await subscriptions.register("kate", now=NOW)
    decision = await credits.select_source(user.id, now=NOW)
    record = await credits.commit_unbilled(decision, ExecutionStatus.SUCCESS, now=NOW)

    assert record.credits_used == 0
    status = await credits.get_credit_status(user.id, now=NOW)
    assert status.used_today == 0


@pytest.mark.asyncio
async def test_credit_status_for_free_user(subscriptions, credits, db):
    user = await subscriptions.register("liam", now=NOW)
    for _ in range(3):
        await _spend(credits, user.id)
    await db.add_promotional_entry(
        user.id,
        PromotionalCredit(amount=4, offer_name="spring", start_date=NOW - DAY, end_date=NOW + DAY),
    )

    status = await credits.get_credit_status(user.id, now=NOW)
    assert status.plan is PlanId.FREE
    assert status.daily_allotment == 15
    assert status.used_today == 3
    assert status.remaining_today == 12
    assert status.promotional_total == 4
    assert status.active_subscription.plan is PlanId.FREE
    assert status.scheduled_subscription is None


@pytest.mark.asyncio
async def test_grant_credits(subscriptions, credits, db):
    user = await subscriptions.register("mia", now=NOW)

    tx = await credits.grant_credits("admin-7", user.id, 25)

    assert tx.transaction_type is TransactionType.CREDIT_GRANT
    assert tx.credits == 25
    assert tx.metadata["admin_id"] == "admin-7"
    stored = await db.get_user(user.id)
    assert stored.credits.granted == 25


@pytest.mark.asyncio
async def test_grant_credits_rejects_bad_input(subscriptions, credits):
    user = await subscriptions.register("noah", now=NOW)

    with pytest.raises(InvalidInput):
        await credits.grant_credits("admin-1", user.id, 0)
    with pytest.raises(UserNotFound):
        await credits.grant_credits("admin-1", "missing", 5)


@pytest.mark.asyncio
async def test_execution_history_newest_first(subscriptions, credits):
    user = await subscriptions.register("olga", now=NOW)
    first = await _spend(credits, user.id, now=NOW)
    second = await _spend(credits, user.id, now=NOW + HOUR)

    history = await credits.execution_history(user.id)
    assert [r.id for r in history] == [second.id, first.id]
