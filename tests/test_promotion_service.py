from __future__ import annotations

import pytest

from code_credits.errors import InvalidInput, PromotionNotFound, UserNotFound

from conftest import DAY, NOW


async def _entries(db, user_id):
    return (await db.get_user(user_id)).credits.promotional


@pytest.mark.asyncio
async def test_create_promotion_reaches_existing_users_only(subscriptions, promotions, db):
    alice = await subscriptions.register("alice", now=NOW)
    bob = await subscriptions.register("bob", now=NOW)

    change = await promotions.create_promotion(
        "spring", 5, NOW - DAY, NOW + 7 * DAY, created_by="admin-1"
    )

    assert change.users_updated == 2
    assert change.promotion.id is not None
    for user in (alice, bob):
        [entry] = await _entries(db, user.id)
        assert entry.offer_name == "spring"
        assert entry.amount == 5

    # Registration does not hand out running promotions; the sweep does
    carol = await subscriptions.register("carol", now=NOW + DAY)
    assert await _entries(db, carol.id) == []

    assert await promotions.apply_active_promotions(NOW + DAY) == 1
    assert [e.amount for e in await _entries(db, carol.id)] == [5]
    assert await promotions.apply_active_promotions(NOW + DAY) == 0


@pytest.mark.asyncio
async def test_spent_promotion_is_not_granted_again(subscriptions, promotions, db):
    user = await subscriptions.register("dave", now=NOW)
    await promotions.create_promotion("launch", 2, NOW - DAY, NOW + DAY, created_by="admin-1")
    [entry] = await _entries(db, user.id)

    for _ in range(2):
        assert await db.consume_promotional_credit(user.id, entry.id, NOW) is not None
    assert await _entries(db, user.id) == []

    assert await promotions.apply_active_promotions(NOW) == 0
    assert await _entries(db, user.id) == []


@pytest.mark.asyncio
async def test_promotion_validation(promotions):
    with pytest.raises(InvalidInput):
        await promotions.create_promotion("", 5, NOW, NOW + DAY, created_by="admin-1")
    with pytest.raises(InvalidInput):
        await promotions.create_promotion("bad", 0, NOW, NOW + DAY, created_by="admin-1")
    with pytest.raises(InvalidInput):
        await promotions.create_promotion("bad", 5, NOW + DAY, NOW, created_by="admin-1")

    await promotions.create_promotion("dup", 5, NOW, NOW + DAY, created_by="admin-1")
    with pytest.raises(InvalidInput):
        await promotions.create_promotion("dup", 3, NOW, NOW + DAY, created_by="admin-2")


@pytest.mark.asyncio
async def test_update_promotion_propagates_to_entries(subscriptions, promotions, db):
    user = await subscriptions.register("erin", now=NOW)
    created = await promotions.create_promotion(
        "summer", 5, NOW - DAY, NOW + DAY, created_by="admin-1"
    )

    change = await promotions.update_promotion(
        created.promotion.id, credits=10, end_date=NOW + 10 * DAY
    )

    assert change.users_updated == 1
    assert change.promotion.credits == 10
    [entry] = await _entries(db, user.id)
    assert entry.amount == 10
    assert entry.end_date == NOW + 10 * DAY

    with pytest.raises(InvalidInput):
        await promotions.update_promotion(created.promotion.id, start_date=NOW + 11 * DAY)


@pytest.mark.asyncio
async def test_delete_promotion_removes_entries(subscriptions, promotions, db):
    user = await subscriptions.register("finn", now=NOW)
    created = await promotions.create_promotion(
        "autumn", 5, NOW - DAY, NOW + DAY, created_by="admin-1"
    )

    change = await promotions.delete_promotion(created.promotion.id)

    assert change.users_updated == 1
    assert await _entries(db, user.id) == []
    assert await promotions.list_promotions() == []
    with pytest.raises(PromotionNotFound):
        await promotions.get_promotion(created.promotion.id)


@pytest.mark.asyncio
async def test_cleanup_prunes_expired_entries(subscriptions, promotions, db):
    user = await subscriptions.register("gina", now=NOW)
    await promotions.create_promotion("flash", 3, NOW - DAY, NOW + DAY, created_by="admin-1")
    await promotions.create_promotion("long", 3, NOW - DAY, NOW + 30 * DAY, created_by="admin-1")

    assert await promotions.cleanup_expired_promotions(NOW) == 0
    assert await promotions.cleanup_expired_promotions(NOW + 2 * DAY) == 1
    assert [e.offer_name for e in await _entries(db, user.id)] == ["long"]


@pytest.mark.asyncio
async def test_grant_promotion_to_single_user(subscriptions, promotions, db):
    created = await promotions.create_promotion(
        "vip", 7, NOW - DAY, NOW + DAY, created_by="admin-1"
    )
    user = await subscriptions.register("hank", now=NOW)

    assert await promotions.grant_promotion_to_user(created.promotion.id, user.id) is True
    assert await promotions.grant_promotion_to_user(created.promotion.id, user.id) is False
    with pytest.raises(UserNotFound):
        await promotions.grant_promotion_to_user(created.promotion.id, "ghost")

    [summary] = await promotions.list_promotions()
    assert summary.user_count == 1


@pytest.mark.asyncio
async def test_active_entries_sorted_by_expiry(subscriptions, promotions, db):
    user = await subscriptions.register("iris", now=NOW)
    await promotions.create_promotion("later", 1, NOW - DAY, NOW + 9 * DAY, created_by="admin-1")
    await promotions.create_promotion("sooner", 1, NOW - DAY, NOW + 2 * DAY, created_by="admin-1")
    await promotions.create_promotion("future", 1, NOW + DAY, NOW + 3 * DAY, created_by="admin-1")

    stored = await db.get_user(user.id)
    names = [e.offer_name for e in promotions.active_entries(stored, NOW)]
    assert names == ["sooner", "later"]
