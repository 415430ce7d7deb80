"""
Tests for the credit ledger: balance rules, expiry, immutability, adjustments.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import InvalidRequestError

from studio.core.clock import utcnow
from studio.core.errors import ErrorCode, LedgerImmutableError, StudioError
from studio.models import PackPurchase, TokenLedger, TokenReason, User
from studio.services import ledger_service


@pytest.mark.asyncio
async def test_purchase_credits_balance(user, give_pack, balance_of, ledger_of):
    purchase = await give_pack(user.id)

    assert await balance_of(user.id) == 10
    rows = await ledger_of(user.id)
    assert [(r.delta, r.reason, r.pack_purchase_id) for r in rows] == [
        (10, TokenReason.PURCHASE_CREDIT.value, purchase.id)
    ]
    assert purchase.classes_left == 10


@pytest.mark.asyncio
async def test_expired_purchase_drops_out_of_balance(user, give_pack, balance_of, ledger_of):
    """A 30 day pack bought 40 days ago no longer counts, but its rows stay."""
    await give_pack(user.id, now=utcnow() - timedelta(days=40))

    assert await balance_of(user.id) == 0
    assert await balance_of(user.id, as_of=utcnow() - timedelta(days=20)) == 10
    assert len(await ledger_of(user.id)) == 1


@pytest.mark.asyncio
async def test_unattributed_credits_never_expire(db, user, give_pack, balance_of):
    await give_pack(user.id, now=utcnow() - timedelta(days=40))
    previous, new = await ledger_service.admin_adjust(db, user.id, 3, note="goodwill")

    assert (previous, new) == (0, 3)
    assert await balance_of(user.id) == 3


@pytest.mark.asyncio
async def test_admin_adjust_cannot_go_negative(db, user, give_pack, balance_of, ledger_of):
    await give_pack(user.id)

    with pytest.raises(StudioError) as exc_info:
        await ledger_service.admin_adjust(db, user.id, -11)

    assert exc_info.value.code == ErrorCode.NEGATIVE_BALANCE
    assert exc_info.value.details["current_balance"] == 10
    assert await balance_of(user.id) == 10
    assert len(await ledger_of(user.id)) == 1


@pytest.mark.asyncio
async def test_admin_adjust_to_exactly_zero(db, user, give_pack, balance_of):
    await give_pack(user.id)
    assert await ledger_service.admin_adjust(db, user.id, -10) == (10, 0)
    assert await balance_of(user.id) == 0


@pytest.mark.asyncio
async def test_admin_adjust_rejects_zero_delta(db, user):
    with pytest.raises(StudioError) as exc_info:
        await ledger_service.admin_adjust(db, user.id, 0)
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_admin_adjust_unknown_user(db):
    with pytest.raises(StudioError) as exc_info:
        await ledger_service.admin_adjust(db, 4242, 5)
    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_ledger_rows_cannot_be_updated(db, user, give_pack):
    await give_pack(user.id)

    with pytest.raises(LedgerImmutableError):
        async with db.begin():
            row = (await db.execute(select(TokenLedger))).scalars().first()
            row.delta = 1000
            await db.flush()


@pytest.mark.asyncio
async def test_ledger_rows_cannot_be_deleted(db, user, give_pack, ledger_of):
    await give_pack(user.id)

    with pytest.raises(LedgerImmutableError):
        async with db.begin():
            row = (await db.execute(select(TokenLedger))).scalars().first()
            await db.delete(row)
            await db.flush()

    assert len(await ledger_of(user.id)) == 1


@pytest.mark.asyncio
async def test_rebuild_purchase_projection(db, user, give_pack, fetch):
    purchase = await give_pack(user.id)
    async with db.begin():
        await db.execute(update(PackPurchase).where(PackPurchase.id == purchase.id).values(classes_left=99))

    async with db.begin():
        rebuilt = await ledger_service.rebuild_purchase_projection(db, purchase.id)

    assert rebuilt.classes_left == 10
    assert (await fetch(PackPurchase, purchase.id)).classes_left == 10


@pytest.mark.asyncio
async def test_list_entries_newest_first(db, user, give_pack):
    await give_pack(user.id)
    await ledger_service.admin_adjust(db, user.id, 2)

    entries = await ledger_service.list_entries(db, user.id)
    assert [e.reason for e in entries] == [TokenReason.ADMIN_ADJUST.value, TokenReason.PURCHASE_CREDIT.value]


@pytest.mark.asyncio
async def test_balance_endpoint(client, user, auth_headers, give_pack):
    await give_pack(user.id)

    response = await client.get("/api/v1/me/balance", headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {"user_id": user.id, "balance": 10, "cached": False}

    history = await client.get("/api/v1/me/ledger", headers=auth_headers)
    assert history.status_code == 200
    assert history.json()[0]["reason"] == "PURCHASE_CREDIT"


@pytest.mark.asyncio
async def test_unloaded_relationships_refuse_implicit_loads(user, give_pack, ledger_of, fetch):
    await give_pack(user.id)
    entry = (await ledger_of(user.id))[0]
    owner = await fetch(User, user.id)

    with pytest.raises(InvalidRequestError):
        entry.pack_purchase
    with pytest.raises(InvalidRequestError):
        owner.purchases
