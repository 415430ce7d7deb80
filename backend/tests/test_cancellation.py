"""
Tests for the cancellation engine: window, idempotence, refunds.
"""

import asyncio
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import update

from studio.core.errors import ErrorCode, StudioError
from studio.models import Booking, BookingStatus, PackPurchase, StudioClass, TokenReason
from studio.services import booking_service
from studio.services.cancellation_service import admin_remove_booking, cancel_booking


@pytest.mark.asyncio
async def test_book_then_cancel_restores_everything(
    db, user, klass, give_pack, balance_of, ledger_of, fetch, seats_left
):
    purchase = await give_pack(user.id)
    booked = await booking_service.book_class(db, user.id, klass.id, quantity=2)

    result = await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    assert result.refunded == 2
    assert not result.already_canceled
    assert await balance_of(user.id) == 10
    assert (await fetch(PackPurchase, purchase.id)).classes_left == 10
    assert await seats_left(klass.id) == 10

    booking = await fetch(Booking, booked.booking.id)
    assert booking.status == BookingStatus.CANCELED.value
    assert booking.refund_token is True
    assert booking.canceled_at is not None

    refund = (await ledger_of(user.id))[-1]
    assert (refund.delta, refund.reason) == (2, TokenReason.CANCEL_REFUND.value)
    assert refund.pack_purchase_id == purchase.id
    assert refund.booking_id == booked.booking.id


@pytest.mark.asyncio
async def test_second_cancel_is_a_noop(db, user, klass, give_pack, ledger_of, balance_of):
    await give_pack(user.id)
    booked = await booking_service.book_class(db, user.id, klass.id)
    await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    again = await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    assert again.already_canceled
    assert again.refunded == 0
    refunds = [r for r in await ledger_of(user.id) if r.reason == TokenReason.CANCEL_REFUND.value]
    assert len(refunds) == 1
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_concurrent_cancels_refund_once(session_factory, db, user, klass, give_pack, ledger_of):
    await give_pack(user.id)
    booked = await booking_service.book_class(db, user.id, klass.id)

    async def attempt():
        async with session_factory() as session:
            return await cancel_booking(session, booked.booking.id, by_user_id=user.id)

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(r.already_canceled for r in results) == [False, True]
    refunds = [r for r in await ledger_of(user.id) if r.reason == TokenReason.CANCEL_REFUND.value]
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_cancel_inside_window_is_rejected(db, user, make_class, give_pack, balance_of, fetch):
    """Default window is 240 minutes; a class one hour out can no longer be canceled."""
    await give_pack(user.id)
    soon = await make_class(starts_in=timedelta(hours=1))
    booked = await booking_service.book_class(db, user.id, soon.id)

    with pytest.raises(StudioError) as exc_info:
        await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    assert exc_info.value.code == ErrorCode.WINDOW_CLOSED
    assert exc_info.value.details["cancel_before_min"] == 240
    assert (await fetch(Booking, booked.booking.id)).status == BookingStatus.ACTIVE.value
    assert await balance_of(user.id) == 9


@pytest.mark.asyncio
async def test_per_class_window_overrides_default(db, user, make_class, give_pack, balance_of):
    await give_pack(user.id)
    soon = await make_class(starts_in=timedelta(hours=1), cancel_before_min=30)
    booked = await booking_service.book_class(db, user.id, soon.id)

    result = await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    assert result.refunded == 1
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_admin_removal_ignores_window(db, user, make_class, give_pack, balance_of):
    await give_pack(user.id)
    soon = await make_class(starts_in=timedelta(minutes=10))
    booked = await booking_service.book_class(db, user.id, soon.id)

    result = await admin_remove_booking(db, booked.booking.id)

    assert result.refunded == 1
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_cannot_cancel_someone_elses_booking(db, user, other_user, klass, give_pack):
    await give_pack(user.id)
    booked = await booking_service.book_class(db, user.id, klass.id)

    with pytest.raises(StudioError) as exc_info:
        await cancel_booking(db, booked.booking.id, by_user_id=other_user.id)
    assert exc_info.value.code == ErrorCode.FORBIDDEN


@pytest.mark.asyncio
async def test_cancel_unknown_booking(db):
    with pytest.raises(StudioError) as exc_info:
        await cancel_booking(db, 99999)
    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_refund_matches_debit_not_current_cost(db, user, make_class, give_pack, balance_of):
    await give_pack(user.id)
    premium = await make_class(credit_cost=2)
    booked = await booking_service.book_class(db, user.id, premium.id)
    async with db.begin():
        await db.execute(update(StudioClass).where(StudioClass.id == premium.id).values(credit_cost=5))

    result = await cancel_booking(db, booked.booking.id, by_user_id=user.id)

    assert result.refunded == 2
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_guest_removal_releases_seat_without_refund(db, make_class, seats_left):
    tiny = await make_class(capacity=1)
    guest = await booking_service.add_guest(db, tiny.id, "Walk-in")

    result = await admin_remove_booking(db, guest.id)

    assert result.refunded == 0
    assert result.booking.refund_token is False
    assert await seats_left(tiny.id) == 1


@pytest.mark.asyncio
async def test_rebook_after_cancel(db, user, klass, give_pack, balance_of):
    await give_pack(user.id)
    first = await booking_service.book_class(db, user.id, klass.id)
    await cancel_booking(db, first.booking.id, by_user_id=user.id)

    second = await booking_service.book_class(db, user.id, klass.id)

    assert second.booking.id != first.booking.id
    assert await balance_of(user.id) == 9


@pytest.mark.asyncio
async def test_attendance_only_for_active_bookings(db, user, klass, give_pack):
    await give_pack(user.id)
    booked = await booking_service.book_class(db, user.id, klass.id)

    marked = await booking_service.set_attendance(db, booked.booking.id, True)
    assert marked.attended is True

    await cancel_booking(db, booked.booking.id)
    with pytest.raises(StudioError) as exc_info:
        await booking_service.set_attendance(db, booked.booking.id, True)
    assert exc_info.value.code == ErrorCode.BOOKING_NOT_ACTIVE


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_via_api(client: AsyncClient, auth_headers, user, klass, give_pack):
    await give_pack(user.id)
    book_response = await client.post("/api/v1/bookings/", json={"class_id": klass.id}, headers=auth_headers)
    booking_id = book_response.json()["booking"]["id"]

    cancel_response = await client.delete(f"/api/v1/bookings/{booking_id}", headers=auth_headers)
    assert cancel_response.status_code == 200
    assert cancel_response.json()["status"] == "CANCELED"
    assert cancel_response.json()["refunded"] == 1

    again = await client.delete(f"/api/v1/bookings/{booking_id}", headers=auth_headers)
    assert again.status_code == 200
    assert again.json()["already_canceled"] is True


@pytest.mark.asyncio
async def test_cancel_window_closed_returns_409(client: AsyncClient, auth_headers, user, make_class, give_pack):
    await give_pack(user.id)
    soon = await make_class(starts_in=timedelta(hours=2))
    book_response = await client.post("/api/v1/bookings/", json={"class_id": soon.id}, headers=auth_headers)
    booking_id = book_response.json()["booking"]["id"]

    response = await client.delete(f"/api/v1/bookings/{booking_id}", headers=auth_headers)
    assert response.status_code == 409
    assert response.json()["code"] == "WINDOW_CLOSED"
