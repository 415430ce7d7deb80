"""
Booking endpoints with concurrency-safe seat reservation.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.security import Principal, get_current_principal
from studio.db.session import get_db
from studio.schemas.booking import (
    BookingCancelResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingResponse,
)
from studio.services import cache_service
from studio.services.booking_service import book_class, get_user_bookings
from studio.services.cancellation_service import cancel_booking

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Book seats in a class and debit credit_cost * quantity credits.

    The class and user rows are locked for the whole check-then-insert, so
    concurrent requests for the last seat or the last credit serialize and
    exactly one of them wins.
    """
    result = await book_class(db, principal.user_id, booking_data.class_id, booking_data.quantity)
    await cache_service.invalidate(class_ids=(booking_data.class_id,), user_ids=(principal.user_id,))
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(result.booking),
        tokens=result.tokens,
        class_capacity=result.class_capacity,
        class_booked=result.class_booked,
    )


@router.delete("/{booking_id}", response_model=BookingCancelResponse)
async def cancel_booking_endpoint(
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Cancel your booking, release its seats and refund its credits."""
    result = await cancel_booking(db, booking_id, by_user_id=principal.user_id)
    if not result.already_canceled:
        await cache_service.invalidate(class_ids=(result.booking.class_id,), user_ids=(principal.user_id,))
    return BookingCancelResponse(
        message="Booking already canceled" if result.already_canceled else "Booking canceled successfully",
        booking_id=result.booking.id,
        status=result.booking.status,
        refunded=result.refunded,
        already_canceled=result.already_canceled,
    )


@router.get("/", response_model=list[BookingResponse])
async def list_user_bookings(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get all bookings for the authenticated user."""
    return await get_user_bookings(db, principal.user_id)
