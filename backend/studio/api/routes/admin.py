"""
Admin console endpoints. Every route requires the ADMIN role.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.logging import get_logger
from studio.core.security import Principal, require_admin
from studio.db.session import get_db
from studio.schemas.booking import (
    AdminEnrollCreate,
    AttendanceUpdate,
    BookingCancelResponse,
    BookingCreatedResponse,
    BookingResponse,
    GuestCreate,
)
from studio.schemas.ledger import (
    AdjustmentCreate,
    AdjustmentResponse,
    BalanceResponse,
    PurchaseProjectionResponse,
)
from studio.schemas.payment import ManualPurchaseCreate, ManualPurchaseResponse, WebhookReplayResponse
from studio.schemas.studio_class import CapacityUpdate, ClassResponse
from studio.services import booking_service, cache_service, capacity_service, ledger_service
from studio.services.cancellation_service import admin_remove_booking
from studio.services.checkout_service import grant_pack
from studio.services.reconciliation_service import replay_webhook

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def user_balance(
    user_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return BalanceResponse(user_id=user_id, balance=await ledger_service.get_balance(db, user_id))


@router.post("/users/{user_id}/adjustments", response_model=AdjustmentResponse, status_code=status.HTTP_201_CREATED)
async def adjust_tokens(
    user_id: int,
    adjustment: AdjustmentCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Add or remove credits. Removals that would go below zero are refused."""
    previous, new = await ledger_service.admin_adjust(db, user_id, adjustment.delta, adjustment.note)
    await cache_service.invalidate(user_ids=(user_id,))
    logger.info("admin_adjusted_tokens", admin_id=admin.user_id, user_id=user_id, delta=adjustment.delta)
    return AdjustmentResponse(user_id=user_id, previous_balance=previous, new_balance=new)


@router.post("/purchases", response_model=ManualPurchaseResponse, status_code=status.HTTP_201_CREATED)
async def manual_purchase(
    purchase_data: ManualPurchaseCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Record a pack sold at the front desk."""
    purchase = await grant_pack(db, purchase_data.user_id, purchase_data.pack_id, purchase_data.note)
    await cache_service.invalidate(user_ids=(purchase_data.user_id,))
    return ManualPurchaseResponse(
        pack_purchase_id=purchase.id,
        payment_id=purchase.payment_id,
        classes_left=purchase.classes_left,
        expires_at=purchase.expires_at,
    )


@router.post("/purchases/{purchase_id}/rebuild", response_model=PurchaseProjectionResponse)
async def rebuild_purchase(
    purchase_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Recompute a purchase's classes_left from its ledger rows."""
    async with db.begin():
        purchase = await ledger_service.rebuild_purchase_projection(db, purchase_id)
    return PurchaseProjectionResponse(pack_purchase_id=purchase.id, classes_left=purchase.classes_left)


# ---------------------------------------------------------------------------
# Classes and bookings
# ---------------------------------------------------------------------------

@router.post("/classes/{class_id}/bookings", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def enroll_user(
    class_id: int,
    enroll: AdminEnrollCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await booking_service.admin_add_user(db, class_id, enroll.user_id)
    await cache_service.invalidate(class_ids=(class_id,), user_ids=(enroll.user_id,))
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(result.booking),
        tokens=result.tokens,
        class_capacity=result.class_capacity,
        class_booked=result.class_booked,
    )


@router.post("/classes/{class_id}/guests", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def add_guest(
    class_id: int,
    guest: GuestCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking = await booking_service.add_guest(db, class_id, guest.guest_name)
    await cache_service.invalidate(class_ids=(class_id,))
    return booking


@router.delete("/bookings/{booking_id}", response_model=BookingCancelResponse)
async def remove_booking(
    booking_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Remove a booking regardless of the cancellation window; credits are refunded."""
    result = await admin_remove_booking(db, booking_id)
    if not result.already_canceled:
        await cache_service.invalidate(class_ids=(result.booking.class_id,), user_ids=(result.booking.user_id,))
    return BookingCancelResponse(
        message="Booking already canceled" if result.already_canceled else "Booking removed",
        booking_id=result.booking.id,
        status=result.booking.status,
        refunded=result.refunded,
        already_canceled=result.already_canceled,
    )


@router.patch("/bookings/{booking_id}/attendance", response_model=BookingResponse)
async def mark_attendance(
    booking_id: int,
    attendance: AttendanceUpdate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.set_attendance(db, booking_id, attendance.attended)


@router.patch("/classes/{class_id}/capacity", response_model=ClassResponse)
async def edit_capacity(
    class_id: int,
    capacity: CapacityUpdate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    klass = await capacity_service.update_capacity(db, class_id, capacity.capacity)
    await cache_service.invalidate(class_ids=(class_id,))
    return klass


@router.post("/classes/{class_id}/cancel", response_model=ClassResponse)
async def cancel_class(
    class_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    klass = await capacity_service.cancel_class(db, class_id)
    await cache_service.invalidate(class_ids=(class_id,))
    return klass


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@router.post("/webhooks/{log_id}/replay", response_model=WebhookReplayResponse)
async def replay_notification(
    log_id: int,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Reprocess a stored provider notification. Safe to repeat."""
    result = await replay_webhook(db, log_id)
    if result.user_id is not None:
        await cache_service.invalidate(user_ids=(result.user_id,))
    return WebhookReplayResponse(log_id=result.log_id, outcome=result.outcome, processed_ok=result.processed_ok)
