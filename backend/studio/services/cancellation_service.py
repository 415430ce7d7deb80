"""
Cancellation engine: reverse a booking and refund its debit.

Idempotency:
  Cancelling an already canceled booking succeeds without touching anything.
  The status check happens after SELECT ... FOR UPDATE on the booking row, so
  two concurrent cancels of the same booking produce exactly one refund.

Refund amount:
  The refund is the negation of the booking's BOOKING_DEBIT rows, attributed to
  the same purchase. Editing a class's credit_cost after the booking therefore
  cannot refund more or less than was taken. Guest bookings have no debit and
  are canceled without a refund.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import ensure_utc, utcnow
from studio.core.config import get_settings
from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import get_logger
from studio.core.metrics import record_cancellation
from studio.models.booking import Booking, BookingStatus
from studio.models.ledger import TokenLedger, TokenReason
from studio.models.pack import PackPurchase
from studio.models.payment import Payment, PaymentStatus
from studio.models.studio_class import StudioClass
from studio.services import ledger_service

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class CancellationResult:
    booking: Booking
    refunded: int = 0
    already_canceled: bool = False


def cancel_window_minutes(klass: StudioClass) -> int:
    if klass.cancel_before_min is None:
        return settings.CANCEL_WINDOW_MIN
    return klass.cancel_before_min


def minutes_until_start(klass: StudioClass, now: datetime) -> float:
    return (ensure_utc(klass.date) - now).total_seconds() / 60


async def _refund_debit(db: AsyncSession, booking: Booking) -> int:
    await ledger_service.lock_user(db, booking.user_id)
    result = await db.execute(
        select(TokenLedger.pack_purchase_id, TokenLedger.delta, Payment.status)
        .outerjoin(PackPurchase, TokenLedger.pack_purchase_id == PackPurchase.id)
        .outerjoin(Payment, PackPurchase.payment_id == Payment.id)
        .where(
            TokenLedger.booking_id == booking.id,
            TokenLedger.reason == TokenReason.BOOKING_DEBIT.value,
        )
    )
    refunded = 0
    for pack_purchase_id, delta, payment_status in result.all():
        amount = -delta
        if payment_status == PaymentStatus.REFUNDED.value:
            # the provider already returned this money; its credits were clawed back
            logger.info(
                "booking_refund_withheld",
                booking_id=booking.id,
                pack_purchase_id=pack_purchase_id,
                credits=amount,
            )
            continue
        await ledger_service.append_entry(
            db,
            booking.user_id,
            amount,
            TokenReason.CANCEL_REFUND,
            pack_purchase_id=pack_purchase_id,
            booking_id=booking.id,
        )
        if pack_purchase_id is not None:
            await db.execute(
                update(PackPurchase)
                .where(PackPurchase.id == pack_purchase_id)
                .values(classes_left=PackPurchase.classes_left + amount)
            )
        refunded += amount
    return refunded


async def cancel_booking(
    db: AsyncSession,
    booking_id: int,
    by_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
    enforce_window: bool = True,
) -> CancellationResult:
    """
    Cancel a booking, releasing its seats and refunding its credits.

    `by_user_id` restricts the call to the booking's owner. With
    `enforce_window` the call fails WINDOW_CLOSED once the class starts in
    fewer than its cancel_before_min minutes.
    """
    now = now or utcnow()

    async with db.begin():
        booking = await db.get(Booking, booking_id, with_for_update=True, populate_existing=True)
        if not booking:
            raise StudioError(ErrorCode.NOT_FOUND, "Booking not found", booking_id=booking_id)
        if by_user_id is not None and booking.user_id != by_user_id:
            raise StudioError(ErrorCode.FORBIDDEN, "Booking belongs to another user", booking_id=booking_id)

        if booking.status == BookingStatus.CANCELED.value:
            record_cancellation("already_canceled")
            logger.info("booking_cancel_noop", booking_id=booking_id, reason="already_canceled")
            return CancellationResult(booking=booking, already_canceled=True)

        rejection = None
        refunded = 0
        klass = await db.get(StudioClass, booking.class_id)
        window = cancel_window_minutes(klass)
        remaining = minutes_until_start(klass, now)
        if enforce_window and remaining < window:
            # nothing changed; leave the block normally so the row lock goes with the commit
            rejection = StudioError(
                ErrorCode.WINDOW_CLOSED,
                f"Bookings can only be canceled up to {window} minutes before the class",
                minutes_until_start=int(remaining),
                cancel_before_min=window,
            )
        else:
            if booking.user_id is not None:
                refunded = await _refund_debit(db, booking)

            booking.status = BookingStatus.CANCELED.value
            booking.canceled_at = now
            booking.refund_token = refunded > 0

    if rejection is not None:
        record_cancellation("window_closed")
        logger.warning(
            "booking_cancel_rejected",
            booking_id=booking_id,
            minutes_until_start=round(remaining, 1),
            window=window,
        )
        raise rejection

    record_cancellation("refunded" if refunded else "released")
    logger.info(
        "booking_canceled",
        booking_id=booking.id,
        user_id=booking.user_id,
        class_id=booking.class_id,
        seats_released=booking.quantity,
        refunded=refunded,
        enforce_window=enforce_window,
    )
    return CancellationResult(booking=booking, refunded=refunded)


async def admin_remove_booking(
    db: AsyncSession, booking_id: int, now: Optional[datetime] = None
) -> CancellationResult:
    """Staff removal: no time window, the debit is always refunded."""
    return await cancel_booking(db, booking_id, now=now, enforce_window=False)
