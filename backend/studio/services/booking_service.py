"""
Booking engine: reserve seats and debit credits as one atomic unit.

CONCURRENCY STRATEGY: lock the aggregates, then check-then-insert
=================================================================

Problem:
  Two users try to book the last seat simultaneously, or one user books two
  classes with credits for only one. Both transactions read "enough", both
  insert, the class is overbooked or the balance goes negative.

Solution:
  Inside a single transaction:

  1. SELECT ... FOR UPDATE the class row. Concurrent bookings for the same
     class queue up here.
  2. Re-sum ACTIVE booking quantities and compare with capacity.
  3. SELECT ... FOR UPDATE the user row. Concurrent debits for the same user
     queue up here. Lock order is always class -> user.
  4. Re-sum the ledger balance and compare with credit_cost * quantity.
  5. Insert the booking, append the BOOKING_DEBIT row, update the funding
     purchase's classes_left projection.

  A rejection raises StudioError and the transaction rolls back, so a failed
  attempt never leaves a row behind. The class and balance are read before the
  transaction too, but only to fail fast; those reads decide nothing.

Funding:
  The debit is attributed to the unexpired purchase with the soonest expiry
  that can cover the whole cost. If no single purchase can, the unattributed
  pool (corporate and admin credits) is used when it covers the cost. A
  balance that is large enough in total but split across purchases fails with
  NO_CREDITS_AVAILABLE rather than debiting credits that may expire later.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import ensure_utc, utcnow
from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import get_logger
from studio.core.metrics import booking_latency, record_booking_attempt
from studio.db.transactions import run_in_transaction
from studio.models.booking import Booking, BookingStatus
from studio.models.ledger import TokenReason
from studio.models.pack import PackPurchase
from studio.models.studio_class import StudioClass
from studio.services import capacity_service, ledger_service

logger = get_logger(__name__)


@dataclass
class BookingResult:
    booking: Booking
    tokens: int
    class_capacity: int
    class_booked: int


def _ensure_bookable(klass: StudioClass, now: datetime, allow_past: bool = False) -> None:
    if klass.is_canceled:
        raise StudioError(ErrorCode.CLASS_CANCELED, "This class was canceled", class_id=klass.id)
    if not allow_past and ensure_utc(klass.date) <= now:
        raise StudioError(ErrorCode.CLASS_IN_PAST, "This class has already started", class_id=klass.id)


async def _select_funding(
    db: AsyncSession, user_id: int, cost: int, now: datetime
) -> Optional[PackPurchase]:
    """Soonest-expiring purchase covering `cost`, else None for the unattributed pool."""
    result = await db.execute(
        select(PackPurchase)
        .where(
            PackPurchase.user_id == user_id,
            PackPurchase.expires_at > now,
            PackPurchase.classes_left >= cost,
        )
        .order_by(PackPurchase.expires_at.asc(), PackPurchase.id.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    purchase = result.scalar_one_or_none()
    if purchase:
        return purchase

    pool = await ledger_service.unattributed_balance(db, user_id)
    if pool >= cost:
        return None
    raise StudioError(
        ErrorCode.NO_CREDITS_AVAILABLE,
        "No single pack has enough credits left for this booking",
        needed=cost,
    )


async def _reserve(
    db: AsyncSession,
    user_id: int,
    class_id: int,
    quantity: int,
    now: datetime,
    full_code: ErrorCode = ErrorCode.NOT_ENOUGH_SPOTS,
    allow_past: bool = False,
) -> BookingResult:
    klass = await capacity_service.lock_class(db, class_id)
    _ensure_bookable(klass, now, allow_past)

    existing = await db.execute(
        select(Booking.id).where(
            Booking.user_id == user_id,
            Booking.class_id == class_id,
            Booking.status == BookingStatus.ACTIVE.value,
        )
    )
    if existing.first():
        raise StudioError(ErrorCode.ALREADY_ENROLLED, "Already booked into this class", class_id=class_id)

    spots = await capacity_service.available(db, class_id, klass)
    if spots < quantity:
        raise StudioError(
            full_code,
            f"Only {spots} spot(s) left",
            available=spots,
            requested=quantity,
        )

    cost = klass.credit_cost * quantity
    await ledger_service.lock_user(db, user_id)
    tokens = await ledger_service.get_balance(db, user_id, as_of=now)
    if tokens < cost:
        raise StudioError(
            ErrorCode.INSUFFICIENT_TOKENS,
            f"Not enough credits: need {cost}, have {tokens}",
            tokens=tokens,
            needed=cost,
        )

    purchase = await _select_funding(db, user_id, cost, now)
    purchase_id = purchase.id if purchase else None

    booking = Booking(
        user_id=user_id,
        class_id=class_id,
        quantity=quantity,
        status=BookingStatus.ACTIVE.value,
        pack_purchase_id=purchase_id,
    )
    db.add(booking)
    await db.flush()

    await ledger_service.append_entry(
        db,
        user_id,
        -cost,
        TokenReason.BOOKING_DEBIT,
        pack_purchase_id=purchase_id,
        booking_id=booking.id,
    )
    if purchase_id is not None:
        await db.execute(
            update(PackPurchase)
            .where(PackPurchase.id == purchase_id)
            .values(classes_left=PackPurchase.classes_left - cost)
        )

    return BookingResult(
        booking=booking,
        tokens=tokens - cost,
        class_capacity=klass.capacity,
        class_booked=klass.capacity - spots + quantity,
    )


async def book_class(
    db: AsyncSession,
    user_id: int,
    class_id: int,
    quantity: int = 1,
    now: Optional[datetime] = None,
) -> BookingResult:
    """
    Book `quantity` seats for the user and debit credit_cost * quantity.
    Raises StudioError; nothing is written when it does.
    """
    now = now or utcnow()
    started = time.perf_counter()
    try:
        if quantity < 1:
            raise StudioError(ErrorCode.VALIDATION_ERROR, "Quantity must be at least 1")

        async with db.begin():
            _ensure_bookable(await capacity_service.get_class(db, class_id), now)

        result = await run_in_transaction(
            db, "book_class", lambda s: _reserve(s, user_id, class_id, quantity, now)
        )
    except StudioError as exc:
        record_booking_attempt(exc.code.value)
        logger.warning(
            "booking_rejected",
            user_id=user_id,
            class_id=class_id,
            quantity=quantity,
            code=exc.code.value,
            details=exc.details,
        )
        raise

    booking_latency.observe(time.perf_counter() - started)
    record_booking_attempt("success")
    logger.info(
        "booking_created",
        booking_id=result.booking.id,
        user_id=user_id,
        class_id=class_id,
        quantity=quantity,
        pack_purchase_id=result.booking.pack_purchase_id,
        tokens_left=result.tokens,
    )
    return result


async def admin_add_user(
    db: AsyncSession,
    class_id: int,
    user_id: int,
    now: Optional[datetime] = None,
) -> BookingResult:
    """Staff enrolls a user into one seat; same credit rules, CLASS_FULL when no seat is left."""
    now = now or utcnow()
    result = await run_in_transaction(
        db,
        "admin_add_user",
        lambda s: _reserve(s, user_id, class_id, 1, now, full_code=ErrorCode.CLASS_FULL, allow_past=True),
    )
    logger.info("booking_created_by_admin", booking_id=result.booking.id, user_id=user_id, class_id=class_id)
    return result


async def add_guest(db: AsyncSession, class_id: int, guest_name: str) -> Booking:
    """Unfunded single-seat booking for a walk-in guest."""
    guest_name = (guest_name or "").strip()
    if not guest_name:
        raise StudioError(ErrorCode.VALIDATION_ERROR, "Guest name is required")

    async with db.begin():
        klass = await capacity_service.lock_class(db, class_id)
        if klass.is_canceled:
            raise StudioError(ErrorCode.CLASS_CANCELED, "This class was canceled", class_id=class_id)
        if not await capacity_service.can_accommodate(db, class_id, 1, klass):
            raise StudioError(ErrorCode.CLASS_FULL, "Class is full", available=0)

        booking = Booking(class_id=class_id, guest_name=guest_name, quantity=1)
        db.add(booking)
        await db.flush()

    logger.info("guest_booking_created", booking_id=booking.id, class_id=class_id)
    return booking


async def set_attendance(db: AsyncSession, booking_id: int, attended: bool) -> Booking:
    async with db.begin():
        booking = await db.get(Booking, booking_id, with_for_update=True, populate_existing=True)
        if not booking:
            raise StudioError(ErrorCode.NOT_FOUND, "Booking not found", booking_id=booking_id)
        if not booking.is_active:
            raise StudioError(ErrorCode.BOOKING_NOT_ACTIVE, "Booking is canceled", booking_id=booking_id)
        booking.attended = attended
    return booking


async def get_user_bookings(db: AsyncSession, user_id: int) -> list[Booking]:
    """Get all bookings for a user."""
    result = await db.execute(
        select(Booking)
        .where(Booking.user_id == user_id)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
    )
    return list(result.scalars().all())
