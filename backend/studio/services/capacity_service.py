"""
Capacity allocator.

Used seats are never stored: they are SUM(quantity) over ACTIVE bookings of
the class. Decisions that depend on them (`can_accommodate` before a booking,
capacity edits) are made after `lock_class`, which takes a row lock on the
class. Two transactions booking the same class therefore run their
check-then-insert one after the other, and the second one sees the first
one's booking when it re-sums.
"""

from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import get_logger
from studio.models.booking import Booking, BookingStatus
from studio.models.studio_class import StudioClass

logger = get_logger(__name__)


async def get_class(db: AsyncSession, class_id: int) -> StudioClass:
    klass = await db.get(StudioClass, class_id)
    if not klass:
        raise StudioError(ErrorCode.NOT_FOUND, f"Class {class_id} not found", class_id=class_id)
    return klass


async def lock_class(db: AsyncSession, class_id: int) -> StudioClass:
    result = await db.execute(
        select(StudioClass)
        .where(StudioClass.id == class_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    klass = result.scalar_one_or_none()
    if not klass:
        raise StudioError(ErrorCode.NOT_FOUND, f"Class {class_id} not found", class_id=class_id)
    return klass


async def used_spots(db: AsyncSession, class_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(Booking.quantity), 0)).where(
            Booking.class_id == class_id,
            Booking.status == BookingStatus.ACTIVE.value,
        )
    )
    return int(result.scalar_one())


async def available(db: AsyncSession, class_id: int, klass: Optional[StudioClass] = None) -> int:
    klass = klass or await get_class(db, class_id)
    return max(0, klass.capacity - await used_spots(db, class_id))


async def can_accommodate(
    db: AsyncSession,
    class_id: int,
    quantity: int,
    klass: Optional[StudioClass] = None,
) -> bool:
    return await available(db, class_id, klass) >= quantity


async def update_capacity(db: AsyncSession, class_id: int, capacity: int) -> StudioClass:
    """Admin capacity edit. Refuses to drop below the seats already booked."""
    if capacity < 0:
        raise StudioError(ErrorCode.VALIDATION_ERROR, "Capacity cannot be negative")

    async with db.begin():
        klass = await lock_class(db, class_id)
        used = await used_spots(db, class_id)
        if capacity < used:
            raise StudioError(
                ErrorCode.CAPACITY_TOO_SMALL,
                f"{used} seat(s) are already booked",
                used_spots=used,
                requested=capacity,
            )
        previous = klass.capacity
        klass.capacity = capacity

    logger.info("class_capacity_updated", class_id=class_id, previous=previous, capacity=capacity)
    return klass


async def cancel_class(db: AsyncSession, class_id: int) -> StudioClass:
    """Soft-cancel a class that nobody is booked into."""
    async with db.begin():
        klass = await lock_class(db, class_id)
        active = await db.execute(
            select(func.count(Booking.id)).where(
                Booking.class_id == class_id,
                Booking.status == BookingStatus.ACTIVE.value,
            )
        )
        active_count = int(active.scalar_one())
        if active_count > 0:
            raise StudioError(
                ErrorCode.CLASS_HAS_BOOKINGS,
                "Cannot cancel a class with active bookings",
                active_bookings=active_count,
            )
        klass.is_canceled = True

    logger.info("class_canceled", class_id=class_id)
    return klass


async def create_class(db: AsyncSession, **fields) -> StudioClass:
    async with db.begin():
        klass = StudioClass(**fields)
        db.add(klass)
        await db.flush()

    logger.info("class_created", class_id=klass.id, capacity=klass.capacity, date=str(klass.date))
    return klass


async def availability_snapshot(db: AsyncSession, class_id: int) -> dict:
    """Read-only view for listings; booking decisions never use it."""
    klass = await get_class(db, class_id)
    booked = await used_spots(db, class_id)
    return {
        "class_id": klass.id,
        "capacity": klass.capacity,
        "booked": booked,
        "available": max(0, klass.capacity - booked),
        "is_canceled": klass.is_canceled,
    }
