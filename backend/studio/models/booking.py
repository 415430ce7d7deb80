"""
Booking model representing a reservation of one or more seats in a class.

Key design decisions:
- Partial unique index allows one ACTIVE booking per user per class; a
  canceled booking does not block re-booking
- Status field allows cancellation without deleting records
- quantity allows multi-seat bookings in one transaction
- user_id is nullable for guest bookings added by staff
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship

from studio.db.base import Base, TimestampMixin


class BookingStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    guest_name = Column(String(255), nullable=True)
    class_id = Column(Integer, ForeignKey("classes.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=BookingStatus.ACTIVE.value)
    pack_purchase_id = Column(Integer, ForeignKey("pack_purchases.id"), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    refund_token = Column(Boolean, nullable=False, default=False)
    attended = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="bookings")
    studio_class = relationship("StudioClass", back_populates="bookings")

    __table_args__ = (
        Index(
            "uq_bookings_active_user_class",
            "user_id",
            "class_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        # Capacity aggregation: SUM(quantity) WHERE class_id = ? AND status = 'ACTIVE'
        Index("ix_bookings_class_status", "class_id", "status"),
        CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        CheckConstraint("status IN ('ACTIVE', 'CANCELED')", name="check_booking_status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, user={self.user_id}, class={self.class_id}, status={self.status})>"
