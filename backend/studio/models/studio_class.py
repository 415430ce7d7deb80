"""
StudioClass: a scheduled session with a seat capacity.

Key design decisions:
- Seat usage is NOT denormalized onto the row. Used seats are always the sum of
  ACTIVE booking quantities, so there is no counter to drift.
- The row itself is the lock target for capacity decisions (SELECT ... FOR UPDATE).
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import relationship

from studio.db.base import Base, TimestampMixin


class StudioClass(Base, TimestampMixin):
    __tablename__ = "classes"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    duration_min = Column(Integer, nullable=False, default=60)
    capacity = Column(Integer, nullable=False)
    credit_cost = Column(Integer, nullable=False, default=1)
    is_canceled = Column(Boolean, nullable=False, default=False)
    # Minutes before start after which users can no longer cancel; NULL uses the default window
    cancel_before_min = Column(Integer, nullable=True)
    instructor_id = Column(Integer, nullable=True)

    bookings = relationship("Booking", back_populates="studio_class", lazy="raise")

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="check_class_capacity_non_negative"),
        CheckConstraint("credit_cost > 0", name="check_class_credit_cost_positive"),
        Index("ix_classes_date", "date"),
    )

    def __repr__(self) -> str:
        return f"<StudioClass(id={self.id}, title={self.title}, capacity={self.capacity})>"
