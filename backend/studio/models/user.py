"""
User model: identity plus credit consumer.
"""

import enum

from sqlalchemy import Column, Integer, String, CheckConstraint
from sqlalchemy.orm import relationship

from studio.db.base import Base, TimestampMixin


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Affiliation(str, enum.Enum):
    NONE = "NONE"
    WELLHUB = "WELLHUB"
    TOTALPASS = "TOTALPASS"


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(10), nullable=False, default=UserRole.USER.value)
    # Drives the monthly corporate credit amount
    affiliation = Column(String(20), nullable=False, default=Affiliation.NONE.value)

    bookings = relationship("Booking", back_populates="user", lazy="raise")
    purchases = relationship("PackPurchase", back_populates="user", lazy="raise")

    __table_args__ = (
        CheckConstraint("role IN ('USER', 'ADMIN')", name="check_user_role"),
        CheckConstraint(
            "affiliation IN ('NONE', 'WELLHUB', 'TOTALPASS')", name="check_user_affiliation"
        ),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
