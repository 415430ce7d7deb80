"""
Pack catalog and per-user pack purchases.

Key design decisions:
- `PackPurchase.classes_left` is a projection of the ledger: it always equals
  the sum of ledger deltas attributed to the purchase and can be rebuilt from
  them. The ledger is the source of truth for balances.
- `payment_id` is UNIQUE so a payment can fund at most one purchase. This is
  the database-level guard against crediting the same payment twice.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from studio.db.base import Base, TimestampMixin


class Pack(Base, TimestampMixin):
    __tablename__ = "packs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    classes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    validity_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    once_per_user = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("classes > 0", name="check_pack_classes_positive"),
        CheckConstraint("validity_days > 0", name="check_pack_validity_positive"),
    )

    def __repr__(self) -> str:
        return f"<Pack(id={self.id}, name={self.name}, classes={self.classes})>"


class PackPurchase(Base, TimestampMixin):
    __tablename__ = "pack_purchases"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    pack_id = Column(Integer, ForeignKey("packs.id"), nullable=False)
    classes_left = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)

    user = relationship("User", back_populates="purchases")
    pack = relationship("Pack", lazy="selectin")
    payment = relationship("Payment", back_populates="pack_purchase")

    __table_args__ = (
        # Funding lookup: a user's unexpired purchases ordered by expiry
        Index("ix_pack_purchases_user_expires", "user_id", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PackPurchase(id={self.id}, user={self.user_id}, "
            f"left={self.classes_left}, expires={self.expires_at})>"
        )
