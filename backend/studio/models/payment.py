"""
Payment-side records: payments, checkout links and the webhook audit log.

Key design decisions:
- `external_reference` holds the correlation token generated at checkout
  (`user_id|pack_id|payment_id|nonce`) and is UNIQUE; it is the idempotency key
  used to match provider notifications to local payments.
- `provider_payment_id` is only known once the provider notifies us.
- WebhookLog rows are written before any processing and are only ever
  annotated with their outcome afterwards.
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from studio.db.base import Base, CreatedAtMixin, TimestampMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"

    @classmethod
    def from_provider(cls, value) -> "PaymentStatus":
        """Map a provider status string; unknown values stay PENDING."""
        return {
            "approved": cls.APPROVED,
            "rejected": cls.REJECTED,
            "cancelled": cls.CANCELED,
            "canceled": cls.CANCELED,
            "refunded": cls.REFUNDED,
        }.get((value or "").lower(), cls.PENDING)

    @property
    def is_terminal_failure(self) -> bool:
        return self in (PaymentStatus.REJECTED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED)


class CheckoutLinkStatus(str, enum.Enum):
    CREATED = "CREATED"
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    provider_payment_id = Column(String(64), nullable=True, unique=True)
    preference_id = Column(String(128), nullable=True, index=True)
    external_reference = Column(String(255), nullable=True, unique=True)
    payer_email = Column(String(255), nullable=True)
    raw = Column(JSON, nullable=True)

    pack_purchase = relationship("PackPurchase", back_populates="payment", uselist=False, lazy="selectin")
    checkout_link = relationship("CheckoutLink", back_populates="payment", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELED', 'REFUNDED')",
            name="check_payment_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, status={self.status}, amount={self.amount})>"


class CheckoutLink(Base, TimestampMixin):
    __tablename__ = "checkout_links"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(16), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=CheckoutLinkStatus.CREATED.value)
    pack_id = Column(Integer, ForeignKey("packs.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment", back_populates="checkout_link")

    __table_args__ = (
        CheckConstraint(
            "status IN ('CREATED', 'OPEN', 'COMPLETED', 'CANCELED')", name="check_checkout_link_status"
        ),
    )


class WebhookLog(Base, CreatedAtMixin):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(30), nullable=False)
    event_type = Column(String(64), nullable=False, default="unknown")
    delivery_id = Column(String(128), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    raw_body = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=True)
    processed_ok = Column(Boolean, nullable=True)
    error = Column(String(255), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookLog(id={self.id}, delivery={self.delivery_id}, ok={self.processed_ok})>"
