"""
TokenLedger: the append-only journal of credit movements.

A user's balance is the sum of `delta` over rows that are either
unattributed or attributed to a purchase that has not expired. Rows are
never edited or deleted; corrections are new offsetting rows. The mapper
hooks below reject any UPDATE or DELETE issued through the ORM.
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, CheckConstraint, event
from sqlalchemy.orm import relationship

from studio.core.clock import utcnow
from studio.core.errors import LedgerImmutableError
from studio.db.base import Base


class TokenReason(str, enum.Enum):
    PURCHASE_CREDIT = "PURCHASE_CREDIT"
    BOOKING_DEBIT = "BOOKING_DEBIT"
    CANCEL_REFUND = "CANCEL_REFUND"
    ADMIN_ADJUST = "ADMIN_ADJUST"
    CORPORATE_MONTHLY = "CORPORATE_MONTHLY"


class TokenLedger(Base):
    __tablename__ = "token_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(String(30), nullable=False)
    pack_purchase_id = Column(Integer, ForeignKey("pack_purchases.id"), nullable=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    note = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    pack_purchase = relationship("PackPurchase", lazy="raise")

    __table_args__ = (
        CheckConstraint("delta <> 0", name="check_ledger_delta_nonzero"),
        CheckConstraint(
            "reason IN ('PURCHASE_CREDIT', 'BOOKING_DEBIT', 'CANCEL_REFUND', "
            "'ADMIN_ADJUST', 'CORPORATE_MONTHLY')",
            name="check_ledger_reason",
        ),
        # Balance aggregation and monthly-renewal lookups
        Index("ix_token_ledger_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<TokenLedger(id={self.id}, user={self.user_id}, delta={self.delta}, reason={self.reason})>"


@event.listens_for(TokenLedger, "before_update")
def _reject_update(mapper, connection, target):
    raise LedgerImmutableError(f"ledger row {target.id} is immutable; append an offsetting entry")


@event.listens_for(TokenLedger, "before_delete")
def _reject_delete(mapper, connection, target):
    raise LedgerImmutableError(f"ledger row {target.id} cannot be deleted")
