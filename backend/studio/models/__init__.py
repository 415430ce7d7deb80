from studio.models.user import User, UserRole, Affiliation
from studio.models.pack import Pack, PackPurchase
from studio.models.ledger import TokenLedger, TokenReason
from studio.models.studio_class import StudioClass
from studio.models.booking import Booking, BookingStatus
from studio.models.payment import (
    Payment,
    PaymentStatus,
    CheckoutLink,
    CheckoutLinkStatus,
    WebhookLog,
)

__all__ = [
    "User", "UserRole", "Affiliation",
    "Pack", "PackPurchase",
    "TokenLedger", "TokenReason",
    "StudioClass",
    "Booking", "BookingStatus",
    "Payment", "PaymentStatus", "CheckoutLink", "CheckoutLinkStatus", "WebhookLog",
]
