from studio.schemas.booking import BookingCreate, BookingResponse, BookingCancelResponse
from studio.schemas.studio_class import ClassCreate, ClassResponse, AvailabilityResponse
from studio.schemas.ledger import BalanceResponse, LedgerEntryResponse, AdjustmentCreate
from studio.schemas.payment import CheckoutCreate, CheckoutResponse, ProviderPaymentNotification

__all__ = [
    "BookingCreate", "BookingResponse", "BookingCancelResponse",
    "ClassCreate", "ClassResponse", "AvailabilityResponse",
    "BalanceResponse", "LedgerEntryResponse", "AdjustmentCreate",
    "CheckoutCreate", "CheckoutResponse", "ProviderPaymentNotification",
]
