"""
Business error taxonomy for the credits core.

Services raise StudioError with a stable ErrorCode. Raising inside an
`async with db.begin()` block rolls the transaction back, and the HTTP layer
maps the code to a status via HTTP_STATUS_BY_CODE.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    # Capacity
    NOT_ENOUGH_SPOTS = "NOT_ENOUGH_SPOTS"
    CLASS_FULL = "CLASS_FULL"
    CAPACITY_TOO_SMALL = "CAPACITY_TOO_SMALL"
    # Credits
    INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
    NO_CREDITS_AVAILABLE = "NO_CREDITS_AVAILABLE"
    NEGATIVE_BALANCE = "NEGATIVE_BALANCE"
    # Timing
    WINDOW_CLOSED = "WINDOW_CLOSED"
    CLASS_IN_PAST = "CLASS_IN_PAST"
    # State
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    ALREADY_CANCELED = "ALREADY_CANCELED"
    BOOKING_NOT_ACTIVE = "BOOKING_NOT_ACTIVE"
    CLASS_CANCELED = "CLASS_CANCELED"
    CLASS_HAS_BOOKINGS = "CLASS_HAS_BOOKINGS"
    PACK_ALREADY_PURCHASED = "PACK_ALREADY_PURCHASED"
    # Lookup / access
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    # Reconciliation (audit annotations, never surfaced to users)
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    LOCAL_PAYMENT_NOT_FOUND = "LOCAL_PAYMENT_NOT_FOUND"
    ALREADY_CREDITED = "ALREADY_CREDITED"
    NO_BENEFICIARY_USER = "NO_BENEFICIARY_USER"


HTTP_STATUS_BY_CODE = {
    ErrorCode.NOT_ENOUGH_SPOTS: 409,
    ErrorCode.CLASS_FULL: 409,
    ErrorCode.CAPACITY_TOO_SMALL: 409,
    ErrorCode.INSUFFICIENT_TOKENS: 402,
    ErrorCode.NO_CREDITS_AVAILABLE: 402,
    ErrorCode.NEGATIVE_BALANCE: 400,
    ErrorCode.WINDOW_CLOSED: 409,
    ErrorCode.CLASS_IN_PAST: 409,
    ErrorCode.ALREADY_ENROLLED: 409,
    ErrorCode.ALREADY_CANCELED: 409,
    ErrorCode.BOOKING_NOT_ACTIVE: 409,
    ErrorCode.CLASS_CANCELED: 409,
    ErrorCode.CLASS_HAS_BOOKINGS: 409,
    ErrorCode.PACK_ALREADY_PURCHASED: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.VALIDATION_ERROR: 400,
}


class StudioError(Exception):
    """An expected, recoverable business-rule failure."""

    def __init__(self, code: ErrorCode, message: str = "", **details: Any):
        self.code = code
        self.message = message or code.value
        self.details = details
        super().__init__(f"{code.value}: {self.message}")

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "detail": self.message, **self.details}


class LedgerImmutableError(Exception):
    """Raised when code attempts to modify or delete a written ledger row."""
