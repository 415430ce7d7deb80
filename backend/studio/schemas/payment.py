"""
Pydantic schemas for checkout, manual sales and provider notifications.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class CheckoutCreate(BaseModel):
    pack_id: int


class CheckoutResponse(BaseModel):
    code: str
    payment_id: int
    external_reference: str
    amount: Decimal
    currency: str


class ManualPurchaseCreate(BaseModel):
    user_id: int
    pack_id: int
    note: Optional[str] = Field(None, max_length=255)


class ManualPurchaseResponse(BaseModel):
    pack_purchase_id: int
    payment_id: Optional[int]
    classes_left: int
    expires_at: datetime


class Payer(BaseModel):
    email: Optional[str] = None

    model_config = {"extra": "allow"}


class ProviderPaymentNotification(BaseModel):
    """
    The payment fields the provider sends. They may arrive at the top level or
    nested under `data`; nested values win.
    """

    id: Optional[str] = None
    status: Optional[str] = None
    external_reference: Optional[str] = None
    preference_id: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    currency_id: Optional[str] = None
    payer: Optional[Payer] = None

    model_config = {"extra": "allow"}

    @field_validator("id", "preference_id", "external_reference", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @classmethod
    def from_payload(cls, payload: dict) -> "ProviderPaymentNotification":
        merged = dict(payload or {})
        data = merged.pop("data", None)
        if isinstance(data, dict):
            merged.update({k: v for k, v in data.items() if v is not None})
        return cls.model_validate(merged)

    @property
    def payer_email(self) -> Optional[str]:
        if self.payer and self.payer.email:
            return self.payer.email.strip().lower() or None
        return None


class WebhookAck(BaseModel):
    ok: bool = True


class WebhookReplayResponse(BaseModel):
    log_id: int
    outcome: str
    processed_ok: bool
