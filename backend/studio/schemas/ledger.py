"""
Pydantic schemas for balances, ledger history and credit jobs.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    user_id: int
    balance: int
    cached: bool = False


class LedgerEntryResponse(BaseModel):
    id: int
    delta: int
    reason: str
    pack_purchase_id: Optional[int]
    booking_id: Optional[int]
    note: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class AdjustmentCreate(BaseModel):
    delta: int
    note: Optional[str] = Field(None, max_length=255)


class AdjustmentResponse(BaseModel):
    user_id: int
    previous_balance: int
    new_balance: int


class PurchaseProjectionResponse(BaseModel):
    pack_purchase_id: int
    classes_left: int


class RenewalResponse(BaseModel):
    renewed: int
    skipped: int
    failed: int
