"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    class_id: int
    quantity: int = Field(default=1, gt=0, le=10)


class BookingResponse(BaseModel):
    id: int
    user_id: Optional[int]
    guest_name: Optional[str] = None
    class_id: int
    quantity: int
    status: str
    pack_purchase_id: Optional[int] = None
    refund_token: bool = False
    attended: bool = False
    canceled_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    tokens: int
    class_capacity: int
    class_booked: int


class BookingCancelResponse(BaseModel):
    message: str
    booking_id: int
    status: str
    refunded: int
    already_canceled: bool = False


class AdminEnrollCreate(BaseModel):
    user_id: int


class GuestCreate(BaseModel):
    guest_name: str = Field(..., min_length=1, max_length=255)


class AttendanceUpdate(BaseModel):
    attended: bool
