"""
Pydantic schemas for class scheduling and capacity.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ClassCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    date: datetime
    duration_min: int = Field(60, gt=0, le=600)
    capacity: int = Field(..., ge=0, le=1000)
    credit_cost: int = Field(1, gt=0, le=10)
    cancel_before_min: Optional[int] = Field(None, ge=0)
    instructor_id: Optional[int] = None


class ClassResponse(BaseModel):
    id: int
    title: str
    date: datetime
    duration_min: int
    capacity: int
    credit_cost: int
    is_canceled: bool
    cancel_before_min: Optional[int]
    instructor_id: Optional[int]

    model_config = {"from_attributes": True}


class CapacityUpdate(BaseModel):
    capacity: int = Field(..., ge=0, le=1000)


class AvailabilityResponse(BaseModel):
    class_id: int
    capacity: int
    booked: int
    available: int
    is_canceled: bool
    cached: bool = False
