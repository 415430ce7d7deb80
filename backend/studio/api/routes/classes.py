"""
Class endpoints. Availability is served from Redis when possible.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.logging import get_logger
from studio.core.security import Principal, require_admin
from studio.db.session import get_db
from studio.schemas.studio_class import AvailabilityResponse, ClassCreate, ClassResponse
from studio.services import cache_service, capacity_service

logger = get_logger(__name__)
router = APIRouter(prefix="/classes", tags=["Classes"])


@router.post("/", response_model=ClassResponse, status_code=status.HTTP_201_CREATED)
async def create_class_endpoint(
    class_data: ClassCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Schedule a class. Admin only."""
    return await capacity_service.create_class(db, **class_data.model_dump())


@router.get("/{class_id}", response_model=ClassResponse)
async def get_class_endpoint(class_id: int, db: AsyncSession = Depends(get_db)):
    return await capacity_service.get_class(db, class_id)


@router.get("/{class_id}/availability", response_model=AvailabilityResponse)
async def class_availability(class_id: int, db: AsyncSession = Depends(get_db)):
    """
    Seats left in a class.
    Cached per class and dropped whenever a booking for the class commits.
    """
    cached = await cache_service.get_cached_availability(class_id)
    if cached:
        logger.info("availability_cache_hit", class_id=class_id)
        return AvailabilityResponse(**cached, cached=True)

    snapshot = await capacity_service.availability_snapshot(db, class_id)
    await cache_service.set_cached_availability(class_id, snapshot)
    return AvailabilityResponse(**snapshot)
