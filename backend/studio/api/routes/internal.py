"""
Endpoints for the scheduler. Guarded by a shared token instead of a user JWT.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.config import get_settings
from studio.db.session import get_db
from studio.schemas.ledger import RenewalResponse
from studio.services import cache_service
from studio.services.corporate_service import run_monthly_renewal

settings = get_settings()
router = APIRouter(prefix="/internal", tags=["Internal"])


async def require_internal_token(x_internal_token: Optional[str] = Header(None)) -> None:
    expected = settings.INTERNAL_JOB_TOKEN
    if not expected or not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid internal token")


@router.post("/monthly-renewal", response_model=RenewalResponse, dependencies=[Depends(require_internal_token)])
async def monthly_renewal(db: AsyncSession = Depends(get_db)):
    """Reset and re-grant corporate credits. Running it twice in a month is a no-op."""
    summary = await run_monthly_renewal(db)
    await cache_service.invalidate(user_ids=tuple(summary.user_ids))
    return RenewalResponse(renewed=summary.renewed, skipped=summary.skipped, failed=summary.failed)
