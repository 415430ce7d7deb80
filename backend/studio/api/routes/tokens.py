"""
Credit balance and ledger history for the authenticated user.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.security import Principal, get_current_principal
from studio.db.session import get_db
from studio.schemas.ledger import BalanceResponse, LedgerEntryResponse
from studio.services import cache_service, ledger_service

router = APIRouter(prefix="/me", tags=["Credits"])


@router.get("/balance", response_model=BalanceResponse)
async def my_balance(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    cached = await cache_service.get_cached_balance(principal.user_id)
    if cached:
        return BalanceResponse(**cached, cached=True)

    balance = await ledger_service.get_balance(db, principal.user_id)
    data = {"user_id": principal.user_id, "balance": balance}
    await cache_service.set_cached_balance(principal.user_id, data)
    return BalanceResponse(**data)


@router.get("/ledger", response_model=list[LedgerEntryResponse])
async def my_ledger(
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Most recent credit movements first."""
    return await ledger_service.list_entries(db, principal.user_id, limit)
