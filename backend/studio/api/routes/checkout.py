"""
Checkout initiation for pack purchases.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.security import Principal, get_current_principal
from studio.db.session import get_db
from studio.schemas.payment import CheckoutCreate, CheckoutResponse
from studio.services.checkout_service import create_checkout

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("/", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_endpoint(
    checkout_data: CheckoutCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a checkout for a pack. The returned external_reference is what the
    provider preference must carry so the payment can be reconciled.
    """
    result = await create_checkout(db, checkout_data.pack_id, principal.user_id)
    return CheckoutResponse(
        code=result.link.code,
        payment_id=result.payment.id,
        external_reference=result.external_reference,
        amount=result.payment.amount,
        currency=result.payment.currency,
    )
