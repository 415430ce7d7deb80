"""
Payment provider notifications.

Always answers 200: the outcome is recorded on the audit log, and a non-2xx
answer would only make the provider redeliver a notification we already hold.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.session import get_db
from studio.schemas.payment import WebhookAck
from studio.services import cache_service
from studio.services.reconciliation_service import handle_notification

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/mercadopago", response_model=WebhookAck)
async def mercadopago_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    raw_body = await request.body()
    result = await handle_notification(
        db,
        raw_body,
        headers=request.headers,
        # the provider signs origin + path; `?type=payment&data.id=...` is not part of it
        notification_url=str(request.url.replace(query="", fragment="")),
        query=request.query_params,
    )
    if result.user_id is not None:
        await cache_service.invalidate(user_ids=(result.user_id,))
    return WebhookAck(ok=True)
