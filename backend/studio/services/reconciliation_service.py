"""
Payment reconciliation: provider notifications -> ledger credits, exactly once.

DELIVERY MODEL
==============

The provider delivers at least once, possibly out of order and concurrently.
The protocol below makes every delivery safe to process any number of times:

  1. Audit first. The raw notification is committed to webhook_logs before it
     is interpreted, so nothing is lost even if processing fails later.
  2. Authenticity. `x-signature: ts=<ts>,v1=<hex>` must equal
     HMAC-SHA256(secret, "<data id>:<ts>:<notification url>:<raw body>").
     The legacy `x-hub-signature-256: sha256=<HMAC(raw body)>` is accepted
     too. A bad or missing signature is annotated and acknowledged, and
     nothing else changes.
  3. Resolution. The local payment is found by provider payment id, preference
     id, external reference, or the payment id inside the correlation token.
  4. Guard. Under a row lock on the payment, an existing PackPurchase means the
     payment was already credited: the delivery is a no-op. The UNIQUE
     pack_purchases.payment_id backs this up; a race on it is retried once and
     then lands here.
  5. Credit. APPROVED -> beneficiary, PackPurchase, PURCHASE_CREDIT and the
     checkout link completed, in one transaction.
  6. Terminal failures (REJECTED/CANCELED/REFUNDED) update the status and close
     the checkout link. They never credit. A refund of an already credited
     payment claws back whatever the purchase has left.
  7. Errors are logged against the audit row and still acknowledged, so the
     provider stops retrying. Local state is rolled back and the row can be
     replayed.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import utcnow
from studio.core.config import get_settings
from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import bind_context, get_logger
from studio.core.metrics import record_webhook
from studio.db.transactions import run_in_transaction
from studio.models.ledger import TokenReason
from studio.models.pack import PackPurchase
from studio.models.payment import (
    CheckoutLink,
    CheckoutLinkStatus,
    Payment,
    PaymentStatus,
    WebhookLog,
)
from studio.models.user import User, UserRole
from studio.schemas.payment import ProviderPaymentNotification
from studio.services import ledger_service
from studio.services.checkout_service import CorrelationToken, get_pack, issue_purchase

logger = get_logger(__name__)
settings = get_settings()

CREDIT_OK = "CREDIT_OK"
REFUND_CLAWBACK = "REFUND_CLAWBACK"
NO_PAYMENT_ID = "NO_PAYMENT_ID"
SIGNATURE_NOT_CHECKED = "SIGNATURE_NOT_CHECKED"


@dataclass
class WebhookResult:
    log_id: int
    outcome: str
    processed_ok: bool
    notes: list[str] = field(default_factory=list)
    user_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

def compute_signature(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def canonical_message(data_id: Optional[str], ts: str, notification_url: str, raw_body: str) -> str:
    return f"{data_id or ''}:{ts}:{notification_url}:{raw_body}"


def parse_signature_header(header: str) -> tuple[str, str]:
    """`ts=...,v1=...` -> (ts, v1)."""
    parts = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        parts[key.strip()] = value.strip()
    return parts.get("ts", ""), (parts.get("v1") or parts.get("sha256") or "").lower()


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    raw_body: str,
    data_id: Optional[str],
    notification_url: str,
) -> Optional[bool]:
    """True/False for a checked signature, None when no secret is configured."""
    if not secret:
        return None

    headers = {k.lower(): v for k, v in headers.items()}
    x_signature = headers.get("x-signature")
    if x_signature:
        ts, v1 = parse_signature_header(x_signature)
        expected = compute_signature(secret, canonical_message(data_id, ts, notification_url, raw_body))
        return bool(v1) and hmac.compare_digest(v1, expected)

    legacy = headers.get("x-hub-signature-256") or headers.get("x-mercadopago-signature") or ""
    if legacy.lower().startswith("sha256="):
        expected = compute_signature(secret, raw_body)
        return hmac.compare_digest(legacy[len("sha256="):].lower(), expected)

    return False


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def _parse_body(raw_body: str) -> dict:
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {"value": payload}


def _delivery_id(payload: dict, query: Mapping[str, str]) -> Optional[str]:
    """Top-level id first, then data.id, the resource path, and finally the query string."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    resource = payload.get("resource")
    if isinstance(resource, str) and resource:
        resource = resource.rstrip("/").split("/")[-1]
    for candidate in (payload.get("id"), data.get("id"), resource, query.get("data.id"), query.get("id")):
        if candidate not in (None, ""):
            return str(candidate)
    return None


async def _annotate(
    db: AsyncSession,
    log_id: int,
    outcome: str,
    processed_ok: bool,
    signature_valid: Optional[bool] = None,
    notes: Optional[list[str]] = None,
) -> None:
    error = "; ".join([outcome, *(notes or [])])[:255]
    values = {"error": error, "processed_ok": processed_ok, "processed_at": utcnow()}
    if signature_valid is not None:
        values["signature_valid"] = signature_valid
    async with db.begin():
        await db.execute(update(WebhookLog).where(WebhookLog.id == log_id).values(**values))


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

async def _resolve_payment(
    db: AsyncSession,
    notification: ProviderPaymentNotification,
    token: Optional[CorrelationToken],
) -> Optional[Payment]:
    conditions = []
    if notification.id:
        conditions.append(Payment.provider_payment_id == notification.id)
    if notification.preference_id:
        conditions.append(Payment.preference_id == notification.preference_id)
    if notification.external_reference:
        conditions.append(Payment.external_reference == notification.external_reference)

    payment_id = None
    if conditions:
        found = await db.execute(select(Payment.id).where(or_(*conditions)).order_by(Payment.id).limit(1))
        payment_id = found.scalar_one_or_none()
    if payment_id is None and token and token.payment_id is not None:
        payment_id = token.payment_id
    if payment_id is None:
        return None

    locked = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return locked.scalar_one_or_none()


async def _resolve_beneficiary(
    db: AsyncSession,
    payment: Payment,
    link: Optional[CheckoutLink],
    token: Optional[CorrelationToken],
    payer_email: Optional[str],
) -> Optional[int]:
    """
    Token user, then checkout-link user, then payment user. Without any of
    them, the payer email is upserted into a USER account: the payer is the
    only identity the provider gives us for anonymous checkouts.
    """
    for candidate in (
        token.user_id if token else None,
        link.user_id if link else None,
        payment.user_id,
    ):
        if candidate is not None:
            return candidate

    if not payer_email:
        return None

    result = await db.execute(select(User).where(func.lower(User.email) == payer_email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=payer_email, role=UserRole.USER.value)
        db.add(user)
        await db.flush()
        logger.info("beneficiary_user_created", user_id=user.id, payment_id=payment.id)
    return user.id


def _mismatch_notes(notification: ProviderPaymentNotification, payment: Payment, pack_price) -> list[str]:
    notes = []
    amount = notification.transaction_amount
    if amount is not None:
        try:
            if Decimal(amount) != Decimal(pack_price):
                notes.append(f"AMOUNT_MISMATCH provider={amount} pack={pack_price}")
        except InvalidOperation:
            notes.append(f"AMOUNT_UNPARSEABLE provider={amount}")
    if notification.currency_id and notification.currency_id != payment.currency:
        notes.append(f"CURRENCY_MISMATCH provider={notification.currency_id}")
    return notes


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

async def _claw_back(db: AsyncSession, purchase: PackPurchase) -> int:
    await ledger_service.lock_user(db, purchase.user_id)
    remaining = await ledger_service.purchase_remaining(db, purchase.id)
    if remaining <= 0:
        return 0
    await ledger_service.append_entry(
        db,
        purchase.user_id,
        -remaining,
        TokenReason.ADMIN_ADJUST,
        pack_purchase_id=purchase.id,
        note="provider refund",
    )
    await db.execute(
        update(PackPurchase)
        .where(PackPurchase.id == purchase.id)
        .values(classes_left=PackPurchase.classes_left - remaining)
    )
    return remaining


async def _apply(
    db: AsyncSession,
    notification: ProviderPaymentNotification,
    raw_payload: dict,
    now: datetime,
) -> tuple[str, list[str], Optional[int]]:
    token = CorrelationToken.parse(notification.external_reference)
    payment = await _resolve_payment(db, notification, token)
    if payment is None:
        return ErrorCode.LOCAL_PAYMENT_NOT_FOUND.value, [], None

    new_status = PaymentStatus.from_provider(notification.status)

    purchase = (
        await db.execute(select(PackPurchase).where(PackPurchase.payment_id == payment.id))
    ).scalar_one_or_none()
    link = (
        await db.execute(select(CheckoutLink).where(CheckoutLink.payment_id == payment.id))
    ).scalar_one_or_none()

    if notification.id and payment.provider_payment_id is None:
        payment.provider_payment_id = notification.id
    payment.preference_id = payment.preference_id or notification.preference_id
    payment.external_reference = payment.external_reference or notification.external_reference
    payment.payer_email = notification.payer_email or payment.payer_email
    payment.raw = raw_payload

    if purchase is not None:
        if new_status is PaymentStatus.REFUNDED and payment.status != PaymentStatus.REFUNDED.value:
            payment.status = PaymentStatus.REFUNDED.value
            removed = await _claw_back(db, purchase)
            return REFUND_CLAWBACK, [f"credits_removed={removed}"], purchase.user_id
        return ErrorCode.ALREADY_CREDITED.value, [], purchase.user_id

    if new_status.is_terminal_failure:
        payment.status = new_status.value
        if link and link.status != CheckoutLinkStatus.COMPLETED.value:
            link.status = CheckoutLinkStatus.CANCELED.value
        return f"NO_CREDIT_STATUS_{new_status.value}", [], None

    if new_status is not PaymentStatus.APPROVED:
        return f"NO_CREDIT_STATUS_{new_status.value}", [], None

    payment.status = PaymentStatus.APPROVED.value
    user_id = await _resolve_beneficiary(db, payment, link, token, notification.payer_email)
    if user_id is None:
        return ErrorCode.NO_BENEFICIARY_USER.value, [], None

    pack_id = link.pack_id if link else (token.pack_id if token else None)
    if pack_id is None:
        raise StudioError(ErrorCode.NOT_FOUND, "Payment has no pack to credit", payment_id=payment.id)
    pack = await get_pack(db, pack_id)

    notes = _mismatch_notes(notification, payment, pack.price)
    payment.user_id = user_id
    new_purchase = await issue_purchase(db, user_id, pack, payment.id, now)

    if link:
        link.status = CheckoutLinkStatus.COMPLETED.value
        link.completed_at = now
        link.user_id = link.user_id or user_id

    logger.info(
        "payment_credited",
        payment_id=payment.id,
        user_id=user_id,
        pack_id=pack.id,
        pack_purchase_id=new_purchase.id,
        classes=pack.classes,
    )
    return CREDIT_OK, notes, user_id


async def _process_logged(
    db: AsyncSession,
    log_id: int,
    payload: dict,
    signature_valid: Optional[bool],
    now: Optional[datetime] = None,
) -> WebhookResult:
    now = now or utcnow()
    notes = [SIGNATURE_NOT_CHECKED] if signature_valid is None else []
    user_id = None
    try:
        notification = ProviderPaymentNotification.from_payload(payload)
        if not (notification.id or notification.external_reference or notification.preference_id):
            outcome, extra = NO_PAYMENT_ID, []
        else:
            outcome, extra, user_id = await run_in_transaction(
                db, "reconcile_payment", lambda s: _apply(s, notification, payload, now)
            )
        notes.extend(extra)
        processed_ok = True
    except Exception as exc:
        logger.exception("webhook_processing_failed", log_id=log_id, error=str(exc))
        outcome, processed_ok = f"PROCESSING_ERROR {exc.__class__.__name__}", False

    await _annotate(db, log_id, outcome, processed_ok, signature_valid, notes)
    record_webhook(outcome.split(" ")[0])
    logger.info("webhook_processed", log_id=log_id, outcome=outcome, processed_ok=processed_ok, notes=notes)
    return WebhookResult(log_id=log_id, outcome=outcome, processed_ok=processed_ok, notes=notes, user_id=user_id)


async def handle_notification(
    db: AsyncSession,
    raw_body: Union[bytes, str],
    headers: Mapping[str, str],
    notification_url: str,
    query: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """Entry point for one provider delivery. Never raises for bad input."""
    query = query or {}
    raw = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
    payload = _parse_body(raw)
    delivery_id = _delivery_id(payload, query)
    event_type = str(payload.get("type") or payload.get("action") or query.get("type") or query.get("topic") or "unknown")

    async with db.begin():
        log = WebhookLog(
            provider=settings.PAYMENT_PROVIDER,
            event_type=event_type[:64],
            delivery_id=delivery_id,
            payload=payload,
            raw_body=raw,
        )
        db.add(log)
        await db.flush()
        log_id = log.id
    bind_context(webhook_log_id=log_id, delivery_id=delivery_id)

    logger.info("webhook_received", event_type=event_type)

    signature_valid = verify_signature(
        settings.PAYMENT_WEBHOOK_SECRET, headers, raw, delivery_id, notification_url
    )
    if signature_valid is False:
        await _annotate(db, log_id, ErrorCode.INVALID_SIGNATURE.value, False, signature_valid=False)
        record_webhook(ErrorCode.INVALID_SIGNATURE.value)
        logger.warning("webhook_signature_invalid", log_id=log_id, delivery_id=delivery_id)
        return WebhookResult(log_id=log_id, outcome=ErrorCode.INVALID_SIGNATURE.value, processed_ok=False)

    return await _process_logged(db, log_id, payload, signature_valid, now)


async def replay_webhook(db: AsyncSession, log_id: int, now: Optional[datetime] = None) -> WebhookResult:
    """Reprocess a stored notification, e.g. after fixing the cause of a failure."""
    async with db.begin():
        log = await db.get(WebhookLog, log_id, populate_existing=True)
        if not log:
            raise StudioError(ErrorCode.NOT_FOUND, f"Webhook log {log_id} not found")
        if log.signature_valid is False:
            raise StudioError(ErrorCode.VALIDATION_ERROR, "Notification failed signature verification")
        payload, signature_valid = log.payload or {}, log.signature_valid

    logger.info("webhook_replay", log_id=log_id)
    return await _process_logged(db, log_id, payload, signature_valid, now)
