"""
Tests for payment reconciliation of provider notifications.
"""

import asyncio
import json
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import func, select

from studio.core.config import get_settings
from studio.core.errors import ErrorCode, StudioError
from studio.models import (
    Booking,
    CheckoutLink,
    Pack,
    PackPurchase,
    Payment,
    PaymentStatus,
    TokenReason,
    User,
    WebhookLog,
)
from studio.services import booking_service
from studio.services.cancellation_service import admin_remove_booking
from studio.services.checkout_service import CorrelationToken, create_checkout
from studio.services.reconciliation_service import (
    CREDIT_OK,
    REFUND_CLAWBACK,
    canonical_message,
    compute_signature,
    handle_notification,
    parse_signature_header,
    replay_webhook,
    verify_signature,
)

SECRET = get_settings().PAYMENT_WEBHOOK_SECRET
NOTIFY_URL = "https://studio.example/api/v1/webhooks/mercadopago"


def notification(
    external_reference: Optional[str],
    status: str = "approved",
    mp_id: str = "mp-1001",
    amount="500.00",
    email: Optional[str] = None,
) -> dict:
    data = {
        "id": mp_id,
        "status": status,
        "external_reference": external_reference,
        "transaction_amount": amount,
        "currency_id": "MXN",
    }
    if email:
        data["payer"] = {"email": email}
    return {"type": "payment", "action": "payment.updated", "data": data}


def signed(body: dict, url: str = NOTIFY_URL, secret: str = SECRET) -> tuple[str, dict]:
    raw = json.dumps(body)
    ts = "1760000000"
    data_id = body.get("id") or body.get("data", {}).get("id")
    v1 = compute_signature(secret, canonical_message(data_id, ts, url, raw))
    return raw, {"x-signature": f"ts={ts},v1={v1}"}


@pytest_asyncio.fixture
async def deliver(session_factory):
    async def _deliver(raw: str, headers: dict, url: str = NOTIFY_URL):
        async with session_factory() as session:
            return await handle_notification(session, raw, headers, url)

    return _deliver


@pytest_asyncio.fixture
async def checkout(session_factory, user, pack):
    async with session_factory() as session:
        return await create_checkout(session, pack.id, user.id)


@pytest_asyncio.fixture
async def purchases_for_payment(session_factory):
    async def _count(payment_id: int) -> int:
        async with session_factory() as session:
            result = await session.execute(
                select(func.count(PackPurchase.id)).where(PackPurchase.payment_id == payment_id)
            )
            return result.scalar_one()

    return _count


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_embeds_correlation_token(checkout, user, pack):
    token = CorrelationToken.parse(checkout.external_reference)

    assert token.user_id == user.id
    assert token.pack_id == pack.id
    assert token.payment_id == checkout.payment.id
    assert checkout.payment.status == PaymentStatus.PENDING.value
    assert checkout.link.payment_id == checkout.payment.id


def test_correlation_token_parse_is_lenient():
    token = CorrelationToken.parse("anon|7|x|nonce")
    assert (token.user_id, token.pack_id, token.payment_id, token.nonce) == (None, 7, None, "nonce")
    assert CorrelationToken.parse("ADMIN_MANUAL:abc") is None
    assert CorrelationToken.parse(None) is None


@pytest.mark.asyncio
async def test_checkout_rejects_inactive_pack(db, add, user):
    retired = await add(Pack(name="Old", classes=5, price=Decimal("100"), validity_days=30, is_active=False))
    with pytest.raises(StudioError) as exc_info:
        await create_checkout(db, retired.id, user.id)
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_once_per_user_pack(db, add, user, give_pack):
    trial = await add(Pack(name="Trial", classes=2, price=Decimal("99"), validity_days=14, once_per_user=True))
    await give_pack(user.id, trial)

    with pytest.raises(StudioError) as exc_info:
        await create_checkout(db, trial.id, user.id)
    assert exc_info.value.code == ErrorCode.PACK_ALREADY_PURCHASED


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def test_parse_signature_header():
    assert parse_signature_header("ts=123, v1=ABCDEF") == ("123", "abcdef")


def test_signature_not_checked_without_secret():
    assert verify_signature("", {}, "{}", "1", NOTIFY_URL) is None


def test_legacy_signature_header():
    raw = '{"id": "1"}'
    legacy = {"X-Hub-Signature-256": "sha256=" + compute_signature(SECRET, raw)}
    assert verify_signature(SECRET, legacy, raw, "1", NOTIFY_URL) is True
    assert verify_signature(SECRET, {"x-hub-signature-256": "sha256=bad"}, raw, "1", NOTIFY_URL) is False


@pytest.mark.asyncio
async def test_invalid_signature_is_logged_and_ignored(deliver, checkout, user, balance_of, fetch):
    raw, _ = signed(notification(checkout.external_reference))
    result = await deliver(raw, {"x-signature": "ts=1760000000,v1=deadbeef"})

    assert result.outcome == ErrorCode.INVALID_SIGNATURE.value
    assert not result.processed_ok
    log = await fetch(WebhookLog, result.log_id)
    assert log.signature_valid is False
    assert log.raw_body == raw
    assert await balance_of(user.id) == 0
    assert (await fetch(Payment, checkout.payment.id)).status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(deliver, checkout, user, balance_of):
    raw, _ = signed(notification(checkout.external_reference))
    result = await deliver(raw, {})

    assert result.outcome == ErrorCode.INVALID_SIGNATURE.value
    assert await balance_of(user.id) == 0


# ---------------------------------------------------------------------------
# Crediting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_approved_payment_credits_once(deliver, checkout, user, balance_of, fetch, purchases_for_payment):
    raw, headers = signed(notification(checkout.external_reference))

    first = await deliver(raw, headers)
    second = await deliver(raw, headers)

    assert first.outcome == CREDIT_OK
    assert first.processed_ok
    assert first.user_id == user.id
    assert second.outcome == ErrorCode.ALREADY_CREDITED.value
    assert await balance_of(user.id) == 10
    assert await purchases_for_payment(checkout.payment.id) == 1

    payment = await fetch(Payment, checkout.payment.id)
    assert payment.status == PaymentStatus.APPROVED.value
    assert payment.provider_payment_id == "mp-1001"
    link = await fetch(CheckoutLink, checkout.link.id)
    assert link.status == "COMPLETED"
    assert link.completed_at is not None

    log = await fetch(WebhookLog, first.log_id)
    assert log.signature_valid is True
    assert log.processed_ok is True
    assert log.delivery_id == "mp-1001"


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries(deliver, checkout, user, balance_of, purchases_for_payment):
    raw, headers = signed(notification(checkout.external_reference))

    results = await asyncio.gather(*(deliver(raw, headers) for _ in range(3)))

    assert sorted(r.outcome for r in results).count(CREDIT_OK) == 1
    assert await purchases_for_payment(checkout.payment.id) == 1
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_pending_then_approved(deliver, checkout, user, balance_of):
    raw, headers = signed(notification(checkout.external_reference, status="in_process"))
    pending = await deliver(raw, headers)
    assert pending.outcome == "NO_CREDIT_STATUS_PENDING"
    assert await balance_of(user.id) == 0

    raw, headers = signed(notification(checkout.external_reference, status="approved"))
    approved = await deliver(raw, headers)
    assert approved.outcome == CREDIT_OK
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_rejected_payment_closes_link(deliver, checkout, user, balance_of, fetch):
    raw, headers = signed(notification(checkout.external_reference, status="rejected"))
    result = await deliver(raw, headers)

    assert result.outcome == "NO_CREDIT_STATUS_REJECTED"
    assert (await fetch(Payment, checkout.payment.id)).status == PaymentStatus.REJECTED.value
    assert (await fetch(CheckoutLink, checkout.link.id)).status == "CANCELED"
    assert await balance_of(user.id) == 0


@pytest.mark.asyncio
async def test_refund_after_credit_claws_back_remaining(db, deliver, checkout, user, klass, balance_of, fetch):
    raw, headers = signed(notification(checkout.external_reference))
    await deliver(raw, headers)
    booked = await booking_service.book_class(db, user.id, klass.id)

    raw, headers = signed(notification(checkout.external_reference, status="refunded"))
    result = await deliver(raw, headers)

    assert result.outcome == REFUND_CLAWBACK
    assert "credits_removed=9" in result.notes
    assert await balance_of(user.id) == 0
    assert (await fetch(Payment, checkout.payment.id)).status == PaymentStatus.REFUNDED.value
    assert (await fetch(Booking, booked.booking.id)).is_active

    repeat = await deliver(raw, headers)
    assert repeat.outcome == ErrorCode.ALREADY_CREDITED.value
    assert await balance_of(user.id) == 0


@pytest.mark.asyncio
async def test_unknown_payment(deliver):
    raw, headers = signed(notification("999|1|424242|zzz", mp_id="mp-unknown"))
    result = await deliver(raw, headers)

    assert result.outcome == ErrorCode.LOCAL_PAYMENT_NOT_FOUND.value
    assert result.processed_ok


@pytest.mark.asyncio
async def test_anonymous_checkout_credits_payer_email(session_factory, deliver, pack, balance_of):
    async with session_factory() as session:
        anon = await create_checkout(session, pack.id)
    assert anon.external_reference.startswith("anon|")

    raw, headers = signed(notification(anon.external_reference, email="New.Member@Example.com"))
    result = await deliver(raw, headers)

    assert result.outcome == CREDIT_OK
    async with session_factory() as session:
        created = (
            await session.execute(select(User).where(User.email == "new.member@example.com"))
        ).scalar_one()
    assert result.user_id == created.id
    assert await balance_of(created.id) == 10


@pytest.mark.asyncio
async def test_anonymous_checkout_without_payer(session_factory, deliver, pack, purchases_for_payment):
    async with session_factory() as session:
        anon = await create_checkout(session, pack.id)

    raw, headers = signed(notification(anon.external_reference))
    result = await deliver(raw, headers)

    assert result.outcome == ErrorCode.NO_BENEFICIARY_USER.value
    assert await purchases_for_payment(anon.payment.id) == 0


@pytest.mark.asyncio
async def test_amount_mismatch_is_annotated(deliver, checkout, user, balance_of, fetch):
    raw, headers = signed(notification(checkout.external_reference, amount="450.00"))
    result = await deliver(raw, headers)

    assert result.outcome == CREDIT_OK
    assert await balance_of(user.id) == 10
    log = await fetch(WebhookLog, result.log_id)
    assert "AMOUNT_MISMATCH" in log.error


@pytest.mark.asyncio
async def test_malformed_notification_is_acknowledged(deliver, fetch):
    raw, headers = signed({"data": {"id": "mp-9", "transaction_amount": "not-a-number"}})
    result = await deliver(raw, headers)

    assert not result.processed_ok
    assert result.outcome.startswith("PROCESSING_ERROR")
    assert (await fetch(WebhookLog, result.log_id)).processed_ok is False


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_replay_is_idempotent(db, deliver, checkout, user, balance_of):
    raw, headers = signed(notification(checkout.external_reference))
    first = await deliver(raw, headers)

    replayed = await replay_webhook(db, first.log_id)

    assert replayed.outcome == ErrorCode.ALREADY_CREDITED.value
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_replay_refuses_unsigned_notifications(db, deliver, checkout):
    raw, _ = signed(notification(checkout.external_reference))
    rejected = await deliver(raw, {"x-signature": "ts=1,v1=00"})

    with pytest.raises(StudioError) as exc_info:
        await replay_webhook(db, rejected.log_id)
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_endpoint_credits_and_always_acks(client: AsyncClient, checkout, user, balance_of):
    url = "http://test/api/v1/webhooks/mercadopago"
    raw, headers = signed(notification(checkout.external_reference), url=url)

    response = await client.post(
        "/api/v1/webhooks/mercadopago",
        content=raw,
        headers={**headers, "content-type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert await balance_of(user.id) == 10

    bad = await client.post("/api/v1/webhooks/mercadopago", content=raw, headers={"x-signature": "ts=1,v1=00"})
    assert bad.status_code == 200


@pytest.mark.asyncio
async def test_checkout_endpoint(client: AsyncClient, auth_headers, user, pack):
    response = await client.post("/api/v1/checkout/", json={"pack_id": pack.id}, headers=auth_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["external_reference"].startswith(f"{user.id}|{pack.id}|{data['payment_id']}|")
    assert data["currency"] == "MXN"
    assert Decimal(data["amount"]) == Decimal("500.00")


@pytest.mark.asyncio
async def test_webhook_signature_ignores_query_string(client: AsyncClient, checkout, user, balance_of):
    """The provider appends ?type=...&data.id=... but signs only origin + path."""
    raw, headers = signed(notification(checkout.external_reference), url="http://test/api/v1/webhooks/mercadopago")

    response = await client.post(
        "/api/v1/webhooks/mercadopago?type=payment&data.id=mp-1001",
        content=raw,
        headers={**headers, "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_top_level_id_is_the_signed_delivery_id(deliver, checkout, user, balance_of, fetch):
    body = {"id": "evt-77", **notification(checkout.external_reference)}
    raw, headers = signed(body)

    result = await deliver(raw, headers)

    assert result.outcome == CREDIT_OK
    assert (await fetch(WebhookLog, result.log_id)).delivery_id == "evt-77"
    assert await balance_of(user.id) == 10


@pytest.mark.asyncio
async def test_cancel_after_provider_refund_returns_no_credits(
    session_factory, deliver, checkout, user, klass, balance_of, ledger_of, fetch, seats_left
):
    """The money went back through the provider, so the released seat earns no credit back."""
    raw, headers = signed(notification(checkout.external_reference))
    await deliver(raw, headers)
    async with session_factory() as session:
        booked = await booking_service.book_class(session, user.id, klass.id)

    raw, headers = signed(notification(checkout.external_reference, status="refunded"))
    assert (await deliver(raw, headers)).outcome == REFUND_CLAWBACK
    assert await balance_of(user.id) == 0

    async with session_factory() as session:
        result = await admin_remove_booking(session, booked.booking.id)

    assert result.refunded == 0
    assert await balance_of(user.id) == 0
    assert await seats_left(klass.id) == 10
    booking = await fetch(Booking, booked.booking.id)
    assert not booking.is_active
    assert booking.refund_token is False
    assert not [row for row in await ledger_of(user.id) if row.reason == TokenReason.CANCEL_REFUND.value]
