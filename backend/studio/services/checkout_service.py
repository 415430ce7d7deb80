"""
Checkout initiation, pack issuance and manual admin sales.

CORRELATION TOKEN
=================

When a checkout starts we create the local Payment(PENDING) first and embed
its id in the provider's `external_reference`:

    "{user_id or 'anon'}|{pack_id}|{payment_id}|{nonce}"

The provider echoes it back in every notification. Reconciliation uses it to
find the local payment even before the provider's own payment id is known,
and the UNIQUE column makes it the idempotency key for crediting.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import utcnow
from studio.core.config import get_settings
from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import get_logger
from studio.models.ledger import TokenReason
from studio.models.pack import Pack, PackPurchase
from studio.models.payment import CheckoutLink, CheckoutLinkStatus, Payment, PaymentStatus
from studio.models.user import User
from studio.services import ledger_service

logger = get_logger(__name__)
settings = get_settings()

ANONYMOUS = "anon"
ADMIN_MANUAL = "ADMIN_MANUAL"


@dataclass(frozen=True)
class CorrelationToken:
    user_id: Optional[int]
    pack_id: Optional[int]
    payment_id: Optional[int]
    nonce: str = ""

    def encode(self) -> str:
        user = str(self.user_id) if self.user_id is not None else ANONYMOUS
        return "|".join([user, str(self.pack_id), str(self.payment_id), self.nonce])

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["CorrelationToken"]:
        """Lenient parse: malformed segments become None instead of failing."""
        if not value or "|" not in value:
            return None
        parts = (value.split("|") + ["", "", "", ""])[:4]

        def _int(part: str) -> Optional[int]:
            part = part.strip()
            return int(part) if part.isdigit() else None

        return cls(user_id=_int(parts[0]), pack_id=_int(parts[1]), payment_id=_int(parts[2]), nonce=parts[3])


@dataclass
class CheckoutResult:
    link: CheckoutLink
    payment: Payment
    external_reference: str


async def get_pack(db: AsyncSession, pack_id: int) -> Pack:
    pack = await db.get(Pack, pack_id)
    if not pack:
        raise StudioError(ErrorCode.NOT_FOUND, f"Pack {pack_id} not found", pack_id=pack_id)
    return pack


async def _ensure_not_bought(db: AsyncSession, user_id: int, pack: Pack) -> None:
    if not pack.once_per_user:
        return
    result = await db.execute(
        select(PackPurchase.id).where(PackPurchase.user_id == user_id, PackPurchase.pack_id == pack.id)
    )
    if result.first():
        raise StudioError(
            ErrorCode.PACK_ALREADY_PURCHASED,
            "This pack can only be bought once per user",
            pack_id=pack.id,
        )


async def issue_purchase(
    db: AsyncSession,
    user_id: int,
    pack: Pack,
    payment_id: Optional[int],
    now: Optional[datetime] = None,
) -> PackPurchase:
    """Create the PackPurchase and its PURCHASE_CREDIT row in the current transaction."""
    now = now or utcnow()
    purchase = PackPurchase(
        user_id=user_id,
        pack_id=pack.id,
        classes_left=pack.classes,
        expires_at=now + timedelta(days=pack.validity_days),
        payment_id=payment_id,
    )
    db.add(purchase)
    await db.flush()

    await ledger_service.append_entry(
        db,
        user_id,
        pack.classes,
        TokenReason.PURCHASE_CREDIT,
        pack_purchase_id=purchase.id,
    )
    return purchase


async def create_checkout(
    db: AsyncSession, pack_id: int, user_id: Optional[int] = None
) -> CheckoutResult:
    """
    Open a checkout for a pack: CheckoutLink(OPEN) + Payment(PENDING) carrying
    the correlation token. Creating the provider preference is the caller's job.
    """
    async with db.begin():
        pack = await get_pack(db, pack_id)
        if not pack.is_active:
            raise StudioError(ErrorCode.VALIDATION_ERROR, "Pack is not available", pack_id=pack_id)
        if pack.price is None or Decimal(pack.price) <= 0:
            raise StudioError(ErrorCode.VALIDATION_ERROR, "Pack has no valid price", pack_id=pack_id)
        if user_id is not None:
            await _ensure_not_bought(db, user_id, pack)

        payment = Payment(
            provider=settings.PAYMENT_PROVIDER,
            status=PaymentStatus.PENDING.value,
            amount=pack.price,
            currency=settings.PAYMENT_CURRENCY,
            user_id=user_id,
        )
        db.add(payment)
        await db.flush()

        token = CorrelationToken(user_id=user_id, pack_id=pack.id, payment_id=payment.id, nonce=uuid.uuid4().hex)
        payment.external_reference = token.encode()

        link = CheckoutLink(
            code=uuid.uuid4().hex[:8],
            status=CheckoutLinkStatus.OPEN.value,
            pack_id=pack.id,
            user_id=user_id,
            payment_id=payment.id,
        )
        db.add(link)
        await db.flush()

    logger.info(
        "checkout_created",
        payment_id=payment.id,
        checkout_code=link.code,
        pack_id=pack_id,
        user_id=user_id,
    )
    return CheckoutResult(link=link, payment=payment, external_reference=payment.external_reference)


async def grant_pack(
    db: AsyncSession,
    user_id: int,
    pack_id: int,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PackPurchase:
    """Manual sale recorded by staff: APPROVED payment, purchase and credit in one transaction."""
    now = now or utcnow()
    async with db.begin():
        user = await db.get(User, user_id)
        if not user:
            raise StudioError(ErrorCode.NOT_FOUND, f"User {user_id} not found", user_id=user_id)
        pack = await get_pack(db, pack_id)

        payment = Payment(
            provider=settings.PAYMENT_PROVIDER,
            status=PaymentStatus.APPROVED.value,
            amount=pack.price,
            currency=settings.PAYMENT_CURRENCY,
            user_id=user.id,
            external_reference=f"{ADMIN_MANUAL}:{uuid.uuid4().hex}",
            raw={"source": "admin_manual", "note": note, "pack_id": pack.id, "user_id": user.id},
        )
        db.add(payment)
        await db.flush()

        purchase = await issue_purchase(db, user.id, pack, payment.id, now)

    logger.info(
        "pack_granted",
        user_id=user_id,
        pack_id=pack_id,
        payment_id=payment.id,
        pack_purchase_id=purchase.id,
        classes=pack.classes,
    )
    return purchase
