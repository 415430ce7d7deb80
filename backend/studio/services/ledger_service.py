"""
Ledger store: balances are derived, never stored.

BALANCE DEFINITION
==================

  balance(user, as_of) = SUM(delta) over token_ledger rows of the user where
      pack_purchase_id IS NULL                       (corporate / admin credits)
      OR pack_purchase.expires_at > as_of            (unexpired pack credits)

Expired pack credits drop out of the sum without any row being deleted, so
the full history stays auditable.

Per-purchase remaining credits (`PackPurchase.classes_left`) follow the same
rule restricted to one purchase: the sum of rows attributed to it. The column
is kept in step inside the same transaction as every attributed append and can
be rebuilt from the ledger at any time.

The primitives here run inside the caller's transaction; only `admin_adjust`
opens its own. Decisions made from the balance must come after `lock_user` so
concurrent writers for the same user are serialized.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import utcnow
from studio.core.errors import ErrorCode, StudioError
from studio.core.logging import get_logger
from studio.core.metrics import record_ledger_entry
from studio.models.ledger import TokenLedger, TokenReason
from studio.models.pack import PackPurchase
from studio.models.user import User

logger = get_logger(__name__)


async def lock_user(db: AsyncSession, user_id: int) -> User:
    """Lock the user row; the user's balance aggregate is guarded by it."""
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if not user:
        raise StudioError(ErrorCode.NOT_FOUND, f"User {user_id} not found", user_id=user_id)
    return user


async def get_balance(db: AsyncSession, user_id: int, as_of: Optional[datetime] = None) -> int:
    as_of = as_of or utcnow()
    result = await db.execute(
        select(func.coalesce(func.sum(TokenLedger.delta), 0))
        .select_from(TokenLedger)
        .outerjoin(PackPurchase, TokenLedger.pack_purchase_id == PackPurchase.id)
        .where(
            TokenLedger.user_id == user_id,
            or_(TokenLedger.pack_purchase_id.is_(None), PackPurchase.expires_at > as_of),
        )
    )
    return int(result.scalar_one())


async def unattributed_balance(db: AsyncSession, user_id: int) -> int:
    """Credits not tied to any purchase (corporate monthly, admin adjustments)."""
    result = await db.execute(
        select(func.coalesce(func.sum(TokenLedger.delta), 0)).where(
            TokenLedger.user_id == user_id,
            TokenLedger.pack_purchase_id.is_(None),
        )
    )
    return int(result.scalar_one())


async def purchase_remaining(db: AsyncSession, purchase_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(TokenLedger.delta), 0)).where(
            TokenLedger.pack_purchase_id == purchase_id
        )
    )
    return int(result.scalar_one())


async def rebuild_purchase_projection(db: AsyncSession, purchase_id: int) -> PackPurchase:
    """Recompute `classes_left` from the ledger rows attributed to the purchase."""
    purchase = await db.get(PackPurchase, purchase_id, with_for_update=True, populate_existing=True)
    if not purchase:
        raise StudioError(ErrorCode.NOT_FOUND, f"Pack purchase {purchase_id} not found")

    remaining = await purchase_remaining(db, purchase_id)
    if purchase.classes_left != remaining:
        logger.warning(
            "purchase_projection_rebuilt",
            pack_purchase_id=purchase_id,
            stored=purchase.classes_left,
            ledger=remaining,
        )
        purchase.classes_left = remaining
        await db.flush()
    return purchase


async def append_entry(
    db: AsyncSession,
    user_id: int,
    delta: int,
    reason: TokenReason,
    pack_purchase_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    note: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> TokenLedger:
    """Insert one immutable ledger row in the current transaction."""
    entry = TokenLedger(
        user_id=user_id,
        delta=delta,
        reason=reason.value,
        pack_purchase_id=pack_purchase_id,
        booking_id=booking_id,
        note=note,
        created_at=created_at or utcnow(),
    )
    db.add(entry)
    await db.flush()

    record_ledger_entry(reason.value)
    logger.info(
        "ledger_entry_appended",
        entry_id=entry.id,
        user_id=user_id,
        delta=delta,
        reason=reason.value,
        pack_purchase_id=pack_purchase_id,
        booking_id=booking_id,
    )
    return entry


async def list_entries(db: AsyncSession, user_id: int, limit: int = 50) -> list[TokenLedger]:
    result = await db.execute(
        select(TokenLedger)
        .where(TokenLedger.user_id == user_id)
        .order_by(TokenLedger.created_at.desc(), TokenLedger.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def admin_adjust(
    db: AsyncSession,
    user_id: int,
    delta: int,
    note: Optional[str] = None,
) -> tuple[int, int]:
    """
    Manual ADMIN_ADJUST entry. A decrease may never take the balance below zero.
    Returns (previous_balance, new_balance).
    """
    if delta == 0:
        raise StudioError(ErrorCode.VALIDATION_ERROR, "Adjustment delta cannot be zero")

    async with db.begin():
        await lock_user(db, user_id)
        previous = await get_balance(db, user_id)
        if previous + delta < 0:
            logger.warning(
                "admin_adjust_rejected",
                user_id=user_id,
                delta=delta,
                balance=previous,
            )
            raise StudioError(
                ErrorCode.NEGATIVE_BALANCE,
                "Adjustment would leave a negative balance",
                current_balance=previous,
            )
        await append_entry(db, user_id, delta, TokenReason.ADMIN_ADJUST, note=note)

    return previous, previous + delta
