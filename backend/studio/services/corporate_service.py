"""
Monthly credit renewal for corporate-affiliated users (Wellhub, TotalPass).

Once per calendar month (UTC) each affiliated user's balance is reset: every
source still holding credits is zeroed with an offsetting ADMIN_ADJUST row,
attributed to the same purchase or to the unattributed pool, and then a single
CORPORATE_MONTHLY row grants the tier's allowance. The CORPORATE_MONTHLY row is
also the "already renewed" marker, so running the job twice in a month changes
nothing the second time.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.clock import month_start, next_month_start, utcnow
from studio.core.config import get_settings
from studio.core.logging import get_logger
from studio.db.transactions import run_in_transaction
from studio.models.ledger import TokenLedger, TokenReason
from studio.models.pack import PackPurchase
from studio.models.user import Affiliation, User
from studio.services import ledger_service

logger = get_logger(__name__)
settings = get_settings()

RESET_NOTE = "monthly renewal reset"


@dataclass
class RenewalSummary:
    renewed: int = 0
    skipped: int = 0
    failed: int = 0
    user_ids: list[int] = field(default_factory=list)


def monthly_credits(affiliation: str) -> int:
    return {
        Affiliation.WELLHUB.value: settings.WELLHUB_MONTHLY_CREDITS,
        Affiliation.TOTALPASS.value: settings.TOTALPASS_MONTHLY_CREDITS,
    }.get(affiliation, 0)


async def _renewed_this_month(db: AsyncSession, user_id: int, now: datetime) -> bool:
    result = await db.execute(
        select(TokenLedger.id)
        .where(
            TokenLedger.user_id == user_id,
            TokenLedger.reason == TokenReason.CORPORATE_MONTHLY.value,
            TokenLedger.created_at >= month_start(now),
            TokenLedger.created_at < next_month_start(now),
        )
        .limit(1)
    )
    return result.first() is not None


async def _renew_user(db: AsyncSession, user_id: int, credits: int, now: datetime) -> bool:
    await ledger_service.lock_user(db, user_id)
    if await _renewed_this_month(db, user_id, now):
        return False

    remaining = await db.execute(
        select(TokenLedger.pack_purchase_id, func.sum(TokenLedger.delta))
        .join(PackPurchase, TokenLedger.pack_purchase_id == PackPurchase.id)
        .where(TokenLedger.user_id == user_id, PackPurchase.expires_at > now)
        .group_by(TokenLedger.pack_purchase_id)
    )
    for purchase_id, left in remaining.all():
        if not left:
            continue
        await ledger_service.append_entry(
            db, user_id, -left, TokenReason.ADMIN_ADJUST,
            pack_purchase_id=purchase_id, note=RESET_NOTE, created_at=now,
        )
        await db.execute(
            update(PackPurchase)
            .where(PackPurchase.id == purchase_id)
            .values(classes_left=PackPurchase.classes_left - left)
        )

    pool = await ledger_service.unattributed_balance(db, user_id)
    if pool:
        await ledger_service.append_entry(
            db, user_id, -pool, TokenReason.ADMIN_ADJUST, note=RESET_NOTE, created_at=now
        )

    await ledger_service.append_entry(db, user_id, credits, TokenReason.CORPORATE_MONTHLY, created_at=now)
    return True


async def run_monthly_renewal(db: AsyncSession, now: Optional[datetime] = None) -> RenewalSummary:
    """Renew every affiliated user, one transaction per user."""
    now = now or utcnow()
    async with db.begin():
        result = await db.execute(
            select(User.id, User.affiliation)
            .where(User.affiliation.in_([Affiliation.WELLHUB.value, Affiliation.TOTALPASS.value]))
            .order_by(User.id)
        )
        members = result.all()

    summary = RenewalSummary()
    for user_id, affiliation in members:
        credits = monthly_credits(affiliation)
        try:
            renewed = await run_in_transaction(
                db, "monthly_renewal", lambda s: _renew_user(s, user_id, credits, now)
            )
        except Exception as exc:
            summary.failed += 1
            logger.exception("monthly_renewal_failed", user_id=user_id, error=str(exc))
            continue

        if renewed:
            summary.renewed += 1
            summary.user_ids.append(user_id)
            logger.info("monthly_renewal_applied", user_id=user_id, affiliation=affiliation, credits=credits)
        else:
            summary.skipped += 1

    logger.info(
        "monthly_renewal_completed",
        renewed=summary.renewed,
        skipped=summary.skipped,
        failed=summary.failed,
    )
    return summary
