"""
Transaction boundary with a single retry for retryable storage conflicts.

Retryable:
  - IntegrityError: a concurrent transaction inserted the row a unique
    constraint protects (duplicate booking, duplicate purchase for a payment).
    The retry re-reads and turns the race into the proper business outcome.
  - PostgreSQL serialization failure (40001) and deadlock (40P01).

Anything else, or a second failure, propagates as an internal error.
"""

from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio.core.config import get_settings
from studio.core.logging import get_logger
from studio.core.metrics import record_retry

logger = get_logger(__name__)
settings = get_settings()

T = TypeVar("T")

RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_retryable(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in RETRYABLE_SQLSTATES


async def run_in_transaction(
    db: AsyncSession,
    operation: str,
    work: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    attempts = max(1, settings.MAX_TRANSACTION_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            async with db.begin():
                return await work(db)
        except DBAPIError as exc:
            if attempt == attempts or not is_retryable(exc):
                raise
            record_retry(operation)
            logger.info(
                "transaction_retry",
                operation=operation,
                attempt=attempt,
                error=exc.__class__.__name__,
            )
    raise RuntimeError("unreachable")  # pragma: no cover
