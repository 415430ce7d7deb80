"""
Async engine, session factory and the request-scoped session dependency.

Services own their transaction boundaries (`async with db.begin()`), so the
dependency hands out a session that has not begun a transaction yet.

Isolation strategy:
  PostgreSQL - READ COMMITTED plus SELECT ... FOR UPDATE on the aggregate rows
  (class, user, booking, payment). Every statement after the lock sees the
  rows committed by the transaction that held it before us.
  SQLite - no row locks, so every transaction is opened with BEGIN IMMEDIATE,
  which takes the database write lock up front and serializes writers.
"""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from studio.core.config import get_settings

settings = get_settings()


def configure_sqlite_locking(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    if make_url(url).get_backend_name() == "sqlite":
        engine = create_async_engine(url, connect_args={"timeout": 30}, **kwargs)
        configure_sqlite_locking(engine)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        **kwargs,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = build_sessionmaker(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
