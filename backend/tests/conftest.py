"""
Pytest fixtures for test database, client, and authentication.

Every test gets its own file-backed SQLite database. Services open their own
transactions, so each service call and each HTTP request gets a fresh session
from the test sessionmaker, exactly like production.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_ENABLED"] = "false"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["INTERNAL_JOB_TOKEN"] = "test-internal-token"

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from studio.core.clock import utcnow
from studio.core.security import create_access_token
from studio.db.base import Base
from studio.db.session import build_engine, build_sessionmaker, get_db
from studio.main import app
from studio.models import Booking, Pack, StudioClass, TokenLedger, User, UserRole
from studio.services import capacity_service, ledger_service
from studio.services.checkout_service import grant_pack


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables in a throwaway database file, dispose afterwards."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    """A session with no transaction begun, for calling one service."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB dependency with the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def add(session_factory):
    """Persist ORM objects in their own transaction and return the first one."""

    async def _add(*objects):
        async with session_factory() as session:
            async with session.begin():
                session.add_all(objects)
        return objects[0]

    return _add


@pytest_asyncio.fixture
async def fetch(session_factory):
    async def _fetch(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)

    return _fetch


@pytest_asyncio.fixture
async def balance_of(session_factory):
    async def _balance(user_id: int, as_of=None) -> int:
        async with session_factory() as session:
            return await ledger_service.get_balance(session, user_id, as_of)

    return _balance


@pytest_asyncio.fixture
async def ledger_of(session_factory):
    """Ledger rows of a user, oldest first."""

    async def _ledger(user_id: int) -> list[TokenLedger]:
        async with session_factory() as session:
            result = await session.execute(
                select(TokenLedger).where(TokenLedger.user_id == user_id).order_by(TokenLedger.id)
            )
            return list(result.scalars().all())

    return _ledger


@pytest_asyncio.fixture
async def seats_left(session_factory):
    """Available seats, read in a session of its own."""

    async def _seats(class_id: int) -> int:
        async with session_factory() as session:
            return await capacity_service.available(session, class_id)

    return _seats


@pytest_asyncio.fixture
async def bookings_of_class(session_factory):
    async def _bookings(class_id: int) -> list[Booking]:
        async with session_factory() as session:
            result = await session.execute(
                select(Booking).where(Booking.class_id == class_id).order_by(Booking.id)
            )
            return list(result.scalars().all())

    return _bookings


@pytest_asyncio.fixture
async def give_pack(session_factory, pack):
    """Sell a pack to a user the way the front desk does."""

    async def _give(user_id: int, pack_obj: Optional[Pack] = None, now=None):
        async with session_factory() as session:
            return await grant_pack(session, user_id, (pack_obj or pack).id, now=now)

    return _give


@pytest_asyncio.fixture
async def make_class(add):
    async def _make(
        capacity: int = 10,
        starts_in: timedelta = timedelta(days=2),
        credit_cost: int = 1,
        cancel_before_min: Optional[int] = None,
        title: str = "Reformer Flow",
    ) -> StudioClass:
        return await add(
            StudioClass(
                title=title,
                date=utcnow() + starts_in,
                capacity=capacity,
                credit_cost=credit_cost,
                cancel_before_min=cancel_before_min,
            )
        )

    return _make


# ---------------------------------------------------------------------------
# Users and tokens
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def user(add) -> User:
    return await add(User(email="member@example.com", name="Member"))


@pytest_asyncio.fixture
async def other_user(add) -> User:
    return await add(User(email="other@example.com", name="Other"))


@pytest_asyncio.fixture
async def admin(add) -> User:
    return await add(User(email="admin@example.com", name="Front Desk", role=UserRole.ADMIN.value))


def _headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def headers_for():
    return _headers_for


@pytest_asyncio.fixture
async def auth_headers(user: User) -> dict:
    return _headers_for(user)


@pytest_asyncio.fixture
async def admin_headers(admin: User) -> dict:
    return _headers_for(admin)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def pack(add) -> Pack:
    """10 classes, valid 30 days."""
    return await add(Pack(name="10 Class Pack", classes=10, price=Decimal("500.00"), validity_days=30))


@pytest_asyncio.fixture
async def single_pack(add) -> Pack:
    return await add(Pack(name="Drop-in", classes=1, price=Decimal("80.00"), validity_days=30))


@pytest_asyncio.fixture
async def klass(make_class) -> StudioClass:
    """A class two days out with 10 seats costing 1 credit."""
    return await make_class()
