"""
Pytest configuration and shared test fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite) with the full
schema, a session bound to it, factories for users and orders, and an async
HTTP client whose database dependency is bound to the same engine. Settings
are forced into the test environment before the application is imported.
"""

import os

os.environ["APP_ENVIRONMENT"] = "test"
os.environ["APP_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["APP_SECRET_KEY"] = "test-secret-key-for-the-dispatch-suite"
os.environ["APP_LOG_LEVEL"] = "WARNING"
os.environ["APP_MAPS_PROVIDER"] = "google"
os.environ.pop("APP_GOOGLE_MAPS_API_KEY", None)

import uuid
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from lastmile.core.config import get_settings
from lastmile.database.base import Base
from lastmile.database.connection import get_db
from lastmile.database.models import Order, OrderStatus, User
from lastmile.main import app


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    In-memory SQLite engine with working SAVEPOINTs.

    pysqlite's own transaction handling is disabled so that nested
    transactions (``atomic``) emit real SAVEPOINT statements.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return get_settings()


# ============================================================================
# Factories
# ============================================================================


class Factory:
    """Builds users and orders directly in the test database."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._sequence = 0

    def _next(self) -> int:
        self._sequence += 1
        return self._sequence

    async def user(
        self,
        full_name: Optional[str] = None,
        role: str = "courier",
        is_active: bool = True,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> User:
        n = self._next()
        user = User(
            id=uuid.uuid4(),
            full_name=full_name or f"User {n:03d}",
            email=f"user{n}-{uuid.uuid4().hex[:6]}@example.com",
            role=role,
            is_active=is_active,
            last_known_lat=lat,
            last_known_lon=lon,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def courier(self, full_name: Optional[str] = None, **kwargs) -> User:
        return await self.user(full_name=full_name, role=kwargs.pop("role", "courier"), **kwargs)

    async def dispatcher(self, full_name: str = "Dispatcher") -> User:
        return await self.user(full_name=full_name, role="dispatcher")

    async def order(
        self,
        status: OrderStatus = OrderStatus.CONFIRMED,
        lat: Optional[float] = 4.65,
        lon: Optional[float] = -74.05,
        ledger: bool = False,
        loaded: bool = False,
    ) -> Order:
        n = self._next()
        order = Order(
            id=uuid.uuid4(),
            order_number=f"ORD-{n:05d}",
            status=status,
            customer_name=f"Customer {n}",
            destination_address=f"Calle {n} # 10-20",
            destination_lat=lat,
            destination_lon=lon,
            ledger_party_ref=f"P-{n}" if ledger else None,
            ledger_order_ref=f"O-{n}" if ledger else None,
            loaded_on_vehicle=loaded,
        )
        self.session.add(order)
        await self.session.flush()
        return order


@pytest.fixture
def factory(session: AsyncSession) -> Factory:
    return Factory(session)


# ============================================================================
# HTTP client
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async client against the application with the test database.

    Each request gets its own session that commits on success and rolls
    back on error, like the production dependency.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
