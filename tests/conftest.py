"""Shared test configuration and fixtures.

Each test gets its own SQLite database file (via aiosqlite) so the reservation
service can open as many sessions and transactions as it likes; the file is
discarded with ``tmp_path`` after the test.
"""

from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from innkeep.api.deps import get_reservation_service
from innkeep.auth.jwt import ROLE_GUEST, ROLE_STAFF, create_actor_token
from innkeep.config import Settings
from innkeep.database import Base, make_engine, make_session_factory
from innkeep.main import app
from innkeep.models.room import Room
from innkeep.reservations.audit import AuditEntry, BackgroundDispatcher
from innkeep.reservations.service import GuestInfo, ReservationService

# A fixed "now" so date arithmetic in tests never depends on the wall clock.
START = datetime(2026, 3, 1, 9, 0, 0)


class FrozenClock:
    """Injectable clock; tests move time forward with :meth:`advance`."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    @property
    def today(self) -> date:
        return self.now.date()


class RecordingSink:
    """Audit sink that keeps every entry in memory."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    @property
    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


def guest(name: str = "Asha Rai", email: str = "asha@example.com") -> GuestInfo:
    return GuestInfo(name=name, email=email, phone="+977-1-4000000")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh SQLite file with all tables created."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'innkeep.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Independent session for arranging data and asserting on stored rows."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        jwt_secret_key="test-secret-key",
        soft_hold_ttl_minutes=15,
        service_charge_rate=Decimal("0"),
        tax_rate=Decimal("0"),
        currency_label="Rs.",
    )


@pytest_asyncio.fixture
async def service(session_factory, clock, audit_sink, test_settings) -> AsyncGenerator[ReservationService, None]:
    svc = ReservationService(
        session_factory,
        audit_sink=audit_sink,
        clock=clock,
        dispatcher=BackgroundDispatcher(),
        settings=test_settings,
    )
    yield svc
    await svc.dispatcher.drain()


async def _add_room(session_factory, number: str, **fields) -> Room:
    room = Room(
        number=number,
        room_type=fields.pop("room_type", "double"),
        nightly_rate=fields.pop("nightly_rate", Decimal("10000")),
        capacity=fields.pop("capacity", 2),
        **fields,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(room)
    return room


@pytest_asyncio.fixture
async def room(session_factory) -> Room:
    """Room 101: double, sleeps 2, Rs. 10,000 a night."""
    return await _add_room(session_factory, "101")


@pytest_asyncio.fixture
async def suite(session_factory) -> Room:
    """Room 301: suite, sleeps 4, Rs. 25,000 a night."""
    return await _add_room(session_factory, "301", room_type="suite", nightly_rate=Decimal("25000"), capacity=4)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(service: ReservationService) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test reservation service."""
    app.dependency_overrides[get_reservation_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def staff_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_actor_token('desk-1', ROLE_STAFF)}"}


@pytest.fixture
def guest_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_actor_token('guest-42', ROLE_GUEST)}"}


@pytest.fixture
def other_guest_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_actor_token('guest-99', ROLE_GUEST)}"}
