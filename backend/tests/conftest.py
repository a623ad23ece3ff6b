"""Pytest configuration and fixtures for the RMA tracker tests.

The suite runs against an in-memory SQLite database (aiosqlite) shared
through a StaticPool, so every session in a test sees the same data.
Row locks (FOR UPDATE) are not rendered on SQLite; the tests exercise
the business rules, not the store's locking.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.config import settings
from app.database import Base, get_session_factory
from app.main import app
from app.models import Factory, Location, PartNumber, User
from app.services import units as unit_service
from app.services.locations import DEFAULT_LOCATIONS

# Redis is never required by the tests
settings.cache_enabled = False

RMA_VID = 6
RMA_PID = 7
IN_DEBUG = 2
IN_L10 = 5


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN until the first DML, which breaks SAVEPOINT;
    # take over transaction control so begin_nested() behaves.
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker:
    """Session factory over a database seeded with the catalog and users."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        for loc_id, name, category in DEFAULT_LOCATIONS:
            session.add(Location(id=loc_id, name=name, category=category))
        session.add_all([
            Factory(code="MX", name="Juarez", ppid_code="WSJ00"),
            Factory(code="A1", name="Hsinchu", ppid_code="WS900"),
            Factory(code="N2", name="Hukou", ppid_code="WSM00"),
            PartNumber(name="X1234"),
            PartNumber(name="Y5678"),
            User(id="user-alice", username="alice", full_name="Alice"),
            User(id="user-bob", username="bob", full_name="Bob"),
            User(id="user-admin", username="admin", full_name="Admin", is_admin=True),
            User(
                id=settings.deleted_actor_id,
                username="deleted_user@example.com",
                is_active=False,
            ),
        ])
        await session.commit()

    return factory


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app, using the test database."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


# ── Actors ───────────────────────────────────────────────────────

@pytest.fixture
def alice() -> str:
    return "user-alice"


@pytest.fixture
def bob() -> str:
    return "user-bob"


@pytest.fixture
def auth_headers(alice: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(alice)}"}


@pytest.fixture
def bob_headers(bob: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(bob)}"}


@pytest.fixture
def admin_headers() -> dict:
    token = create_access_token("user-admin", is_admin=True)
    return {"Authorization": f"Bearer {token}"}


# ── Unit helpers ─────────────────────────────────────────────────

def make_ppid(serial: int, dpn: str = "X1234", factory: str = "WSJ00") -> str:
    """A well-formed PPID: CN0 + DPN + factory + date code + serial + rev."""
    return f"CN0{dpn}{factory}54I{serial:04d}A00"


@pytest.fixture
def unit_factory(db: AsyncSession, alice: str):
    """Create units in the service session.

    `await unit_factory("TAG1")` registers TAG1 at intake with a PPID for
    MX / X1234; pass `ppid=None` for a unit without one, and `rma=True`
    to move it into RMA VID (which puts it on an open pallet).
    """
    counter = {"n": 0}

    async def _make(
        tag: str,
        ppid: str | None = "auto",
        rma: bool = False,
        actor: str = alice,
    ):
        counter["n"] += 1
        unit = await unit_service.create_unit(db, tag, actor, note="received")
        if ppid == "auto":
            ppid = make_ppid(counter["n"])
        if ppid:
            unit = await unit_service.update_ppid(db, tag, ppid, actor)
        if rma:
            await unit_service.change_location(db, tag, RMA_VID, "to rma", actor)
        return unit

    return _make


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "ledger: Interval and history ledger tests")
    config.addinivalue_line("markers", "pallet: Pallet lifecycle tests")
