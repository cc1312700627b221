"""
Centralized Test Configuration.
"""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from necromancer.app.main import app
from necromancer.app.db.session import get_db, Base
from necromancer.app.core.config import settings
from necromancer.app.services.container import build_dispatch_services
from necromancer.tests.helpers import FakeClock, MockRedis, ROADSIDE

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Shared session for fixture data creation
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return settings.model_copy(update={
        "offer_ttl_seconds": 60,
        "dispatch_candidate_limit": 20,
        "dispatch_max_rounds": 3,
        "dispatch_radius_meters": 10000.0,
        "notification_retry_base_delay": 0,
    })


@pytest.fixture
def services(mock_redis, session_factory, test_settings, clock):
    return build_dispatch_services(mock_redis, session_factory, config=test_settings, clock=clock)


@pytest.fixture
def make_driver(services, db_session):
    """Register a driver, optionally placed and made available. Returns the driver id."""
    counter = {"user_id": 1000}

    async def _make(coordinates=None, skills=(ROADSIDE,), available=True, user_id=None):
        counter["user_id"] += 1
        driver = await services.directory.register_driver(
            db_session,
            user_id=user_id or counter["user_id"],
            skills=list(skills),
            coordinates=coordinates,
        )
        driver_id = driver.id
        if available:
            await services.directory.set_availability(db_session, driver_id, True)
        return driver_id

    return _make


@pytest.fixture
async def client(services, session_factory):
    """Async client for testing, wired to the per-test database and services."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    original_dispatch = app.state.dispatch
    app.state.dispatch = services
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
    app.state.dispatch = original_dispatch
