"""
Concurrency Tests.

Validates that racing acceptances produce exactly one assignment.

These tests use a file-backed SQLite database with one connection per
session, so each concurrent caller runs in its own transaction the way
separate API requests do.
"""

import asyncio

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from necromancer.app.core.exceptions import AlreadyAssigned, DriverUnavailable
from necromancer.app.db.session import Base
from necromancer.app.models.enums import OfferStatus, RequestStatus
from necromancer.app.models.offer import Offer
from necromancer.app.services.container import build_dispatch_services
from necromancer.tests.helpers import (
    DRIVER_A_COORDS,
    DRIVER_B_COORDS,
    REQUEST_COORDS,
    ROADSIDE,
)


@pytest.fixture
async def file_session_factory(tmp_path):
    file_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    # Take the write lock when the transaction starts, so concurrent
    # writers queue on the busy timeout instead of failing to upgrade
    @event.listens_for(file_engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(file_engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    await file_engine.dispose()


@pytest.fixture
def file_services(mock_redis, file_session_factory, test_settings, clock):
    return build_dispatch_services(mock_redis, file_session_factory, config=test_settings, clock=clock)


async def _setup_offered_request(services, session_factory, driver_coords):
    async with session_factory() as db:
        driver_ids = []
        for index, coords in enumerate(driver_coords):
            driver = await services.directory.register_driver(
                db, user_id=500 + index, skills=[ROADSIDE], coordinates=coords
            )
            driver_id = driver.id
            await services.directory.set_availability(db, driver_id, True)
            driver_ids.append(driver_id)

        request = await services.lifecycle.create_request(db, 1, REQUEST_COORDS, ROADSIDE)
        assert request.status == RequestStatus.OFFERED
        return request.id, driver_ids


async def _accept(services, session_factory, request_id, driver_id):
    async with session_factory() as db:
        try:
            request = await services.lifecycle.accept_offer(db, request_id, driver_id)
            return ("won", request.assigned_driver_id)
        except AlreadyAssigned as exc:
            return ("lost", exc.assigned_driver_id)


async def test_concurrent_accepts_single_winner(file_services, file_session_factory):
    """K concurrent acceptances by different drivers: exactly one wins."""
    coords = [DRIVER_A_COORDS, DRIVER_B_COORDS] * 3
    request_id, driver_ids = await _setup_offered_request(file_services, file_session_factory, coords)

    results = await asyncio.gather(*[
        _accept(file_services, file_session_factory, request_id, driver_id)
        for driver_id in driver_ids
    ])

    winners = [r for r in results if r[0] == "won"]
    losers = [r for r in results if r[0] == "lost"]
    assert len(winners) == 1
    assert len(losers) == len(driver_ids) - 1

    winner_id = winners[0][1]
    # Losers learn who holds the request
    assert all(assigned == winner_id for _, assigned in losers)

    async with file_session_factory() as db:
        request = await file_services.lifecycle.get_request(db, request_id)
        assert request.status == RequestStatus.ASSIGNED
        assert request.assigned_driver_id == winner_id

        result = await db.execute(select(Offer.driver_id, Offer.status).where(Offer.request_id == request_id))
        statuses = dict(result.all())
        assert statuses[winner_id] == OfferStatus.ACCEPTED
        assert sum(1 for s in statuses.values() if s == OfferStatus.ACCEPTED) == 1
        assert all(s == OfferStatus.SUPERSEDED for d, s in statuses.items() if d != winner_id)


async def test_scenario_b_then_a_concurrently(file_services, file_session_factory):
    """R offered to [A, B]; accept(R, B) and accept(R, A) race: one is assigned, the other gets AlreadyAssigned."""
    request_id, (a_id, b_id) = await _setup_offered_request(
        file_services, file_session_factory, [DRIVER_A_COORDS, DRIVER_B_COORDS]
    )

    results = await asyncio.gather(
        _accept(file_services, file_session_factory, request_id, b_id),
        _accept(file_services, file_session_factory, request_id, a_id),
    )

    assert sorted(outcome for outcome, _ in results) == ["lost", "won"]
    async with file_session_factory() as db:
        request = await file_services.lifecycle.get_request(db, request_id)
        assert request.status == RequestStatus.ASSIGNED
        assert request.assigned_driver_id in (a_id, b_id)


async def test_duplicate_accepts_from_same_driver(file_services, file_session_factory):
    """At-least-once delivery: the same driver accepting several times still yields one assignment."""
    request_id, (a_id,) = await _setup_offered_request(file_services, file_session_factory, [DRIVER_A_COORDS])

    results = await asyncio.gather(*[
        _accept(file_services, file_session_factory, request_id, a_id) for _ in range(4)
    ])

    assert [outcome for outcome, _ in results].count("won") == 1
    assert all(assigned == a_id for _, assigned in results)

    async with file_session_factory() as db:
        driver = await file_services.directory.get_driver(db, a_id)
        assert driver.current_request_id == request_id


async def test_accept_races_expiry_sweep(file_services, file_session_factory, clock):
    """A late acceptance and the expiry sweep never both resolve the same offer."""
    request_id, (a_id,) = await _setup_offered_request(file_services, file_session_factory, [DRIVER_A_COORDS])
    clock.advance(60)

    async def sweep():
        async with file_session_factory() as db:
            return await file_services.matcher.sweep_expired_offers(db)

    async def late_accept():
        async with file_session_factory() as db:
            try:
                await file_services.lifecycle.accept_offer(db, request_id, a_id)
                return "won"
            except Exception as exc:
                return type(exc).__name__

    swept, accepted = await asyncio.gather(sweep(), late_accept())

    assert accepted != "won"
    async with file_session_factory() as db:
        request = await file_services.lifecycle.get_request(db, request_id)
        assert request.assigned_driver_id is None
        result = await db.execute(select(Offer.status).where(Offer.request_id == request_id))
        assert result.scalars().all() == [OfferStatus.EXPIRED]


@pytest.mark.parametrize("accept_first", [True, False])
async def test_accept_races_going_unavailable(file_services, file_session_factory, accept_first):
    """Either the driver is assigned while still available, or the accept fails with DriverUnavailable."""
    request_id, (a_id, b_id) = await _setup_offered_request(
        file_services, file_session_factory, [DRIVER_A_COORDS, DRIVER_B_COORDS]
    )

    async def go_unavailable():
        async with file_session_factory() as db:
            await file_services.directory.set_availability(db, a_id, False)
            return "unavailable"

    async def accept():
        async with file_session_factory() as db:
            try:
                await file_services.lifecycle.accept_offer(db, request_id, a_id)
                return "won"
            except DriverUnavailable:
                return "driver_unavailable"

    calls = [accept(), go_unavailable()] if accept_first else [go_unavailable(), accept()]
    results = await asyncio.gather(*calls)
    outcome = "won" if "won" in results else "driver_unavailable"
    assert outcome in results

    async with file_session_factory() as db:
        request = await file_services.lifecycle.get_request(db, request_id)
        driver = await file_services.directory.get_driver(db, a_id)
        result = await db.execute(select(Offer.driver_id, Offer.status).where(Offer.request_id == request_id))
        statuses = dict(result.all())

    if outcome == "won":
        assert request.status == RequestStatus.ASSIGNED
        assert request.assigned_driver_id == a_id
        assert driver.current_request_id == request_id
        assert statuses[a_id] == OfferStatus.ACCEPTED
    else:
        # Request untouched apart from A's retracted offer; B can still take it
        assert request.status == RequestStatus.OFFERED
        assert request.assigned_driver_id is None
        assert driver.current_request_id is None
        assert statuses == {a_id: OfferStatus.RETRACTED, b_id: OfferStatus.PENDING}
