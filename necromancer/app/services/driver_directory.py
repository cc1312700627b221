"""
Driver Directory.

Tracks driver identity, last-known location, availability and skills, and
answers "which available drivers near point P support service S".

Location updates are last-write-wins by client timestamp: an update older
than the stored one is dropped by the conditional UPDATE itself, so
out-of-order delivery cannot move a driver backwards.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.core.exceptions import (
    ConflictError,
    DriverNotFound,
    DriverUnavailable,
    MissingServiceType,
    UnknownServiceType,
)
from necromancer.app.core.timeutils import as_naive_utc, utcnow
from necromancer.app.models.driver import Driver
from necromancer.app.models.enums import ServiceType
from necromancer.app.services.geo import bounding_box, haversine_distance, validate_coordinates
from necromancer.app.services.notification_gateway import NotificationGateway, deliver

logger = logging.getLogger(__name__)

UnavailableListener = Callable[[AsyncSession, int], Awaitable[object]]


def normalize_service_type(value) -> str:
    """
    Resolve a service-type label against the catalogue.

    Raises:
        MissingServiceType: If the value is empty
        UnknownServiceType: If the label is not in the catalogue
    """
    if isinstance(value, ServiceType):
        return value.value
    if value is None or not str(value).strip():
        raise MissingServiceType()
    try:
        return ServiceType(str(value).strip()).value
    except ValueError:
        raise UnknownServiceType(str(value))


@dataclass(frozen=True)
class Candidate:
    """A driver eligible for a request, with distance from the request location."""
    driver_id: int
    user_id: int
    distance_meters: float


class DriverDirectory:
    """
    Owns the location and availability fields of Driver rows.

    Args:
        gateway: Used to broadcast applied location updates
        clock: Returns naive-UTC now; injectable for tests
    """

    def __init__(self, gateway: NotificationGateway, clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.clock = clock
        self._unavailable_listeners: List[UnavailableListener] = []

    def add_unavailable_listener(self, listener: UnavailableListener) -> None:
        """Register a coroutine called with (db, driver_id) whenever a driver goes unavailable."""
        self._unavailable_listeners.append(listener)

    # ===================== Onboarding =====================

    async def register_driver(
        self,
        db: AsyncSession,
        user_id: int,
        skills: Sequence,
        coordinates=None,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> Driver:
        """
        Create a driver profile for an account. New drivers start unavailable.

        Raises:
            ConflictError: If the account already has a driver profile
            UnknownServiceType: If a skill is not in the catalogue
            InvalidCoordinates: If an initial location is out of range
        """
        normalized_skills = sorted({normalize_service_type(skill) for skill in skills})

        existing = await db.execute(select(Driver.id).where(Driver.user_id == user_id))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("Driver profile already exists for this account",
                                error_code="ERR_CONFLICT_DRIVER_EXISTS",
                                details={"user_id": user_id})

        driver = Driver(
            user_id=user_id,
            skills=normalized_skills,
            available=False,
            is_active=True,
            display_name=display_name,
            bio=bio,
        )
        if coordinates is not None:
            driver.longitude, driver.latitude = validate_coordinates(coordinates)
            driver.location_updated_at = self.clock()

        db.add(driver)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Driver profile already exists for this account",
                                error_code="ERR_CONFLICT_DRIVER_EXISTS",
                                details={"user_id": user_id})
        await db.refresh(driver)

        logger.info("Registered driver %s for user %s with skills %s", driver.id, user_id, normalized_skills)
        return driver

    async def get_driver(self, db: AsyncSession, driver_id: int) -> Driver:
        driver = await db.get(Driver, driver_id, populate_existing=True)
        if driver is None:
            raise DriverNotFound(driver_id)
        return driver

    async def get_driver_by_user(self, db: AsyncSession, user_id: int) -> Driver:
        result = await db.execute(
            select(Driver)
            .where(Driver.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        driver = result.scalar_one_or_none()
        if driver is None:
            raise DriverNotFound(f"user:{user_id}")
        return driver

    async def deactivate_driver(self, db: AsyncSession, driver_id: int) -> Driver:
        """
        Soft-delete a driver: inactive and unavailable, outstanding offers retracted.

        The row is kept because requests may reference it.
        """
        await self.get_driver(db, driver_id)
        await db.execute(
            update(Driver)
            .where(Driver.id == driver_id)
            .values(is_active=False, available=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("Deactivated driver %s", driver_id)

        await self._notify_unavailable(db, driver_id)
        return await self.get_driver(db, driver_id)

    # ===================== Driver-reported state =====================

    async def upsert_location(
        self,
        db: AsyncSession,
        driver_id: int,
        coordinates,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Record a driver's position if it is newer than the stored one.

        Idempotent: replaying the same update, or delivering an older one
        late, leaves the stored location unchanged.

        Args:
            coordinates: (longitude, latitude)
            timestamp: When the position was measured; defaults to now

        Returns:
            True if the update was applied, False if it was stale

        Raises:
            InvalidCoordinates: If latitude/longitude are out of range
            DriverNotFound: If the driver does not exist
        """
        longitude, latitude = validate_coordinates(coordinates)
        timestamp = as_naive_utc(timestamp) if timestamp is not None else self.clock()

        result = await db.execute(
            update(Driver)
            .where(
                Driver.id == driver_id,
                or_(Driver.location_updated_at.is_(None), Driver.location_updated_at < timestamp),
            )
            .values(longitude=longitude, latitude=latitude, location_updated_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            # Zero rows: either unknown driver or a stale timestamp
            await self.get_driver(db, driver_id)
            logger.debug("Ignored stale location for driver %s at %s", driver_id, timestamp)
            return False

        await db.commit()
        await deliver(
            self.gateway.broadcast_location(driver_id, (longitude, latitude)),
            f"broadcast_location({driver_id})",
        )
        return True

    async def set_availability(self, db: AsyncSession, driver_id: int, available: bool) -> Driver:
        """
        Set the driver-controlled availability flag.

        Going unavailable immediately retracts the driver's unresolved offers.

        Raises:
            DriverNotFound: If the driver does not exist
            DriverUnavailable: If a deactivated driver tries to go available
        """
        driver = await self.get_driver(db, driver_id)
        if available and not driver.is_active:
            raise DriverUnavailable(driver_id)

        await db.execute(
            update(Driver)
            .where(Driver.id == driver_id)
            .values(available=available)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("Driver %s availability set to %s", driver_id, available)

        if not available:
            await self._notify_unavailable(db, driver_id)
        return await self.get_driver(db, driver_id)

    async def _notify_unavailable(self, db: AsyncSession, driver_id: int) -> None:
        for listener in self._unavailable_listeners:
            await listener(db, driver_id)

    # ===================== Assignment slot =====================

    async def claim_assignment(self, db: AsyncSession, driver_id: int, request_id: int) -> bool:
        """
        Take the driver's single assignment slot. Does not commit.

        Succeeds only if the driver is active, available and holds no
        other assignment at the moment the UPDATE runs.
        """
        result = await db.execute(
            update(Driver)
            .where(
                Driver.id == driver_id,
                Driver.is_active.is_(True),
                Driver.available.is_(True),
                Driver.current_request_id.is_(None),
            )
            .values(current_request_id=request_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_assignment(self, db: AsyncSession, driver_id: int, request_id: int) -> bool:
        """Free the slot if it still holds this request. Does not commit."""
        result = await db.execute(
            update(Driver)
            .where(Driver.id == driver_id, Driver.current_request_id == request_id)
            .values(current_request_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ===================== Matching query =====================

    async def find_candidates(
        self,
        db: AsyncSession,
        service_type,
        location,
        radius_meters: float,
        limit: int,
        exclude_driver_ids: Iterable[int] = (),
    ) -> List[Candidate]:
        """
        Available, skill-matching drivers within `radius_meters`, nearest first.

        Ties on distance are broken by driver id so the order is deterministic.
        Returns an empty list when nobody qualifies.

        Args:
            service_type: Label from the service catalogue
            location: (longitude, latitude) of the request
            exclude_driver_ids: Drivers already offered this request
        """
        service_type = normalize_service_type(service_type)
        longitude, latitude = validate_coordinates(location)
        if limit <= 0:
            return []

        min_lon, min_lat, max_lon, max_lat = bounding_box(longitude, latitude, radius_meters)
        query = select(Driver).where(
            Driver.is_active.is_(True),
            Driver.available.is_(True),
            Driver.current_request_id.is_(None),
            Driver.longitude.is_not(None),
            Driver.latitude.is_not(None),
            Driver.latitude.between(min_lat, max_lat),
        )
        # A box crossing the antimeridian cannot be expressed as one range
        if min_lon >= -180.0 and max_lon <= 180.0:
            query = query.where(Driver.longitude.between(min_lon, max_lon))

        excluded = list(exclude_driver_ids)
        if excluded:
            query = query.where(Driver.id.not_in(excluded))

        result = await db.execute(query.execution_options(populate_existing=True))

        candidates = []
        for driver in result.scalars().all():
            # Skill sets are JSON; containment is checked here to stay backend-neutral
            if service_type not in (driver.skills or []):
                continue
            distance = haversine_distance(latitude, longitude, driver.latitude, driver.longitude)
            if distance <= radius_meters:
                candidates.append(Candidate(driver.id, driver.user_id, distance))

        candidates.sort(key=lambda c: (c.distance_meters, c.driver_id))
        return candidates[:limit]
