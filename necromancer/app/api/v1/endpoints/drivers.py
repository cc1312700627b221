"""
Driver Directory API Endpoints.

Onboarding, availability, location reports and nearby search.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.db.session import get_db
from necromancer.app.models.enums import ServiceType, UserRole
from necromancer.app.schemas.driver import (
    AvailabilityUpdate,
    DriverRegister,
    DriverResponse,
    LocationUpdate,
    LocationUpdateResponse,
    NearbyDriver,
)
from necromancer.app.core.config import settings
from necromancer.app.core.dependencies import get_dispatch
from necromancer.app.core.guards import require_role

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.post("", response_model=DriverResponse, status_code=201)
async def register_driver(
    driver_data: DriverRegister,
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Create the calling driver's profile. New drivers start unavailable."""
    coordinates = None
    if driver_data.longitude is not None and driver_data.latitude is not None:
        coordinates = (driver_data.longitude, driver_data.latitude)

    return await dispatch.directory.register_driver(
        db,
        user_id=current_user["user_id"],
        skills=driver_data.skills,
        coordinates=coordinates,
        display_name=driver_data.display_name,
        bio=driver_data.bio,
    )


@router.get("/nearby", response_model=List[NearbyDriver])
async def nearby_drivers(
    longitude: float = Query(..., ge=-180, le=180),
    latitude: float = Query(..., ge=-90, le=90),
    service_type: ServiceType = Query(...),
    radius_meters: float = Query(settings.dispatch_radius_meters, gt=0, le=100000),
    limit: int = Query(settings.dispatch_candidate_limit, ge=1, le=100),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Available drivers offering `service_type` near a point, nearest first."""
    return await dispatch.directory.find_candidates(
        db,
        service_type,
        (longitude, latitude),
        radius_meters=radius_meters,
        limit=limit,
    )


@router.get("/me", response_model=DriverResponse)
async def get_my_profile(
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    return await dispatch.directory.get_driver_by_user(db, current_user["user_id"])


@router.patch("/me/availability", response_model=DriverResponse)
async def set_availability(
    availability: AvailabilityUpdate,
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """
    Go available or unavailable.

    Going unavailable retracts every offer the driver has not answered yet.
    """
    driver = await dispatch.directory.get_driver_by_user(db, current_user["user_id"])
    return await dispatch.directory.set_availability(db, driver.id, availability.available)


@router.post("/me/location", response_model=LocationUpdateResponse)
async def update_location(
    location: LocationUpdate,
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """
    Report the driver's position.

    Reports are ordered by `recorded_at`; one older than the stored
    position is acknowledged but not applied.
    """
    driver = await dispatch.directory.get_driver_by_user(db, current_user["user_id"])
    driver_id = driver.id
    applied = await dispatch.directory.upsert_location(
        db, driver_id, (location.longitude, location.latitude), location.recorded_at
    )
    return LocationUpdateResponse(driver_id=driver_id, applied=applied)


@router.get("/{driver_id}", response_model=DriverResponse)
async def get_driver(
    driver_id: int = Path(..., description="Driver ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.DRIVER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    return await dispatch.directory.get_driver(db, driver_id)


@router.delete("/{driver_id}", response_model=DriverResponse)
async def deactivate_driver(
    driver_id: int = Path(..., description="Driver ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Deactivate a driver (Admin only). The profile is kept, never deleted."""
    return await dispatch.directory.deactivate_driver(db, driver_id)
