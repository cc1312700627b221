"""
Driver schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from necromancer.app.models.enums import ServiceType


class DriverRegister(BaseModel):
    """Schema for onboarding the calling account as a driver."""
    skills: List[ServiceType] = Field(..., min_length=1)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=1000)


class AvailabilityUpdate(BaseModel):
    """Schema for toggling availability."""
    available: bool


class LocationUpdate(BaseModel):
    """Schema for a driver location report."""
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)
    recorded_at: Optional[datetime] = None  # Defaults to server time


class LocationUpdateResponse(BaseModel):
    """Response after a location report."""
    driver_id: int
    applied: bool  # False when an equal or newer position was already stored


class DriverResponse(BaseModel):
    """Driver profile response."""
    id: int
    user_id: int
    longitude: Optional[float]
    latitude: Optional[float]
    location_updated_at: Optional[datetime]
    available: bool
    is_active: bool
    skills: List[str]
    current_request_id: Optional[int]
    display_name: Optional[str]
    bio: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class NearbyDriver(BaseModel):
    """One result of a nearby-driver search."""
    driver_id: int
    user_id: int
    distance_meters: float

    class Config:
        from_attributes = True
