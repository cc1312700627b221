"""
Service request schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from necromancer.app.models.enums import RequestStatus, ServiceType


class ServiceRequestCreate(BaseModel):
    """Schema for creating a service request."""
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)
    service_type: ServiceType
    description: Optional[str] = Field(None, max_length=2000)


class ServiceRequestCancel(BaseModel):
    """Optional body when cancelling."""
    reason: Optional[str] = Field(None, max_length=500)


class ServiceRequestResponse(BaseModel):
    """Service request as seen by requesters, drivers and admins."""
    id: int
    requester_id: int
    longitude: float
    latitude: float
    service_type: str
    description: Optional[str]
    status: RequestStatus
    assigned_driver_id: Optional[int]
    dispatch_round: int
    cancellation_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    assigned_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True
