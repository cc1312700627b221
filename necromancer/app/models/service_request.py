"""
Service request database model.
"""

from sqlalchemy import Column, Integer, Float, String, Text, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from necromancer.app.db.session import Base
from necromancer.app.models.enums import RequestStatus


class ServiceRequest(Base):
    """
    Service request model.

    Status is written only through conditional updates in the request
    state machine. `assigned_driver_id` is set once, at acceptance.
    """
    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    requester_id = Column(Integer, nullable=False, index=True)

    # Where and what
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    service_type = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)

    # Status
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True)

    # Assignment (set at most once)
    assigned_driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True, index=True)

    # Number of dispatch rounds consumed so far
    dispatch_round = Column(Integer, default=0, nullable=False)

    cancellation_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    @property
    def coordinates(self):
        return (self.longitude, self.latitude)

    def __repr__(self):
        return f"<ServiceRequest(id={self.id}, service_type='{self.service_type}', status='{self.status.value}')>"
