"""
Driver database model.

Drivers are soft-deleted only (is_active); assignments keep referencing them.
"""

from sqlalchemy import Column, Integer, Float, Boolean, DateTime, JSON, String, Text
from sqlalchemy.sql import func
from necromancer.app.db.session import Base


class Driver(Base):
    """
    Driver model.

    Location and availability are owned by the Driver Directory.
    `current_request_id` is the single assignment slot: it is claimed by a
    conditional update at acceptance and released on completion/cancellation,
    so a driver never holds more than one assignment at a time.
    """
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Owning account (managed by the account service)
    user_id = Column(Integer, unique=True, index=True, nullable=False)

    # Last-known position, WGS84
    longitude = Column(Float, nullable=True)
    latitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime, nullable=True)

    # Driver-controlled availability
    available = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Service-type labels the driver can fulfil
    skills = Column(JSON, nullable=False, default=list)

    current_request_id = Column(Integer, nullable=True, index=True)

    bio = Column(Text, nullable=True)
    display_name = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Driver(id={self.id}, user_id={self.user_id}, available={self.available})>"
