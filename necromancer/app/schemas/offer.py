"""
Dispatch offer schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from necromancer.app.models.enums import OfferStatus


class OfferResponse(BaseModel):
    """An offer as shown to the driver it was issued to."""
    id: int
    request_id: int
    driver_id: int
    round: int
    rank: int
    status: OfferStatus
    issued_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime]

    class Config:
        from_attributes = True
