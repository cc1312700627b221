"""
Dispatch offer database model.

One time-boxed invitation for one driver to accept one request.
"""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Enum, UniqueConstraint
from necromancer.app.db.session import Base
from necromancer.app.models.enums import OfferStatus


class Offer(Base):
    """
    Offer model.

    A driver is offered a given request at most once across all rounds.
    Resolution (accept, decline, expire, supersede, retract) is a conditional
    update on status=pending.
    """
    __tablename__ = "dispatch_offers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False, index=True)
    round = Column(Integer, nullable=False)

    # Candidate rank within the round, nearest first
    rank = Column(Integer, nullable=False, default=0)

    status = Column(Enum(OfferStatus), default=OfferStatus.PENDING, nullable=False, index=True)

    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    responded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("request_id", "driver_id", name="uq_dispatch_offers_request_driver"),
    )

    def __repr__(self):
        return f"<Offer(request_id={self.request_id}, driver_id={self.driver_id}, status='{self.status.value}')>"
