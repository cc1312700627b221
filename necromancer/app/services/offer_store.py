"""
Offer persistence primitives.

Offer resolution is a conditional update on status=pending, so an offer is
resolved exactly once even when acceptance, decline, expiry and retraction
race each other.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.models.enums import OfferStatus, RequestStatus
from necromancer.app.models.offer import Offer
from necromancer.app.models.service_request import ServiceRequest


async def create_offers(
    db: AsyncSession,
    request_id: int,
    driver_ids: Iterable[int],
    round_number: int,
    issued_at: datetime,
    expires_at: datetime,
) -> List[Offer]:
    """Insert one pending offer per driver, ranked in the given order. Flushes, does not commit."""
    offers = [
        Offer(
            request_id=request_id,
            driver_id=driver_id,
            round=round_number,
            rank=rank,
            status=OfferStatus.PENDING,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        for rank, driver_id in enumerate(driver_ids)
    ]
    db.add_all(offers)
    await db.flush()
    return offers


async def get_offer(db: AsyncSession, request_id: int, driver_id: int) -> Optional[Offer]:
    result = await db.execute(
        select(Offer)
        .where(Offer.request_id == request_id, Offer.driver_id == driver_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_offer(
    db: AsyncSession,
    offer_id: int,
    to_status: OfferStatus,
    now: datetime,
    require_live: Optional[bool] = None,
) -> bool:
    """
    Move a pending offer to a resolved status.

    Args:
        require_live: True only resolves offers not yet expired at `now`,
            False only offers already expired, None ignores expiry

    Returns:
        True if this call resolved the offer
    """
    conditions = [Offer.id == offer_id, Offer.status == OfferStatus.PENDING]
    if require_live is True:
        conditions.append(Offer.expires_at > now)
    elif require_live is False:
        conditions.append(Offer.expires_at <= now)

    result = await db.execute(
        update(Offer)
        .where(*conditions)
        .values(status=to_status, responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def resolve_pending_for_request(
    db: AsyncSession,
    request_id: int,
    to_status: OfferStatus,
    now: datetime,
) -> List[int]:
    """
    Resolve every still-pending offer of a request.

    Returns:
        Driver ids whose offer this call resolved
    """
    resolved = []
    for offer in await pending_offers_for_request(db, request_id):
        if await resolve_offer(db, offer.id, to_status, now):
            resolved.append(offer.driver_id)
    return resolved


async def pending_offers_for_request(db: AsyncSession, request_id: int) -> List[Offer]:
    result = await db.execute(
        select(Offer)
        .where(Offer.request_id == request_id, Offer.status == OfferStatus.PENDING)
        .order_by(Offer.round, Offer.rank)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def pending_offers_for_driver(db: AsyncSession, driver_id: int) -> List[Offer]:
    result = await db.execute(
        select(Offer)
        .where(Offer.driver_id == driver_id, Offer.status == OfferStatus.PENDING)
        .order_by(Offer.issued_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_pending(db: AsyncSession, request_id: int) -> int:
    result = await db.execute(
        select(func.count(Offer.id)).where(
            Offer.request_id == request_id,
            Offer.status == OfferStatus.PENDING,
        )
    )
    return result.scalar()


async def due_offers(db: AsyncSession, now: datetime, limit: int = 500) -> List[Offer]:
    """Pending offers whose expiry has passed, oldest first."""
    result = await db.execute(
        select(Offer)
        .where(Offer.status == OfferStatus.PENDING, Offer.expires_at <= now)
        .order_by(Offer.expires_at, Offer.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def offered_driver_ids(db: AsyncSession, request_id: int) -> Set[int]:
    """Every driver ever offered this request, in any round."""
    result = await db.execute(select(Offer.driver_id).where(Offer.request_id == request_id))
    return set(result.scalars().all())


async def stalled_request_ids(db: AsyncSession, limit: int = 500) -> List[int]:
    """Offered requests left with no pending offer, i.e. whose next round never ran."""
    has_pending = (
        select(Offer.id)
        .where(Offer.request_id == ServiceRequest.id, Offer.status == OfferStatus.PENDING)
        .exists()
    )
    result = await db.execute(
        select(ServiceRequest.id)
        .where(ServiceRequest.status == RequestStatus.OFFERED, ~has_pending)
        .order_by(ServiceRequest.id)
        .limit(limit)
    )
    return list(result.scalars().all())
