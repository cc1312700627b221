"""
Driver Offer API Endpoints.

Drivers answer offers and report progress on the request they hold.
"""

from typing import List

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.db.session import get_db
from necromancer.app.models.enums import UserRole
from necromancer.app.schemas.offer import OfferResponse
from necromancer.app.schemas.service_request import ServiceRequestResponse
from necromancer.app.core.dependencies import get_dispatch
from necromancer.app.core.guards import require_role

router = APIRouter(prefix="/driver", tags=["Driver - Offers"])


async def _driver_id(current_user: dict, db: AsyncSession, dispatch) -> int:
    driver = await dispatch.directory.get_driver_by_user(db, current_user["user_id"])
    return driver.id


@router.get("/offers", response_model=List[OfferResponse])
async def list_offers(
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Offers the calling driver can still accept."""
    driver_id = await _driver_id(current_user, db, dispatch)
    return await dispatch.matcher.live_offers_for_driver(db, driver_id)


@router.post("/requests/{request_id}/accept", response_model=ServiceRequestResponse)
async def accept_offer(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """
    Accept an offer (Driver only).

    Only the first acceptance wins; later ones get 409 ERR_CONFLICT_ALREADY_ASSIGNED.
    Do not blindly retry on failure, re-read the request instead.
    """
    driver_id = await _driver_id(current_user, db, dispatch)
    return await dispatch.lifecycle.accept_offer(db, request_id, driver_id)


@router.post("/requests/{request_id}/decline", response_model=ServiceRequestResponse)
async def decline_offer(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    driver_id = await _driver_id(current_user, db, dispatch)
    return await dispatch.lifecycle.decline_offer(db, request_id, driver_id)


@router.post("/requests/{request_id}/start", response_model=ServiceRequestResponse)
async def start_work(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    driver_id = await _driver_id(current_user, db, dispatch)
    return await dispatch.lifecycle.start_work(db, request_id, driver_id)


@router.post("/requests/{request_id}/complete", response_model=ServiceRequestResponse)
async def complete_request(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    driver_id = await _driver_id(current_user, db, dispatch)
    return await dispatch.lifecycle.complete_request(db, request_id, driver_id)
