"""
Service Request API Endpoints.

Requesters create, inspect and cancel requests; admins see and manage all of them.
"""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.db.session import get_db
from necromancer.app.models.enums import RequestStatus, UserRole
from necromancer.app.schemas.service_request import (
    ServiceRequestCancel,
    ServiceRequestCreate,
    ServiceRequestResponse,
)
from necromancer.app.core.dependencies import get_dispatch
from necromancer.app.core.guards import require_role, is_admin

router = APIRouter(prefix="/requests", tags=["Service Requests"])


@router.post("", response_model=ServiceRequestResponse, status_code=201)
async def create_request(
    request_data: ServiceRequestCreate,
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """
    Create a service request (Requester only) and dispatch it.

    The response reflects the outcome of the first dispatch attempt:
    `offered` when drivers were notified, `unmatched` when none qualified.
    """
    return await dispatch.lifecycle.create_request(
        db,
        requester_id=current_user["user_id"],
        coordinates=(request_data.longitude, request_data.latitude),
        service_type=request_data.service_type,
        description=request_data.description,
    )


@router.get("", response_model=List[ServiceRequestResponse])
async def list_requests(
    status: Optional[RequestStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """List own requests (Requester) or all requests (Admin), newest first."""
    requester_id = None if is_admin(current_user) else current_user["user_id"]
    return await dispatch.lifecycle.list_requests(
        db, requester_id=requester_id, status=status, limit=limit, offset=offset
    )


@router.get("/{request_id}", response_model=ServiceRequestResponse)
async def get_request(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.DRIVER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Get one request. Drivers see requests they were offered or assigned."""
    return await dispatch.lifecycle.get_request_for_actor(
        db, request_id, current_user["user_id"], current_user["role"]
    )


@router.post("/{request_id}/cancel", response_model=ServiceRequestResponse)
async def cancel_request(
    request_id: int = Path(..., description="Service request ID"),
    cancel_data: Optional[ServiceRequestCancel] = Body(None),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """
    Cancel a request.

    Requesters may cancel their own request until work starts; in-progress
    requests can only be cancelled by an admin.
    """
    return await dispatch.lifecycle.cancel_request(
        db,
        request_id,
        actor_id=current_user["user_id"],
        actor_role=current_user["role"],
        reason=cancel_data.reason if cancel_data else None,
    )


@router.post("/{request_id}/redispatch", response_model=ServiceRequestResponse)
async def redispatch_request(
    request_id: int = Path(..., description="Service request ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    dispatch=Depends(get_dispatch),
):
    """Retry dispatch of an unmatched request."""
    return await dispatch.lifecycle.redispatch(
        db, request_id, actor_id=current_user["user_id"], actor_role=current_user["role"]
    )
