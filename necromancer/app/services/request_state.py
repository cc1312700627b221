"""
Request state machine primitives.

All ServiceRequest status writes go through `transition_request`, a single
conditional UPDATE whose WHERE clause carries the expected current status.
Two writers racing on the same request cannot both succeed: the database
applies one UPDATE, and the other matches zero rows.
"""

from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.core.exceptions import InvalidTransition, RequestNotFound
from necromancer.app.models.enums import RequestStatus
from necromancer.app.models.service_request import ServiceRequest

ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.OFFERED, RequestStatus.UNMATCHED, RequestStatus.CANCELLED},
    # offered -> offered is a new dispatch round
    RequestStatus.OFFERED: {
        RequestStatus.OFFERED,
        RequestStatus.ASSIGNED,
        RequestStatus.UNMATCHED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.ASSIGNED: {RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED},
    RequestStatus.IN_PROGRESS: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
    RequestStatus.UNMATCHED: {RequestStatus.PENDING, RequestStatus.CANCELLED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}


def can_transition(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


async def load_request(db: AsyncSession, request_id: int) -> ServiceRequest:
    """
    Fetch a request by id, always re-reading the row.

    Conditional updates bypass the identity map, so cached instances may be stale.

    Raises:
        RequestNotFound: If no such request exists
    """
    request = await db.get(ServiceRequest, request_id, populate_existing=True)
    if request is None:
        raise RequestNotFound(request_id)
    return request


async def transition_request(
    db: AsyncSession,
    request_id: int,
    to_status: RequestStatus,
    from_statuses: Iterable[RequestStatus],
    conditions: Iterable[Any] = (),
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Compare-and-swap a request's status.

    Applies `status = to_status` (plus `values`) only if the row's status is
    currently one of `from_statuses` and every extra condition holds. Does
    not commit; the caller owns the transaction.

    Returns:
        True if the row was updated, False if the precondition failed

    Raises:
        InvalidTransition: If no status in from_statuses may move to to_status
    """
    from_statuses = list(from_statuses)
    for from_status in from_statuses:
        if not can_transition(from_status, to_status):
            raise InvalidTransition(from_status, to_status)

    stmt = (
        update(ServiceRequest)
        .where(
            ServiceRequest.id == request_id,
            ServiceRequest.status.in_(from_statuses),
            *conditions,
        )
        .values(status=to_status, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1
