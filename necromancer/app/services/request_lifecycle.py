"""
Request Lifecycle.

Owns every status transition of a ServiceRequest:

    pending -> offered -> assigned -> in_progress -> completed
    pending | offered -> unmatched -> pending (manual re-dispatch)
    any non-terminal -> cancelled

Each operation validates against the current row, then applies the change
with a conditional UPDATE. Validation gives the caller a specific error;
the conditional UPDATE is what actually guarantees correctness when two
callers race, since the database applies at most one of them.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.core.exceptions import (
    AlreadyAssigned,
    CannotCancelInProgress,
    DriverUnavailable,
    InvalidTransition,
    NotAssignedDriver,
    NotRequestOwner,
    OfferExpired,
    OfferNotActive,
    OfferNotFound,
    RequestCancelled,
    RequestStateChanged,
)
from necromancer.app.core.timeutils import utcnow
from necromancer.app.models.enums import OfferStatus, RequestStatus, TERMINAL_STATUSES, UserRole
from necromancer.app.models.service_request import ServiceRequest
from necromancer.app.services import offer_store
from necromancer.app.services.dispatch_matcher import DispatchMatcher
from necromancer.app.services.driver_directory import DriverDirectory, normalize_service_type
from necromancer.app.services.event_publisher import DispatchEventPublisher
from necromancer.app.services.geo import validate_coordinates
from necromancer.app.services.notification_gateway import NotificationGateway, deliver
from necromancer.app.services.request_state import load_request, transition_request

logger = logging.getLogger(__name__)


class RequestLifecycle:
    """
    Request state machine operations.

    Args:
        directory: Driver records (availability check, assignment slot)
        matcher: Dispatch rounds and offer retraction
        gateway: Requester notifications
        events: Outbound dispatch events
        clock: Returns naive-UTC now; injectable for tests
    """

    def __init__(
        self,
        directory: DriverDirectory,
        matcher: DispatchMatcher,
        gateway: NotificationGateway,
        events: DispatchEventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.directory = directory
        self.matcher = matcher
        self.gateway = gateway
        self.events = events
        self.clock = clock

    # ===================== Creation and queries =====================

    async def create_request(
        self,
        db: AsyncSession,
        requester_id: int,
        coordinates,
        service_type,
        description: Optional[str] = None,
        dispatch: bool = True,
    ) -> ServiceRequest:
        """
        Record a new request and dispatch it.

        Raises:
            InvalidCoordinates: If the location is out of range
            MissingServiceType: If no service type was given
            UnknownServiceType: If the service type is not in the catalogue
        """
        longitude, latitude = validate_coordinates(coordinates)
        service_type = normalize_service_type(service_type)

        request = ServiceRequest(
            requester_id=requester_id,
            longitude=longitude,
            latitude=latitude,
            service_type=service_type,
            description=description,
            status=RequestStatus.PENDING,
            dispatch_round=0,
        )
        db.add(request)
        await db.commit()
        await db.refresh(request)
        request_id = request.id

        logger.info("Request %s created by user %s for %s", request_id, requester_id, service_type)

        if not dispatch:
            return request
        return await self.matcher.dispatch(db, request_id)

    async def get_request(self, db: AsyncSession, request_id: int) -> ServiceRequest:
        return await load_request(db, request_id)

    async def get_request_for_actor(
        self,
        db: AsyncSession,
        request_id: int,
        actor_id: int,
        actor_role,
    ) -> ServiceRequest:
        """
        Load a request the actor may see.

        Admins see everything, requesters their own requests, drivers the
        requests they were offered or assigned.

        Raises:
            RequestNotFound: If the request does not exist
            NotRequestOwner: If the actor has no relation to the request
        """
        request = await load_request(db, request_id)
        role = UserRole.parse(actor_role)

        if role == UserRole.ADMIN:
            return request
        if role == UserRole.REQUESTER and request.requester_id == actor_id:
            return request
        if role == UserRole.DRIVER:
            driver = await self.directory.get_driver_by_user(db, actor_id)
            if request.assigned_driver_id == driver.id:
                return request
            if await offer_store.get_offer(db, request_id, driver.id) is not None:
                return request
        raise NotRequestOwner(request_id)

    async def list_requests(
        self,
        db: AsyncSession,
        requester_id: Optional[int] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ServiceRequest]:
        """Requests newest first, optionally filtered by owner and status."""
        query = select(ServiceRequest)
        if requester_id is not None:
            query = query.where(ServiceRequest.requester_id == requester_id)
        if status is not None:
            query = query.where(ServiceRequest.status == status)
        query = (
            query.order_by(ServiceRequest.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    # ===================== Acceptance =====================

    async def accept_offer(self, db: AsyncSession, request_id: int, driver_id: int) -> ServiceRequest:
        """
        Commit a driver to a request.

        Exactly one acceptance per request can succeed. The request update is
        conditional on status=offered and no assigned driver; every other
        concurrent caller, including a duplicate call from the winner, gets
        AlreadyAssigned and changes nothing. Not retried on failure: callers
        re-read the request instead.

        Raises:
            RequestNotFound / DriverNotFound: Unknown ids
            RequestCancelled: The request was cancelled
            AlreadyAssigned: Another acceptance already won
            InvalidTransition: The request is not in offered state
            OfferNotFound: The driver was never offered this request
            DriverUnavailable: The driver is unavailable or already busy
            OfferExpired: The offer lapsed before acceptance
            OfferNotActive: The offer was declined, retracted or superseded
            RequestStateChanged: The request moved underneath the update
                without being assigned
        """
        now = self.clock()
        request = await load_request(db, request_id)
        driver = await self.directory.get_driver(db, driver_id)

        self._check_acceptable(request)

        offer = await offer_store.get_offer(db, request_id, driver_id)
        if offer is None:
            raise OfferNotFound(request_id, driver_id)
        # Availability first: going unavailable also retracts the offer
        if not driver.available or not driver.is_active or driver.current_request_id is not None:
            raise DriverUnavailable(driver_id)
        if offer.status == OfferStatus.EXPIRED or (
            offer.status == OfferStatus.PENDING and offer.expires_at <= now
        ):
            raise OfferExpired(request_id, driver_id)
        if offer.status != OfferStatus.PENDING:
            raise OfferNotActive(request_id, driver_id, offer.status)

        offer_id = offer.id
        requester_id = request.requester_id

        assigned = await transition_request(
            db, request_id, RequestStatus.ASSIGNED, [RequestStatus.OFFERED],
            conditions=[ServiceRequest.assigned_driver_id.is_(None)],
            values={"assigned_driver_id": driver_id, "assigned_at": now},
        )
        if not assigned:
            await db.rollback()
            self._check_acceptable(await load_request(db, request_id))
            # Still offered and unassigned: nobody won, the row just moved
            raise RequestStateChanged(request_id)

        if not await self.directory.claim_assignment(db, driver_id, request_id):
            await db.rollback()
            raise DriverUnavailable(driver_id)

        if not await offer_store.resolve_offer(db, offer_id, OfferStatus.ACCEPTED, now, require_live=True):
            await db.rollback()
            offer = await offer_store.get_offer(db, request_id, driver_id)
            if offer.status == OfferStatus.PENDING or offer.status == OfferStatus.EXPIRED:
                raise OfferExpired(request_id, driver_id)
            driver = await self.directory.get_driver(db, driver_id)
            if not driver.available or not driver.is_active:
                raise DriverUnavailable(driver_id)
            raise OfferNotActive(request_id, driver_id, offer.status)

        superseded = await offer_store.resolve_pending_for_request(db, request_id, OfferStatus.SUPERSEDED, now)
        await db.commit()

        logger.info("Request %s assigned to driver %s", request_id, driver_id)

        await self.events.request_status_changed(request_id, RequestStatus.OFFERED, RequestStatus.ASSIGNED)
        await self.events.driver_assigned(request_id, driver_id)
        await self.matcher.announce_retractions(request_id, superseded)
        await deliver(
            self.gateway.notify_assigned(requester_id, request_id, driver_id),
            f"notify_assigned({request_id})",
        )
        return await load_request(db, request_id)

    @staticmethod
    def _check_acceptable(request: ServiceRequest) -> None:
        if request.status == RequestStatus.CANCELLED:
            raise RequestCancelled(request.id)
        if request.assigned_driver_id is not None:
            raise AlreadyAssigned(request.id, request.assigned_driver_id)
        if request.status != RequestStatus.OFFERED:
            raise InvalidTransition(request.status, RequestStatus.ASSIGNED)

    async def decline_offer(self, db: AsyncSession, request_id: int, driver_id: int) -> ServiceRequest:
        """
        Decline one offer. Declining an already-declined offer is a no-op.

        If it was the last outstanding offer of the round, the next round runs.

        Raises:
            RequestNotFound: Unknown request
            OfferNotFound: The driver was never offered this request
            RequestCancelled: The request was cancelled
            OfferNotActive: The offer already resolved some other way
        """
        now = self.clock()
        request = await load_request(db, request_id)
        offer = await offer_store.get_offer(db, request_id, driver_id)
        if offer is None:
            raise OfferNotFound(request_id, driver_id)
        if offer.status == OfferStatus.DECLINED:
            return request
        if request.status == RequestStatus.CANCELLED:
            raise RequestCancelled(request_id)
        if offer.status != OfferStatus.PENDING:
            raise OfferNotActive(request_id, driver_id, offer.status)

        if not await offer_store.resolve_offer(db, offer.id, OfferStatus.DECLINED, now):
            await db.rollback()
            offer = await offer_store.get_offer(db, request_id, driver_id)
            if offer.status == OfferStatus.DECLINED:
                return await load_request(db, request_id)
            raise OfferNotActive(request_id, driver_id, offer.status)
        await db.commit()

        logger.info("Driver %s declined request %s", driver_id, request_id)
        return await self.matcher.advance_round(db, request_id)

    # ===================== Work =====================

    async def start_work(self, db: AsyncSession, request_id: int, driver_id: int) -> ServiceRequest:
        """
        Driver reports that work has started: assigned -> in_progress.

        Raises:
            NotAssignedDriver: If another driver holds the request
            InvalidTransition: If the request is not assigned
        """
        now = self.clock()
        request = await load_request(db, request_id)
        self._check_driver_step(request, driver_id, RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS)

        moved = await transition_request(
            db, request_id, RequestStatus.IN_PROGRESS, [RequestStatus.ASSIGNED],
            conditions=[ServiceRequest.assigned_driver_id == driver_id],
            values={"started_at": now},
        )
        if not moved:
            await db.rollback()
            request = await load_request(db, request_id)
            self._check_driver_step(request, driver_id, RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS)
            raise InvalidTransition(request.status, RequestStatus.IN_PROGRESS)
        await db.commit()

        logger.info("Driver %s started work on request %s", driver_id, request_id)
        await self.events.request_status_changed(request_id, RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS)
        return await load_request(db, request_id)

    async def complete_request(
        self,
        db: AsyncSession,
        request_id: int,
        driver_id: Optional[int] = None,
    ) -> ServiceRequest:
        """
        Mark work finished: in_progress -> completed. Frees the driver.

        Args:
            driver_id: Reporting driver; None for a system-reported completion

        Raises:
            NotAssignedDriver: If a driver other than the assignee reports it
            InvalidTransition: If the request is not in progress
        """
        now = self.clock()
        request = await load_request(db, request_id)
        self._check_driver_step(request, driver_id, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED)
        assigned_driver_id = request.assigned_driver_id

        moved = await transition_request(
            db, request_id, RequestStatus.COMPLETED, [RequestStatus.IN_PROGRESS],
            conditions=[ServiceRequest.assigned_driver_id == assigned_driver_id],
            values={"completed_at": now},
        )
        if not moved:
            await db.rollback()
            request = await load_request(db, request_id)
            self._check_driver_step(request, driver_id, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED)
            raise InvalidTransition(request.status, RequestStatus.COMPLETED)

        await self.directory.release_assignment(db, assigned_driver_id, request_id)
        await db.commit()

        logger.info("Request %s completed by driver %s", request_id, assigned_driver_id)
        await self.events.request_status_changed(request_id, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED)
        return await load_request(db, request_id)

    @staticmethod
    def _check_driver_step(
        request: ServiceRequest,
        driver_id: Optional[int],
        from_status: RequestStatus,
        to_status: RequestStatus,
    ) -> None:
        if (
            driver_id is not None
            and request.assigned_driver_id is not None
            and request.assigned_driver_id != driver_id
        ):
            raise NotAssignedDriver(request.id, driver_id)
        if request.status != from_status:
            raise InvalidTransition(request.status, to_status)

    # ===================== Cancellation and re-dispatch =====================

    async def cancel_request(
        self,
        db: AsyncSession,
        request_id: int,
        actor_id: int,
        actor_role,
        reason: Optional[str] = None,
    ) -> ServiceRequest:
        """
        Cancel a request.

        The owner may cancel while pending, offered, assigned or unmatched;
        in-progress work can only be cancelled by an admin. Outstanding
        offers are retracted and an assigned driver is released. In-flight
        offer notifications are not recalled: acceptance of them fails with
        RequestCancelled.

        Cancelling clears ``assigned_driver_id``: a driver is recorded on the
        request only while it is assigned or in progress. The former assignee
        stays visible on its accepted offer row.

        Raises:
            NotRequestOwner: If the actor is neither the owner nor an admin
            CannotCancelInProgress: Requester cancelling in-progress work
            InvalidTransition: If the request is already terminal
        """
        role = UserRole.parse(actor_role)

        while True:
            now = self.clock()
            request = await load_request(db, request_id)
            self._check_cancellable(request, actor_id, role)

            from_status = request.status
            assigned_driver_id = request.assigned_driver_id
            if assigned_driver_id is None:
                driver_guard = ServiceRequest.assigned_driver_id.is_(None)
            else:
                driver_guard = ServiceRequest.assigned_driver_id == assigned_driver_id

            cancelled = await transition_request(
                db, request_id, RequestStatus.CANCELLED, [from_status],
                conditions=[driver_guard],
                values={
                    "assigned_driver_id": None,
                    "cancelled_at": now,
                    "cancellation_reason": reason,
                },
            )
            if cancelled:
                break
            # Lost a race with another transition; re-validate against the new state
            await db.rollback()

        if assigned_driver_id is not None:
            await self.directory.release_assignment(db, assigned_driver_id, request_id)
        retracted = await offer_store.resolve_pending_for_request(db, request_id, OfferStatus.RETRACTED, now)
        await db.commit()

        logger.info("Request %s cancelled from %s by %s %s", request_id, from_status.value, role.value, actor_id)

        await self.events.request_status_changed(request_id, from_status, RequestStatus.CANCELLED)
        if assigned_driver_id is not None:
            retracted.append(assigned_driver_id)
        await self.matcher.announce_retractions(request_id, retracted)
        return await load_request(db, request_id)

    @staticmethod
    def _check_cancellable(request: ServiceRequest, actor_id: int, role: Optional[UserRole]) -> None:
        if role != UserRole.ADMIN and request.requester_id != actor_id:
            raise NotRequestOwner(request.id)
        if role != UserRole.ADMIN and role != UserRole.REQUESTER:
            raise NotRequestOwner(request.id)
        if request.status in TERMINAL_STATUSES:
            raise InvalidTransition(request.status, RequestStatus.CANCELLED)
        if request.status == RequestStatus.IN_PROGRESS and role != UserRole.ADMIN:
            raise CannotCancelInProgress(request.id)

    async def redispatch(self, db: AsyncSession, request_id: int, actor_id: int, actor_role) -> ServiceRequest:
        """
        Put an unmatched request back to pending and dispatch it again.

        Drivers offered in earlier attempts are not offered it again.

        Raises:
            NotRequestOwner: If the actor is neither the owner nor an admin
            InvalidTransition: If the request is not unmatched
        """
        role = UserRole.parse(actor_role)
        request = await load_request(db, request_id)
        if role != UserRole.ADMIN and (role != UserRole.REQUESTER or request.requester_id != actor_id):
            raise NotRequestOwner(request_id)
        if request.status != RequestStatus.UNMATCHED:
            raise InvalidTransition(request.status, RequestStatus.PENDING)

        moved = await transition_request(
            db, request_id, RequestStatus.PENDING, [RequestStatus.UNMATCHED],
            values={"dispatch_round": 0},
        )
        if not moved:
            await db.rollback()
            request = await load_request(db, request_id)
            raise InvalidTransition(request.status, RequestStatus.PENDING)
        await db.commit()

        logger.info("Request %s re-dispatched by %s %s", request_id, role.value, actor_id)
        await self.events.request_status_changed(request_id, RequestStatus.UNMATCHED, RequestStatus.PENDING)
        return await self.matcher.dispatch(db, request_id)
