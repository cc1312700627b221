"""
Dispatch Matcher.

Turns a request into bounded, time-boxed rounds of offers:

1. Ask the Driver Directory for the nearest matching drivers, excluding
   everyone already offered this request.
2. Issue one offer per candidate with a fixed expiry and move the request
   to `offered`.
3. When every offer of the round has resolved without an acceptance
   (expired, declined or retracted), run the next round.
4. After `max_rounds` rounds without an acceptance, the request becomes
   `unmatched`.

A round that finds no candidates still counts, so a request with no
eligible driver goes straight to `unmatched` without creating offers.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from necromancer.app.core.exceptions import InvalidTransition
from necromancer.app.core.timeutils import utcnow
from necromancer.app.models.enums import OfferStatus, RequestStatus
from necromancer.app.models.offer import Offer
from necromancer.app.models.service_request import ServiceRequest
from necromancer.app.services import offer_store
from necromancer.app.services.driver_directory import DriverDirectory
from necromancer.app.services.event_publisher import DispatchEventPublisher
from necromancer.app.services.notification_gateway import NotificationGateway, deliver
from necromancer.app.services.request_state import load_request, transition_request

logger = logging.getLogger(__name__)

# Statuses from which a new round may be issued
DISPATCHABLE_STATUSES = (RequestStatus.PENDING, RequestStatus.OFFERED)


class DispatchMatcher:
    """
    Issues offers for requests and re-runs rounds when offers lapse.

    Args:
        directory: Candidate source; the matcher subscribes to its
            driver-unavailable notifications to retract offers
        gateway: Delivers offers and retractions to drivers
        events: Outbound dispatch events
        offer_ttl_seconds: Lifetime of each offer
        candidate_limit: Maximum offers per round
        max_rounds: Rounds before a request is marked unmatched
        radius_meters: Search radius around the request location
        clock: Returns naive-UTC now; injectable for tests
    """

    def __init__(
        self,
        directory: DriverDirectory,
        gateway: NotificationGateway,
        events: DispatchEventPublisher,
        *,
        offer_ttl_seconds: int = 60,
        candidate_limit: int = 20,
        max_rounds: int = 3,
        radius_meters: float = 10000.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.directory = directory
        self.gateway = gateway
        self.events = events
        self.offer_ttl = timedelta(seconds=offer_ttl_seconds)
        self.candidate_limit = candidate_limit
        self.max_rounds = max_rounds
        self.radius_meters = radius_meters
        self.clock = clock

        directory.add_unavailable_listener(self.retract_driver_offers)

    # ===================== Rounds =====================

    async def dispatch(self, db: AsyncSession, request_id: int) -> ServiceRequest:
        """
        Start dispatching a request.

        A request that already has live offers is returned unchanged, so a
        repeated dispatch call does not fan out twice.

        Raises:
            RequestNotFound: If the request does not exist
            InvalidTransition: If the request is past the dispatch stage
        """
        request = await load_request(db, request_id)
        if request.status == RequestStatus.OFFERED:
            if await offer_store.count_pending(db, request_id):
                return request
        elif request.status != RequestStatus.PENDING:
            raise InvalidTransition(request.status, RequestStatus.OFFERED)

        return await self._run_rounds(db, request_id)

    async def advance_round(self, db: AsyncSession, request_id: int) -> ServiceRequest:
        """
        Run the next round if the current one has no outstanding offers.

        Called after any offer of the request resolves without acceptance.
        A no-op for requests that are assigned, cancelled or still waiting
        on other drivers.
        """
        request = await load_request(db, request_id)
        if request.status != RequestStatus.OFFERED:
            return request
        if await offer_store.count_pending(db, request_id):
            return request
        return await self._run_rounds(db, request_id)

    async def _run_rounds(self, db: AsyncSession, request_id: int) -> ServiceRequest:
        while True:
            request = await load_request(db, request_id)
            if request.status not in DISPATCHABLE_STATUSES:
                return request
            if request.dispatch_round >= self.max_rounds:
                return await self._mark_unmatched(db, request)

            issued = await self._issue_round(db, request)
            if issued is not None:
                return issued

    async def _issue_round(self, db: AsyncSession, request: ServiceRequest) -> Optional[ServiceRequest]:
        """
        Issue one round of offers.

        The round counter is part of the conditional update, so two callers
        racing to issue the same round cannot both succeed.

        Returns:
            The reloaded request once offers are out (or another caller
            moved it first), None if the round found no candidates
        """
        request_id = request.id
        from_status = request.status
        expected_round = request.dispatch_round
        next_round = expected_round + 1

        excluded = await offer_store.offered_driver_ids(db, request_id)
        candidates = await self.directory.find_candidates(
            db,
            request.service_type,
            request.coordinates,
            radius_meters=self.radius_meters,
            limit=self.candidate_limit,
            exclude_driver_ids=excluded,
        )

        round_guard = [ServiceRequest.dispatch_round == expected_round]

        if not candidates:
            moved = await self._consume_round(db, request_id, from_status, expected_round)
            if not moved:
                await db.rollback()
                return await load_request(db, request_id)
            await db.commit()
            logger.info("Request %s round %s: no candidates", request_id, next_round)
            return None

        now = self.clock()
        expires_at = now + self.offer_ttl
        moved = await transition_request(
            db, request_id, RequestStatus.OFFERED, [from_status],
            conditions=round_guard,
            values={"dispatch_round": next_round},
        )
        if not moved:
            await db.rollback()
            return await load_request(db, request_id)

        driver_ids = [candidate.driver_id for candidate in candidates]
        await offer_store.create_offers(db, request_id, driver_ids, next_round, now, expires_at)
        await db.commit()

        logger.info(
            "Request %s round %s: offered to %s driver(s) until %s",
            request_id, next_round, len(driver_ids), expires_at.isoformat()
        )

        if from_status != RequestStatus.OFFERED:
            await self.events.request_status_changed(request_id, from_status, RequestStatus.OFFERED)
        for driver_id in driver_ids:
            await deliver(
                self.gateway.send_offer(driver_id, request_id, expires_at),
                f"send_offer({driver_id}, {request_id})",
            )
        return await load_request(db, request_id)

    async def _consume_round(self, db: AsyncSession, request_id: int, status: RequestStatus, expected_round: int) -> bool:
        # Only the round counter moves; status is left as it is
        result = await db.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.status == status,
                ServiceRequest.dispatch_round == expected_round,
            )
            .values(dispatch_round=expected_round + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _mark_unmatched(self, db: AsyncSession, request: ServiceRequest) -> ServiceRequest:
        request_id = request.id
        requester_id = request.requester_id
        from_status = request.status
        rounds = request.dispatch_round

        moved = await transition_request(
            db, request_id, RequestStatus.UNMATCHED, [from_status],
            conditions=[ServiceRequest.dispatch_round == rounds],
        )
        if not moved:
            await db.rollback()
            return await load_request(db, request_id)
        await db.commit()

        logger.info("Request %s unmatched after %s round(s)", request_id, rounds)
        await self.events.request_status_changed(request_id, from_status, RequestStatus.UNMATCHED)
        await self.events.request_unmatched(request_id)
        await deliver(
            self.gateway.notify_unmatched(requester_id, request_id),
            f"notify_unmatched({request_id})",
        )
        return await load_request(db, request_id)

    # ===================== Offer resolution =====================

    async def sweep_expired_offers(self, db: AsyncSession, limit: int = 500) -> int:
        """
        Expire lapsed offers and advance the rounds they belonged to.

        Uses the same conditional update as acceptance, so an acceptance that
        committed first keeps its offer and a late one finds it expired.
        Offered requests with no pending offer left (a round advance that
        failed or never ran after an earlier commit) are advanced here too.

        Returns:
            Number of offers this sweep expired
        """
        now = self.clock()
        expired = []
        for offer in await offer_store.due_offers(db, now, limit):
            if await offer_store.resolve_offer(db, offer.id, OfferStatus.EXPIRED, now, require_live=False):
                expired.append((offer.request_id, offer.driver_id))
        if expired:
            await db.commit()
            logger.info("Expired %s offer(s)", len(expired))
        else:
            await db.rollback()

        for request_id, driver_id in expired:
            await deliver(
                self.gateway.retract_offer(driver_id, request_id),
                f"retract_offer({driver_id}, {request_id})",
            )

        request_ids = {request_id for request_id, _ in expired}
        request_ids.update(await offer_store.stalled_request_ids(db, limit))
        for request_id in sorted(request_ids):
            await self._advance_quietly(db, request_id)
        return len(expired)

    async def retract_driver_offers(self, db: AsyncSession, driver_id: int) -> int:
        """
        Void every pending offer held by a driver who went unavailable.

        Requests left without outstanding offers move on to their next round.
        """
        now = self.clock()
        request_ids = []
        for offer in await offer_store.pending_offers_for_driver(db, driver_id):
            if await offer_store.resolve_offer(db, offer.id, OfferStatus.RETRACTED, now):
                request_ids.append(offer.request_id)
        if not request_ids:
            await db.rollback()
            return 0
        await db.commit()

        logger.info("Retracted %s offer(s) from driver %s", len(request_ids), driver_id)
        for request_id in request_ids:
            await deliver(
                self.gateway.retract_offer(driver_id, request_id),
                f"retract_offer({driver_id}, {request_id})",
            )
        for request_id in request_ids:
            await self._advance_quietly(db, request_id)
        return len(request_ids)

    async def _advance_quietly(self, db: AsyncSession, request_id: int) -> None:
        # The offer changes are already committed; a request whose advance
        # fails stays offered with no pending offer and the next sweep retries it
        try:
            await self.advance_round(db, request_id)
        except Exception:
            logger.exception("Advancing request %s to its next round failed", request_id)
            await db.rollback()

    async def announce_retractions(self, request_id: int, driver_ids: Iterable[int]) -> None:
        """Tell drivers whose offers were already resolved in the database that they are void."""
        for driver_id in driver_ids:
            await deliver(
                self.gateway.retract_offer(driver_id, request_id),
                f"retract_offer({driver_id}, {request_id})",
            )

    async def live_offers_for_driver(self, db: AsyncSession, driver_id: int) -> List[Offer]:
        """Pending offers a driver can still accept."""
        now = self.clock()
        return [
            offer for offer in await offer_store.pending_offers_for_driver(db, driver_id)
            if offer.expires_at > now
        ]
