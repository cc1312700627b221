"""
Outbound dispatch events.

Other services (billing, analytics, the requester app backend) subscribe to
the events channel instead of polling request status.
"""

import logging

from necromancer.app.models.enums import RequestStatus
from necromancer.app.services.notification_gateway import RedisPublisher, deliver

logger = logging.getLogger(__name__)


class DispatchEventPublisher:
    """Publishes request_status_changed, driver_assigned and request_unmatched."""

    def __init__(self, publisher: RedisPublisher, channel: str = "necromancer:events"):
        self.publisher = publisher
        self.channel = channel

    async def request_status_changed(self, request_id: int, old_status: RequestStatus, new_status: RequestStatus) -> bool:
        logger.info("Request %s: %s -> %s", request_id, old_status.value, new_status.value)
        return await deliver(
            self.publisher.publish(self.channel, {
                "event": "request_status_changed",
                "request_id": request_id,
                "old_status": old_status.value,
                "new_status": new_status.value,
            }, idempotent=True),
            f"request_status_changed({request_id})",
        )

    async def driver_assigned(self, request_id: int, driver_id: int) -> bool:
        return await deliver(
            self.publisher.publish(self.channel, {
                "event": "driver_assigned",
                "request_id": request_id,
                "driver_id": driver_id,
            }, idempotent=True),
            f"driver_assigned({request_id})",
        )

    async def request_unmatched(self, request_id: int) -> bool:
        return await deliver(
            self.publisher.publish(self.channel, {
                "event": "request_unmatched",
                "request_id": request_id,
            }, idempotent=True),
            f"request_unmatched({request_id})",
        )
