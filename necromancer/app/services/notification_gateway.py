"""
Notification Gateway.

Delivers offers to drivers and assignment news to requesters. The core only
depends on the send/broadcast contract below; the Redis implementation
publishes JSON messages on per-recipient pub/sub channels that the
websocket edge relays to connected clients.

Delivery is fire-and-forget and at-least-once: clients must tolerate
duplicates, and the core never waits for acknowledgment.
"""

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from necromancer.app.core.exceptions import TransientError
from necromancer.app.core.reliability import CircuitBreaker, CircuitOpenError, retry_with_backoff

logger = logging.getLogger(__name__)


async def deliver(awaitable: Awaitable[Any], description: str) -> bool:
    """
    Await a notification after the state change it reports has committed.

    A TransientError here cannot undo the committed change, so it is logged
    and reported as False instead of propagating to the caller.
    """
    try:
        await awaitable
        return True
    except TransientError as exc:
        logger.warning("Delivery failed for %s: %s", description, exc.message)
        return False


class RedisPublisher:
    """Publishes JSON payloads to Redis channels behind a circuit breaker."""

    def __init__(
        self,
        redis,
        breaker: Optional[CircuitBreaker] = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.2,
    ):
        self.redis = redis
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=30)
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    async def publish(self, channel: str, message: Dict[str, Any], idempotent: bool = False) -> None:
        """
        Publish one message.

        Args:
            channel: Redis channel name
            message: JSON-serializable payload
            idempotent: Retry with exponential backoff on failure

        Raises:
            TransientError: If Redis is unreachable or the circuit is open
        """
        data = json.dumps(message, default=_json_default)

        async def send():
            return await self.breaker.call(self.redis.publish, channel, data)

        try:
            if idempotent:
                await retry_with_backoff(
                    send,
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    retry_on=(RedisError, OSError),
                )
            else:
                await send()
        except CircuitOpenError as exc:
            raise TransientError("Notification channel unavailable", details={"channel": channel}) from exc
        except (RedisError, OSError) as exc:
            raise TransientError(f"Failed to publish to {channel}", details={"channel": channel}) from exc


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return getattr(value, "value", str(value))


class NotificationGateway:
    """Contract the dispatch core depends on."""

    async def send_offer(self, driver_id: int, request_id: int, expires_at: datetime) -> None:
        raise NotImplementedError

    async def retract_offer(self, driver_id: int, request_id: int) -> None:
        raise NotImplementedError

    async def notify_assigned(self, requester_id: int, request_id: int, driver_id: int) -> None:
        raise NotImplementedError

    async def notify_unmatched(self, requester_id: int, request_id: int) -> None:
        raise NotImplementedError

    async def broadcast_location(self, driver_id: int, coordinates: Tuple[float, float]) -> None:
        raise NotImplementedError


class RedisNotificationGateway(NotificationGateway):
    """
    Redis pub/sub implementation of the gateway.

    Channels:
        {prefix}:driver:{driver_id}   offers and retractions for one driver
        {prefix}:user:{user_id}       request updates for one requester
        {prefix}:locations            live driver positions
    """

    def __init__(self, publisher: RedisPublisher, prefix: str = "necromancer"):
        self.publisher = publisher
        self.prefix = prefix

    def driver_channel(self, driver_id: int) -> str:
        return f"{self.prefix}:driver:{driver_id}"

    def user_channel(self, user_id: int) -> str:
        return f"{self.prefix}:user:{user_id}"

    @property
    def locations_channel(self) -> str:
        return f"{self.prefix}:locations"

    async def send_offer(self, driver_id: int, request_id: int, expires_at: datetime) -> None:
        await self.publisher.publish(self.driver_channel(driver_id), {
            "type": "offer",
            "request_id": request_id,
            "driver_id": driver_id,
            "expires_at": expires_at,
        })

    async def retract_offer(self, driver_id: int, request_id: int) -> None:
        await self.publisher.publish(self.driver_channel(driver_id), {
            "type": "offer_retracted",
            "request_id": request_id,
            "driver_id": driver_id,
        }, idempotent=True)

    async def notify_assigned(self, requester_id: int, request_id: int, driver_id: int) -> None:
        await self.publisher.publish(self.user_channel(requester_id), {
            "type": "request_assigned",
            "request_id": request_id,
            "driver_id": driver_id,
        })

    async def notify_unmatched(self, requester_id: int, request_id: int) -> None:
        await self.publisher.publish(self.user_channel(requester_id), {
            "type": "request_unmatched",
            "request_id": request_id,
            "message": "No drivers accepted your request. Please try again later.",
        })

    async def broadcast_location(self, driver_id: int, coordinates: Tuple[float, float]) -> None:
        longitude, latitude = coordinates
        await self.publisher.publish(self.locations_channel, {
            "type": "driver_location",
            "driver_id": driver_id,
            "longitude": longitude,
            "latitude": latitude,
        }, idempotent=True)
