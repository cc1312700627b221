"""
Wiring of the dispatch services.

Everything the core needs (gateway, event publisher, clock, policy
settings) is passed in explicitly; nothing reaches for a module-level
notification handle.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from necromancer.app.core.config import Settings, settings
from necromancer.app.core.reliability import CircuitBreaker
from necromancer.app.core.timeutils import utcnow
from necromancer.app.services.dispatch_matcher import DispatchMatcher
from necromancer.app.services.driver_directory import DriverDirectory
from necromancer.app.services.event_publisher import DispatchEventPublisher
from necromancer.app.services.expiry_sweeper import OfferExpirySweeper
from necromancer.app.services.notification_gateway import (
    NotificationGateway,
    RedisNotificationGateway,
    RedisPublisher,
)
from necromancer.app.services.request_lifecycle import RequestLifecycle


@dataclass
class DispatchServices:
    gateway: NotificationGateway
    events: DispatchEventPublisher
    directory: DriverDirectory
    matcher: DispatchMatcher
    lifecycle: RequestLifecycle
    sweeper: OfferExpirySweeper


def build_dispatch_services(
    redis,
    session_factory,
    config: Settings = settings,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchServices:
    """Assemble the dispatch core on top of a Redis client and a session factory."""
    publisher = RedisPublisher(
        redis,
        breaker=CircuitBreaker(
            failure_threshold=config.notification_failure_threshold,
            reset_timeout=config.notification_reset_timeout,
        ),
        retry_attempts=config.notification_retry_attempts,
        retry_base_delay=config.notification_retry_base_delay,
    )
    gateway = RedisNotificationGateway(publisher, prefix=config.notification_channel_prefix)
    events = DispatchEventPublisher(publisher, channel=config.events_channel)

    directory = DriverDirectory(gateway, clock=clock)
    matcher = DispatchMatcher(
        directory,
        gateway,
        events,
        offer_ttl_seconds=config.offer_ttl_seconds,
        candidate_limit=config.dispatch_candidate_limit,
        max_rounds=config.dispatch_max_rounds,
        radius_meters=config.dispatch_radius_meters,
        clock=clock,
    )
    lifecycle = RequestLifecycle(directory, matcher, gateway, events, clock=clock)
    sweeper = OfferExpirySweeper(matcher, session_factory, interval_seconds=config.offer_sweep_interval_seconds)

    return DispatchServices(
        gateway=gateway,
        events=events,
        directory=directory,
        matcher=matcher,
        lifecycle=lifecycle,
        sweeper=sweeper,
    )
