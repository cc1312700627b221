"""Background task that keeps expiring lapsed offers on a fixed interval."""

import asyncio
import logging
from typing import Optional

from necromancer.app.services.dispatch_matcher import DispatchMatcher

logger = logging.getLogger(__name__)


class OfferExpirySweeper:
    """
    Runs DispatchMatcher.sweep_expired_offers every `interval_seconds`.

    Each tick uses its own session, so a failing tick cannot poison the next.
    """

    def __init__(self, matcher: DispatchMatcher, session_factory, interval_seconds: float = 5.0):
        self.matcher = matcher
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        async with self.session_factory() as db:
            expired = await self.matcher.sweep_expired_offers(db)
        if expired:
            logger.info("Offer sweeper expired %s offer(s)", expired)
        return expired

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting offer expiry sweeper (interval=%ss)", self.interval_seconds)
        self._task = asyncio.create_task(self._run(), name="offer-expiry-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Offer expiry sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Offer expiry sweeper encountered an error")
