"""Background sweep that times out offers and expires requests"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from instantphoto.config import settings
from instantphoto.schemas.matching import SweepResult
from instantphoto.services.dispatch import MatchingEngine
from instantphoto.services.notifications import NotificationChannel, NotificationFanout
from instantphoto.services.sms import GuestSMSService

logger = logging.getLogger(__name__)


class ExpiryWorker:
    """Periodically runs MatchingEngine.sweep in a fresh session"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: NotificationChannel,
        interval: float | None = None,
        sms: GuestSMSService | None = None,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.interval = interval if interval is not None else settings.expiry_sweep_interval_seconds
        self.sms = sms

    async def run_once(self, current_time: datetime | None = None) -> SweepResult:
        async with self.session_factory() as db:
            notifier = NotificationFanout(db, self.channel, self.sms)
            return await MatchingEngine(db, notifier).sweep(current_time)

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(f"Expiry sweeper started (every {self.interval}s)")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Expiry sweeper stopped")
