"""
Periodic maintenance.
Psychology: Housekeeping must never take the service down with it.
Intention: Hourly blacklist reaping, subscription expiry and the monthly usage reset,
each loop logging failures and carrying on.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from backlify.clock import month_start

logger = logging.getLogger(__name__)

HOURLY = 60 * 60


class MaintenanceScheduler:
    """Owns the background loops started by the application lifespan"""

    def __init__(self, services, interval_seconds: float = HOURLY):
        self.services = services
        self.interval = interval_seconds
        self._tasks: List[asyncio.Task] = []
        self._last_reset_period: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def reap_blacklist(self) -> int:
        return await self.services.blacklist.reap()

    async def expire_subscriptions(self) -> int:
        async with self.services.database.session() as db:
            expired = await self.services.payments.expire_subscriptions(db)
        if expired:
            logger.info(f"Expired {expired} subscriptions")
        return expired

    async def reset_usage(self) -> int:
        """Reset cached usage once per calendar month"""
        period = month_start(self.services.clock.now())
        if self._last_reset_period == period:
            return 0
        async with self.services.database.session() as db:
            reset = await self.services.usage.reset_monthly(db)
        self._last_reset_period = period
        return reset

    # ------------------------------------------------------------------
    # Loop management
    # ------------------------------------------------------------------

    async def _loop(self, name: str, job: Callable[[], Awaitable[int]]):
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled job {name} failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._tasks:
            return
        jobs = {
            "blacklist_reaper": self.reap_blacklist,
            "subscription_expiry": self.expire_subscriptions,
            "monthly_usage_reset": self.reset_usage,
        }
        for name, job in jobs.items():
            self._tasks.append(asyncio.create_task(self._loop(name, job), name=name))
        logger.info(f"Maintenance scheduler started ({len(self._tasks)} jobs)")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Maintenance scheduler stopped")
