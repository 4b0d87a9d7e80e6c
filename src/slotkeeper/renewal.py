"""Periodic watch renewal.

``RenewalDriver.renew_expiring_watches`` is the callable a scheduler invokes;
``run_renewal_loop`` is the in-process scheduler used by the API lifespan
and the ``slotkeeper serve`` command.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from slotkeeper.core.metrics import core_metrics
from slotkeeper.models import utcnow
from slotkeeper.ports import CalendarWatchRepository
from slotkeeper.watches import WatchLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_HORIZON = timedelta(hours=24)
DEFAULT_RENEWAL_INTERVAL_SECONDS = 12 * 60 * 60


class RenewalDriver:
    def __init__(
        self,
        watches: CalendarWatchRepository,
        manager: WatchLifecycleManager,
        *,
        horizon: timedelta = DEFAULT_RENEWAL_HORIZON,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._watches = watches
        self._manager = manager
        self._horizon = horizon
        self._clock = clock

    async def renew_expiring_watches(self) -> None:
        """Re-create every watch expiring within the horizon.

        One user's failure is logged and never stops the rest of the run.
        """
        expiring = await self._watches.list_expiring_within(self._horizon, now=self._clock())
        logger.info(
            "Found %d watch(es) expiring within %s",
            len(expiring),
            self._horizon,
        )

        for watch in expiring:
            try:
                await self._manager.create_watch(watch.user_id)
            except Exception as exc:
                core_metrics.watch_renewal("failed")
                logger.error("Failed to renew watch for user %s: %s", watch.user_id, exc)
                continue
            core_metrics.watch_renewal("renewed")
            logger.info("Renewed calendar watch for user %s", watch.user_id)


async def run_renewal_loop(
    driver: RenewalDriver,
    *,
    interval_seconds: float = DEFAULT_RENEWAL_INTERVAL_SECONDS,
    stop_event: asyncio.Event,
    maintenance: list[Callable[[], Awaitable[object]]] | None = None,
) -> None:
    """Run renewal (and optional maintenance jobs) every *interval_seconds* until stopped."""
    jobs: list[Callable[[], Awaitable[object]]] = [driver.renew_expiring_watches]
    jobs.extend(maintenance or [])

    logger.debug("Renewal loop started (interval=%ss)", interval_seconds)
    while not stop_event.is_set():
        for job in jobs:
            try:
                await job()
            except Exception as exc:
                logger.error("Renewal loop job %s failed: %s", job, exc, exc_info=True)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            pass
    logger.debug("Renewal loop stopped")
