"""Composition root: wires repositories, the provider adapter, and the core components."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from slotkeeper.availability import AvailabilityChecker
from slotkeeper.bookings import BookingSaga
from slotkeeper.config import SlotkeeperConfig
from slotkeeper.db import Database
from slotkeeper.ports import (
    BookingRepository,
    CalendarProvider,
    CalendarWatchRepository,
    UserRepository,
)
from slotkeeper.providers.google import GoogleCalendarProvider, GoogleOAuthApp
from slotkeeper.reconciler import WebhookReconciler
from slotkeeper.renewal import RenewalDriver, run_renewal_loop
from slotkeeper.storage.memory import (
    InMemoryBookingRepository,
    InMemoryCalendarWatchRepository,
    InMemoryUserRepository,
)
from slotkeeper.storage.postgres import (
    PostgresBookingRepository,
    PostgresCalendarWatchRepository,
    PostgresUserRepository,
    ensure_schema,
)
from slotkeeper.watches import WatchLifecycleManager, build_callback_url

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    bookings: BookingRepository
    watches: CalendarWatchRepository
    users: UserRepository


@dataclass
class SlotkeeperService:
    """Every long-lived component of one running process."""

    config: SlotkeeperConfig
    repositories: Repositories
    provider: CalendarProvider
    availability: AvailabilityChecker
    bookings: BookingSaga
    watches: WatchLifecycleManager
    renewal: RenewalDriver
    reconciler: WebhookReconciler
    database: Database | None = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _renewal_task: asyncio.Task | None = None

    def start_renewal_loop(self) -> asyncio.Task:
        """Start the periodic renewal and orphan-sweep loop as a background task."""
        if self._renewal_task is not None and not self._renewal_task.done():
            return self._renewal_task
        self._stop_event.clear()
        self._renewal_task = asyncio.create_task(
            run_renewal_loop(
                self.renewal,
                interval_seconds=self.config.renewal.interval_seconds,
                stop_event=self._stop_event,
                maintenance=[self.bookings.sweep_orphaned_bookings],
            ),
            name="slotkeeper-renewal-loop",
        )
        return self._renewal_task

    async def stop_renewal_loop(self) -> None:
        if self._renewal_task is None:
            return
        self._stop_event.set()
        await self._renewal_task
        self._renewal_task = None

    async def shutdown(self) -> None:
        await self.stop_renewal_loop()
        await self.provider.shutdown()
        if self.database is not None:
            await self.database.close()
        logger.info("Slotkeeper service shut down")


def build_service(
    config: SlotkeeperConfig,
    repositories: Repositories,
    *,
    provider: CalendarProvider | None = None,
    database: Database | None = None,
) -> SlotkeeperService:
    """Assemble the core components around *repositories* and *provider*.

    When *provider* is omitted a ``GoogleCalendarProvider`` is built from
    ``config.google``.
    """
    if provider is None:
        provider = GoogleCalendarProvider(
            GoogleOAuthApp(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
            ),
            calendar_id=config.google.calendar_id,
            timeout_seconds=config.google.request_timeout_seconds,
        )

    provider_timeout = config.renewal.provider_timeout_seconds
    availability = AvailabilityChecker(
        repositories.bookings, provider, provider_timeout=provider_timeout
    )
    bookings = BookingSaga(
        repositories.bookings, provider, availability, provider_timeout=provider_timeout
    )
    watches = WatchLifecycleManager(
        repositories.watches,
        repositories.users,
        provider,
        callback_url=build_callback_url(config.webhook.base_url),
        provider_timeout=provider_timeout,
    )
    renewal = RenewalDriver(
        repositories.watches,
        watches,
        horizon=timedelta(hours=config.renewal.horizon_hours),
    )
    reconciler = WebhookReconciler(
        repositories.watches,
        repositories.bookings,
        repositories.users,
        provider,
        provider_timeout=provider_timeout,
    )
    return SlotkeeperService(
        config=config,
        repositories=repositories,
        provider=provider,
        availability=availability,
        bookings=bookings,
        watches=watches,
        renewal=renewal,
        reconciler=reconciler,
        database=database,
    )


def memory_repositories() -> Repositories:
    return Repositories(
        bookings=InMemoryBookingRepository(enforce_no_overlap=True),
        watches=InMemoryCalendarWatchRepository(),
        users=InMemoryUserRepository(),
    )


async def open_database(config: SlotkeeperConfig) -> Database:
    """Connect the pool described by ``config.database`` and ensure the schema."""
    database = Database.from_dsn(
        config.database.dsn,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )
    pool = await database.connect()
    await ensure_schema(pool)
    return database


async def create_service(
    config: SlotkeeperConfig,
    *,
    provider: CalendarProvider | None = None,
) -> SlotkeeperService:
    """Build a service on the storage backend selected in config."""
    if config.database.backend == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        return build_service(config, memory_repositories(), provider=provider)

    database = await open_database(config)
    pool = database.require_pool()
    repositories = Repositories(
        bookings=PostgresBookingRepository(pool),
        watches=PostgresCalendarWatchRepository(pool),
        users=PostgresUserRepository(pool),
    )
    return build_service(config, repositories, provider=provider, database=database)
