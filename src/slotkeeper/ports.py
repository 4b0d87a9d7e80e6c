"""Persistence and calendar-provider contracts consumed by the core.

The core never reaches into storage or a provider SDK directly; it talks to
these abstract classes.  Concrete adapters live under
``slotkeeper.storage`` and ``slotkeeper.providers``.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import TypeVar

from slotkeeper.models import (
    Booking,
    CalendarWatch,
    ExternalConflict,
    ExternalEvent,
    ProviderCredentials,
    User,
    WatchRegistration,
)


class BookingRepository(abc.ABC):
    """Booking storage owned by the persistence layer."""

    @abc.abstractmethod
    async def find_overlapping(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        exclude_id: str | None = None,
    ) -> list[Booking]:
        """Return the user's bookings with ``start < end_at`` and ``end > start_at``."""
        ...

    @abc.abstractmethod
    async def create(
        self,
        *,
        user_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking:
        """Insert a booking without external linkage.

        Implementations with a storage-level overlap guard raise
        ``ConflictError`` when the guard rejects the row.
        """
        ...

    @abc.abstractmethod
    async def get(self, booking_id: str) -> Booking | None: ...

    @abc.abstractmethod
    async def list_by_user(self, user_id: str) -> list[Booking]:
        """Return the user's bookings ordered by ``start_at`` ascending."""
        ...

    @abc.abstractmethod
    async def list_linked_by_user(self, user_id: str) -> list[Booking]:
        """Return the user's bookings that carry an external event id."""
        ...

    @abc.abstractmethod
    async def list_unlinked_created_before(self, cutoff: datetime) -> list[Booking]:
        """Return bookings of any user with no external event id created before *cutoff*."""
        ...

    @abc.abstractmethod
    async def set_external_event_id(self, booking_id: str, external_event_id: str) -> Booking: ...

    @abc.abstractmethod
    async def update_window(
        self,
        booking_id: str,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking: ...

    @abc.abstractmethod
    async def delete(self, booking_id: str) -> bool:
        """Delete a booking; returns False when it was already gone."""
        ...


class CalendarWatchRepository(abc.ABC):
    """Watch storage with at most one row per user."""

    @abc.abstractmethod
    async def get_by_user(self, user_id: str) -> CalendarWatch | None: ...

    @abc.abstractmethod
    async def get_by_channel(self, channel_id: str) -> CalendarWatch | None: ...

    @abc.abstractmethod
    async def list_expiring_within(
        self,
        horizon: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[CalendarWatch]:
        """Return watches whose expiration falls before ``now + horizon``."""
        ...

    @abc.abstractmethod
    async def upsert(
        self,
        *,
        user_id: str,
        channel_id: str,
        resource_id: str,
        channel_token: str,
        expiration: datetime,
    ) -> CalendarWatch:
        """Insert or replace the user's watch atomically (keyed by user)."""
        ...

    @abc.abstractmethod
    async def delete_by_user(self, user_id: str) -> bool: ...


class UserRepository(abc.ABC):
    """Read access to user records plus the credential mutator."""

    @abc.abstractmethod
    async def get(self, user_id: str) -> User | None: ...

    @abc.abstractmethod
    async def store_refresh_token(self, user_id: str, refresh_token: str) -> None: ...


class CalendarProvider(abc.ABC):
    """Logical contract of the external calendar service."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def find_conflicts(
        self,
        credentials: ProviderCredentials,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> list[ExternalConflict]:
        """Return non-cancelled external events overlapping ``[start_at, end_at)``."""
        ...

    @abc.abstractmethod
    async def create_event(
        self,
        credentials: ProviderCredentials,
        *,
        title: str,
        start_at: datetime,
        end_at: datetime,
        description: str | None = None,
    ) -> str:
        """Create an event and return its provider-side identity."""
        ...

    @abc.abstractmethod
    async def delete_event(self, credentials: ProviderCredentials, *, event_id: str) -> None: ...

    @abc.abstractmethod
    async def get_event(
        self,
        credentials: ProviderCredentials,
        *,
        event_id: str,
    ) -> ExternalEvent | None:
        """Return the event, or None when it was hard-deleted."""
        ...

    @abc.abstractmethod
    async def subscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        channel_token: str,
        callback_url: str,
    ) -> WatchRegistration: ...

    @abc.abstractmethod
    async def unsubscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        resource_id: str,
    ) -> None: ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...


T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout_seconds: float | None) -> T:
    """Await a provider call, raising ``TimeoutError`` after *timeout_seconds*."""
    if timeout_seconds is None:
        return await awaitable
    async with asyncio.timeout(timeout_seconds):
        return await awaitable
