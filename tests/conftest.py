"""Shared fixtures for the slotkeeper test suite.

``FakeCalendarProvider`` is an in-memory stand-in for the provider port.
Tests reach it through the ``provider`` fixture and script failures by
assigning exceptions to its ``fail_*`` attributes.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from slotkeeper.core.logging import _user_context
from slotkeeper.models import (
    ExternalConflict,
    ExternalEvent,
    ExternalEventStatus,
    ProviderCredentials,
    WatchRegistration,
)
from slotkeeper.ports import CalendarProvider
from slotkeeper.storage.memory import (
    InMemoryBookingRepository,
    InMemoryCalendarWatchRepository,
    InMemoryUserRepository,
)

FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeCalendarProvider(CalendarProvider):
    """Records every call and serves events from a dict."""

    def __init__(self) -> None:
        self.events: dict[str, ExternalEvent] = {}
        self.calls: list[tuple[str, dict]] = []
        self.subscriptions: dict[str, WatchRegistration] = {}
        self.stopped: list[str] = []
        self.fail_find: BaseException | None = None
        self.fail_create: BaseException | None = None
        self.fail_delete: BaseException | None = None
        self.fail_get: BaseException | None = None
        self.fail_subscribe: BaseException | None = None
        self.fail_unsubscribe: BaseException | None = None
        self.find_delay: float = 0.0
        self.watch_ttl = timedelta(days=7)
        self._counter = 0

    @property
    def name(self) -> str:
        return "fake"

    def add_event(
        self,
        start_at: datetime,
        end_at: datetime,
        *,
        title: str = "Dentist",
        status: ExternalEventStatus = ExternalEventStatus.CONFIRMED,
        event_id: str | None = None,
    ) -> ExternalEvent:
        self._counter += 1
        event = ExternalEvent(
            id=event_id or f"evt-{self._counter}",
            title=title,
            status=status,
            start_at=start_at,
            end_at=end_at,
        )
        self.events[event.id] = event
        return event

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def find_conflicts(
        self,
        credentials: ProviderCredentials,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> list[ExternalConflict]:
        self.calls.append(("find_conflicts", {"start_at": start_at, "end_at": end_at}))
        if self.find_delay:
            await asyncio.sleep(self.find_delay)
        if self.fail_find is not None:
            raise self.fail_find
        return [
            ExternalConflict(id=e.id, title=e.title, start_at=e.start_at, end_at=e.end_at)
            for e in self.events.values()
            if not e.is_cancelled and e.start_at < end_at and e.end_at > start_at
        ]

    async def create_event(
        self,
        credentials: ProviderCredentials,
        *,
        title: str,
        start_at: datetime,
        end_at: datetime,
        description: str | None = None,
    ) -> str:
        self.calls.append(("create_event", {"title": title, "description": description}))
        if self.fail_create is not None:
            raise self.fail_create
        return self.add_event(start_at, end_at, title=title).id

    async def delete_event(self, credentials: ProviderCredentials, *, event_id: str) -> None:
        self.calls.append(("delete_event", {"event_id": event_id}))
        if self.fail_delete is not None:
            raise self.fail_delete
        self.events.pop(event_id, None)

    async def get_event(
        self,
        credentials: ProviderCredentials,
        *,
        event_id: str,
    ) -> ExternalEvent | None:
        self.calls.append(("get_event", {"event_id": event_id}))
        if self.fail_get is not None:
            raise self.fail_get
        return self.events.get(event_id)

    async def subscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        channel_token: str,
        callback_url: str,
    ) -> WatchRegistration:
        self.calls.append(
            ("subscribe", {"channel_id": channel_id, "callback_url": callback_url})
        )
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        registration = WatchRegistration(
            channel_id=channel_id,
            resource_id=f"res-{channel_id}",
            expiration=datetime.now(UTC) + self.watch_ttl,
        )
        self.subscriptions[channel_id] = registration
        return registration

    async def unsubscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        resource_id: str,
    ) -> None:
        self.calls.append(("unsubscribe", {"channel_id": channel_id, "resource_id": resource_id}))
        if self.fail_unsubscribe is not None:
            raise self.fail_unsubscribe
        self.subscriptions.pop(channel_id, None)
        self.stopped.append(channel_id)

    async def shutdown(self) -> None:
        self.calls.append(("shutdown", {}))


@pytest.fixture(autouse=True)
def _reset_user_context():
    token = _user_context.set(None)
    yield
    _user_context.reset(token)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials(refresh_token="refresh-abc")


@pytest.fixture
def booking_repo() -> InMemoryBookingRepository:
    return InMemoryBookingRepository()


@pytest.fixture
def watch_repo() -> InMemoryCalendarWatchRepository:
    return InMemoryCalendarWatchRepository()


@pytest.fixture
def user_repo() -> InMemoryUserRepository:
    return InMemoryUserRepository()
