"""Tests for the booking saga: create with compensation, cancel, orphan sweep."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from slotkeeper.availability import AvailabilityChecker
from slotkeeper.bookings import BookingSaga
from slotkeeper.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PastWindowError,
    ProviderUnavailableError,
)
from slotkeeper.providers.auth_retry import ProviderRequestError
from slotkeeper.storage.memory import InMemoryBookingRepository

pytestmark = pytest.mark.unit


def _saga(bookings, provider, clock, *, timeout: float = 0.5) -> BookingSaga:
    availability = AvailabilityChecker(bookings, provider, provider_timeout=timeout, clock=clock)
    return BookingSaga(bookings, provider, availability, provider_timeout=timeout, clock=clock)


@pytest.fixture
def saga(booking_repo, provider, clock) -> BookingSaga:
    return _saga(booking_repo, provider, clock)


@pytest.fixture
def window(now):
    start = now + timedelta(days=1)
    return start, start + timedelta(hours=1)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_success_links_external_event(self, saga, provider, credentials, window):
        booking = await saga.create("alice", "Haircut", *window, credentials)

        assert booking.external_event_id is not None
        assert booking.external_event_id in provider.events
        assert provider.events[booking.external_event_id].title == "Haircut"

    async def test_event_description_carries_booking_id(self, saga, provider, credentials, window):
        booking = await saga.create("alice", "Haircut", *window, credentials)

        _, kwargs = next(c for c in provider.calls if c[0] == "create_event")
        assert kwargs["description"] == f"Booking created via slotkeeper (ID: {booking.id})"

    async def test_success_is_persisted_with_link(
        self, saga, booking_repo, credentials, window
    ):
        booking = await saga.create("alice", "Haircut", *window, credentials)

        stored = await booking_repo.get(booking.id)
        assert stored is not None
        assert stored.external_event_id == booking.external_event_id

    async def test_local_conflict_rejects_without_writes(
        self, saga, booking_repo, provider, credentials, window
    ):
        await booking_repo.create(
            user_id="alice", title="Existing", start_at=window[0], end_at=window[1]
        )

        with pytest.raises(ConflictError) as exc_info:
            await saga.create("alice", "Haircut", *window, credentials)

        assert exc_info.value.conflicting_title == "Existing"
        assert '"Existing"' in str(exc_info.value)
        assert len(await booking_repo.list_by_user("alice")) == 1
        assert "create_event" not in provider.call_names()

    async def test_external_conflict_rejects_without_writes(
        self, saga, booking_repo, provider, credentials, window
    ):
        provider.add_event(*window, title="Flight")

        with pytest.raises(ConflictError) as exc_info:
            await saga.create("alice", "Haircut", *window, credentials)

        assert exc_info.value.conflicting_title == "Flight"
        assert await booking_repo.list_by_user("alice") == []

    async def test_local_conflict_is_reported_before_external(
        self, saga, booking_repo, provider, credentials, window
    ):
        await booking_repo.create(user_id="alice", title="Local", start_at=window[0], end_at=window[1])
        provider.add_event(*window, title="Remote")

        with pytest.raises(ConflictError) as exc_info:
            await saga.create("alice", "Haircut", *window, credentials)

        assert exc_info.value.conflicting_title == "Local"

    async def test_past_window_is_rejected(self, saga, provider, credentials, now):
        with pytest.raises(PastWindowError):
            await saga.create("alice", "Late", now - timedelta(hours=2), now, credentials)
        assert provider.calls == []

    async def test_provider_failure_compensates_local_booking(
        self, saga, booking_repo, provider, credentials, window
    ):
        provider.fail_create = ProviderRequestError(status_code=500, message="backend error")

        with pytest.raises(ProviderUnavailableError):
            await saga.create("alice", "Haircut", *window, credentials)

        assert await booking_repo.list_by_user("alice") == []

    async def test_provider_timeout_compensates_local_booking(
        self, booking_repo, provider, credentials, window, clock
    ):
        saga = _saga(booking_repo, provider, clock, timeout=0.05)

        async def _slow_create(*args, **kwargs):
            await asyncio.sleep(1)
            return "never"

        provider.create_event = _slow_create

        with pytest.raises(ProviderUnavailableError):
            await saga.create("alice", "Haircut", *window, credentials)

        assert await booking_repo.list_by_user("alice") == []

    async def test_link_failure_discards_event_and_booking(
        self, provider, credentials, window, clock
    ):
        repo = InMemoryBookingRepository()
        repo.set_external_event_id = AsyncMock(side_effect=ConnectionError("db gone"))
        saga = _saga(repo, provider, clock)

        with pytest.raises(ConnectionError):
            await saga.create("alice", "Haircut", *window, credentials)

        assert await repo.list_by_user("alice") == []
        assert provider.events == {}
        assert "delete_event" in provider.call_names()

    async def test_concurrent_overlapping_creates_commit_at_most_one(
        self, provider, credentials, window, clock
    ):
        repo = InMemoryBookingRepository(enforce_no_overlap=True)
        saga = _saga(repo, provider, clock)

        results = await asyncio.gather(
            saga.create("alice", "First", *window, credentials),
            saga.create(
                "alice",
                "Second",
                window[0] + timedelta(minutes=30),
                window[1] + timedelta(minutes=30),
                credentials,
            ),
            return_exceptions=True,
        )

        committed = [r for r in results if not isinstance(r, BaseException)]
        assert len(committed) == 1
        assert len(await repo.list_by_user("alice")) == 1
        assert isinstance(next(r for r in results if isinstance(r, BaseException)), ConflictError)


# ---------------------------------------------------------------------------
# Compensation and orphan sweep
# ---------------------------------------------------------------------------


class TestCompensation:
    async def test_compensate_is_idempotent(self, saga, booking_repo, window):
        booking = await booking_repo.create(
            user_id="alice", title="Orphan", start_at=window[0], end_at=window[1]
        )

        assert await saga.compensate_create(booking.id) is True
        assert await saga.compensate_create(booking.id) is False

    async def test_compensation_metric_counts_only_actual_deletes(
        self, saga, booking_repo, window
    ):
        booking = await booking_repo.create(
            user_id="alice", title="Orphan", start_at=window[0], end_at=window[1]
        )

        with patch("slotkeeper.bookings.core_metrics") as metrics:
            await saga.compensate_create(booking.id)
            await saga.compensate_create(booking.id)

        metrics.booking_compensated.assert_called_once_with()

    async def test_sweep_removes_only_old_unlinked_bookings(
        self, booking_repo, provider, credentials, window, now
    ):
        linked_saga = _saga(booking_repo, provider, lambda: now)
        linked = await linked_saga.create("alice", "Linked", *window, credentials)
        orphan = await booking_repo.create(
            user_id="alice",
            title="Orphan",
            start_at=window[1] + timedelta(hours=1),
            end_at=window[1] + timedelta(hours=2),
        )

        later = orphan.created_at + timedelta(hours=1)
        sweeper = _saga(booking_repo, provider, lambda: later)
        removed = await sweeper.sweep_orphaned_bookings(timedelta(minutes=15))

        assert removed == 1
        assert await booking_repo.get(orphan.id) is None
        assert await booking_repo.get(linked.id) is not None

    async def test_sweep_keeps_recent_unlinked_bookings(self, booking_repo, provider, window):
        orphan = await booking_repo.create(
            user_id="alice", title="In flight", start_at=window[0], end_at=window[1]
        )
        sweeper = _saga(booking_repo, provider, lambda: orphan.created_at + timedelta(minutes=1))

        assert await sweeper.sweep_orphaned_bookings(timedelta(minutes=15)) == 0
        assert await booking_repo.get(orphan.id) is not None


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    async def test_cancel_deletes_local_and_external(
        self, saga, booking_repo, provider, credentials, window
    ):
        booking = await saga.create("alice", "Haircut", *window, credentials)

        await saga.cancel("alice", booking.id, credentials)

        assert await booking_repo.get(booking.id) is None
        assert booking.external_event_id not in provider.events

    async def test_cancel_unknown_booking_is_not_found(self, saga, credentials):
        with pytest.raises(NotFoundError):
            await saga.cancel("alice", "missing", credentials)

    async def test_cancel_by_non_owner_is_forbidden_and_keeps_booking(
        self, saga, booking_repo, provider, credentials, window
    ):
        booking = await saga.create("alice", "Haircut", *window, credentials)

        with pytest.raises(ForbiddenError):
            await saga.cancel("mallory", booking.id, credentials)

        assert await booking_repo.get(booking.id) is not None
        assert booking.external_event_id in provider.events

    async def test_cancel_succeeds_when_external_delete_fails(
        self, saga, booking_repo, provider, credentials, window
    ):
        booking = await saga.create("alice", "Haircut", *window, credentials)
        provider.fail_delete = ProviderUnavailableError("calendar down")

        await saga.cancel("alice", booking.id, credentials)

        assert await booking_repo.get(booking.id) is None

    async def test_cancel_unlinked_booking_skips_provider(
        self, saga, booking_repo, provider, credentials, window
    ):
        booking = await booking_repo.create(
            user_id="alice", title="Local only", start_at=window[0], end_at=window[1]
        )

        await saga.cancel("alice", booking.id, credentials)

        assert "delete_event" not in provider.call_names()
        assert await booking_repo.get(booking.id) is None


class TestListUserBookings:
    async def test_lists_only_callers_bookings_in_start_order(self, saga, booking_repo, window):
        later = await booking_repo.create(
            user_id="alice",
            title="Later",
            start_at=window[0] + timedelta(days=1),
            end_at=window[1] + timedelta(days=1),
        )
        sooner = await booking_repo.create(
            user_id="alice", title="Sooner", start_at=window[0], end_at=window[1]
        )
        await booking_repo.create(user_id="bob", title="Bob", start_at=window[0], end_at=window[1])

        bookings = await saga.list_user_bookings("alice")

        assert [b.id for b in bookings] == [sooner.id, later.id]
