"""In-process repositories for tests and single-node development.

Every mutation runs under one ``asyncio.Lock`` per repository so the
check-then-write sequences here are atomic with respect to other tasks on
the same event loop.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta

from slotkeeper.errors import ConflictError, NotFoundError
from slotkeeper.models import Booking, CalendarWatch, User, ensure_utc, utcnow
from slotkeeper.ports import BookingRepository, CalendarWatchRepository, UserRepository


class InMemoryBookingRepository(BookingRepository):
    """Dict-backed booking store.

    With ``enforce_no_overlap=True`` ``create`` rejects overlapping rows for
    the same user, mirroring the PostgreSQL exclusion constraint.
    """

    def __init__(self, *, enforce_no_overlap: bool = False) -> None:
        self._rows: dict[str, Booking] = {}
        self._lock = asyncio.Lock()
        self._enforce_no_overlap = enforce_no_overlap

    def _overlapping(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        exclude_id: str | None,
    ) -> list[Booking]:
        matches = [
            row
            for row in self._rows.values()
            if row.user_id == user_id and row.id != exclude_id and row.overlaps(start_at, end_at)
        ]
        return sorted(matches, key=lambda row: row.start_at)

    async def find_overlapping(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        exclude_id: str | None = None,
    ) -> list[Booking]:
        return self._overlapping(user_id, start_at, end_at, exclude_id)

    async def create(
        self,
        *,
        user_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking:
        booking = Booking(
            id=str(uuid.uuid4()),
            title=title,
            start_at=start_at,
            end_at=end_at,
            user_id=user_id,
        )
        async with self._lock:
            if self._enforce_no_overlap:
                clashes = sorted(
                    (
                        row
                        for row in self._rows.values()
                        if row.user_id == user_id and booking.conflicts_with(row)
                    ),
                    key=lambda row: row.start_at,
                )
                if clashes:
                    raise ConflictError(
                        f'Booking conflicts with existing reservation: "{clashes[0].title}"',
                        conflicting_title=clashes[0].title,
                    )
            self._rows[booking.id] = booking
            return booking

    async def get(self, booking_id: str) -> Booking | None:
        return self._rows.get(booking_id)

    async def list_by_user(self, user_id: str) -> list[Booking]:
        rows = [row for row in self._rows.values() if row.user_id == user_id]
        return sorted(rows, key=lambda row: row.start_at)

    async def list_linked_by_user(self, user_id: str) -> list[Booking]:
        return [row for row in await self.list_by_user(user_id) if row.external_event_id]

    async def list_unlinked_created_before(self, cutoff: datetime) -> list[Booking]:
        cutoff = ensure_utc(cutoff)
        return [
            row
            for row in self._rows.values()
            if row.external_event_id is None and row.created_at < cutoff
        ]

    async def set_external_event_id(self, booking_id: str, external_event_id: str) -> Booking:
        async with self._lock:
            row = self._rows.get(booking_id)
            if row is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            updated = row.model_copy(update={"external_event_id": external_event_id})
            self._rows[booking_id] = updated
            return updated

    async def update_window(
        self,
        booking_id: str,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking:
        async with self._lock:
            row = self._rows.get(booking_id)
            if row is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            # Re-validate so the start < end invariant holds.
            updated = Booking.model_validate(
                {**row.model_dump(), "start_at": start_at, "end_at": end_at}
            )
            self._rows[booking_id] = updated
            return updated

    async def delete(self, booking_id: str) -> bool:
        async with self._lock:
            return self._rows.pop(booking_id, None) is not None


class InMemoryCalendarWatchRepository(CalendarWatchRepository):
    """Watch store keyed by user id; channel lookups scan the rows."""

    def __init__(self) -> None:
        self._by_user: dict[str, CalendarWatch] = {}
        self._lock = asyncio.Lock()

    async def get_by_user(self, user_id: str) -> CalendarWatch | None:
        return self._by_user.get(user_id)

    async def get_by_channel(self, channel_id: str) -> CalendarWatch | None:
        for watch in self._by_user.values():
            if watch.channel_id == channel_id:
                return watch
        return None

    async def list_expiring_within(
        self,
        horizon: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[CalendarWatch]:
        reference = now or utcnow()
        return sorted(
            (w for w in self._by_user.values() if w.is_expiring_within(horizon, reference)),
            key=lambda w: w.expiration,
        )

    async def upsert(
        self,
        *,
        user_id: str,
        channel_id: str,
        resource_id: str,
        channel_token: str,
        expiration: datetime,
    ) -> CalendarWatch:
        async with self._lock:
            existing = self._by_user.get(user_id)
            watch = CalendarWatch(
                id=existing.id if existing else str(uuid.uuid4()),
                user_id=user_id,
                channel_id=channel_id,
                resource_id=resource_id,
                channel_token=channel_token,
                expiration=expiration,
            )
            self._by_user[user_id] = watch
            return watch

    async def delete_by_user(self, user_id: str) -> bool:
        async with self._lock:
            return self._by_user.pop(user_id, None) is not None


class InMemoryUserRepository(UserRepository):
    def __init__(self, users: list[User] | None = None) -> None:
        self._users: dict[str, User] = {user.id: user for user in users or []}

    async def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    async def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        existing = self._users.get(user_id) or User(id=user_id)
        self._users[user_id] = existing.model_copy(update={"refresh_token": refresh_token})
