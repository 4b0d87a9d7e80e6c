"""asyncpg-backed repositories.

Schema is created idempotently by ``ensure_schema``.  Overlap between one
user's bookings is also rejected by an exclusion constraint, so two
concurrent creates racing past the application-level re-check cannot both
commit; the loser surfaces as ``ConflictError``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import asyncpg

from slotkeeper.errors import ConflictError, NotFoundError
from slotkeeper.models import Booking, CalendarWatch, User, ensure_utc, utcnow
from slotkeeper.ports import BookingRepository, CalendarWatchRepository, UserRepository

if TYPE_CHECKING:
    from asyncpg import Record

logger = logging.getLogger(__name__)

_BOOKINGS_TABLE = "bookings"
_WATCHES_TABLE = "calendar_watches"
_USERS_TABLE = "users"
_NO_OVERLAP_CONSTRAINT = "bookings_no_overlap"

_SCHEMA_DDL = (
    "CREATE EXTENSION IF NOT EXISTS btree_gist",
    f"""
    CREATE TABLE IF NOT EXISTS {_USERS_TABLE} (
        id            TEXT PRIMARY KEY,
        email         TEXT,
        refresh_token TEXT,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {_BOOKINGS_TABLE} (
        id                TEXT PRIMARY KEY,
        title             TEXT NOT NULL,
        start_at          TIMESTAMPTZ NOT NULL,
        end_at            TIMESTAMPTZ NOT NULL,
        user_id           TEXT NOT NULL,
        external_event_id TEXT,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT bookings_window_check CHECK (start_at < end_at)
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_bookings_user_start
    ON {_BOOKINGS_TABLE} (user_id, start_at)
    """,
    f"""
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM pg_constraint WHERE conname = '{_NO_OVERLAP_CONSTRAINT}'
        ) THEN
            ALTER TABLE {_BOOKINGS_TABLE}
            ADD CONSTRAINT {_NO_OVERLAP_CONSTRAINT}
            EXCLUDE USING gist (
                user_id WITH =,
                tstzrange(start_at, end_at, '[)') WITH &&
            );
        END IF;
    END
    $$
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {_WATCHES_TABLE} (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL UNIQUE,
        channel_id    TEXT NOT NULL UNIQUE,
        resource_id   TEXT NOT NULL,
        channel_token TEXT NOT NULL,
        expiration    TIMESTAMPTZ NOT NULL,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_calendar_watches_expiration
    ON {_WATCHES_TABLE} (expiration)
    """,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the tables, indexes and overlap constraint when missing."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_DDL:
                await conn.execute(statement)
    logger.info("Database schema ensured")


def _affected(status: str | None) -> bool:
    # asyncpg returns a string like "DELETE 1" or "DELETE 0"
    return bool(status) and status.split()[-1] != "0"


def _booking_from_row(row: Record) -> Booking:
    return Booking(
        id=row["id"],
        title=row["title"],
        start_at=row["start_at"],
        end_at=row["end_at"],
        user_id=row["user_id"],
        external_event_id=row["external_event_id"],
        created_at=row["created_at"],
    )


def _watch_from_row(row: Record) -> CalendarWatch:
    return CalendarWatch(
        id=row["id"],
        user_id=row["user_id"],
        channel_id=row["channel_id"],
        resource_id=row["resource_id"],
        channel_token=row["channel_token"],
        expiration=row["expiration"],
        created_at=row["created_at"],
    )


_BOOKING_COLUMNS = "id, title, start_at, end_at, user_id, external_event_id, created_at"
_WATCH_COLUMNS = "id, user_id, channel_id, resource_id, channel_token, expiration, created_at"


class PostgresBookingRepository(BookingRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def _fetch(self, query: str, *args: Any) -> list[Booking]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [_booking_from_row(row) for row in rows]

    async def _fetch_one(self, query: str, *args: Any) -> Booking | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return _booking_from_row(row) if row is not None else None

    async def find_overlapping(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        exclude_id: str | None = None,
    ) -> list[Booking]:
        return await self._fetch(
            f"""
            SELECT {_BOOKING_COLUMNS}
            FROM {_BOOKINGS_TABLE}
            WHERE user_id = $1
              AND start_at < $3
              AND end_at > $2
              AND ($4::text IS NULL OR id <> $4)
            ORDER BY start_at
            """,
            user_id,
            ensure_utc(start_at),
            ensure_utc(end_at),
            exclude_id,
        )

    async def create(
        self,
        *,
        user_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking:
        try:
            booking = await self._fetch_one(
                f"""
                INSERT INTO {_BOOKINGS_TABLE} (id, title, start_at, end_at, user_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {_BOOKING_COLUMNS}
                """,
                str(uuid.uuid4()),
                title,
                ensure_utc(start_at),
                ensure_utc(end_at),
                user_id,
            )
        except asyncpg.ExclusionViolationError as exc:
            logger.info("Overlap constraint rejected booking for user %s", user_id)
            raise ConflictError(
                "Booking conflicts with an existing reservation"
            ) from exc
        if booking is None:
            raise RuntimeError("INSERT into bookings returned no row")
        return booking

    async def get(self, booking_id: str) -> Booking | None:
        return await self._fetch_one(
            f"SELECT {_BOOKING_COLUMNS} FROM {_BOOKINGS_TABLE} WHERE id = $1",
            booking_id,
        )

    async def list_by_user(self, user_id: str) -> list[Booking]:
        return await self._fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM {_BOOKINGS_TABLE}
            WHERE user_id = $1 ORDER BY start_at
            """,
            user_id,
        )

    async def list_linked_by_user(self, user_id: str) -> list[Booking]:
        return await self._fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM {_BOOKINGS_TABLE}
            WHERE user_id = $1 AND external_event_id IS NOT NULL
            ORDER BY start_at
            """,
            user_id,
        )

    async def list_unlinked_created_before(self, cutoff: datetime) -> list[Booking]:
        return await self._fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM {_BOOKINGS_TABLE}
            WHERE external_event_id IS NULL AND created_at < $1
            ORDER BY created_at
            """,
            ensure_utc(cutoff),
        )

    async def set_external_event_id(self, booking_id: str, external_event_id: str) -> Booking:
        booking = await self._fetch_one(
            f"""
            UPDATE {_BOOKINGS_TABLE} SET external_event_id = $2
            WHERE id = $1
            RETURNING {_BOOKING_COLUMNS}
            """,
            booking_id,
            external_event_id,
        )
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def update_window(
        self,
        booking_id: str,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> Booking:
        try:
            booking = await self._fetch_one(
                f"""
                UPDATE {_BOOKINGS_TABLE} SET start_at = $2, end_at = $3
                WHERE id = $1
                RETURNING {_BOOKING_COLUMNS}
                """,
                booking_id,
                ensure_utc(start_at),
                ensure_utc(end_at),
            )
        except asyncpg.ExclusionViolationError as exc:
            raise ConflictError(
                f"Booking {booking_id} cannot move onto an existing reservation"
            ) from exc
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def delete(self, booking_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_BOOKINGS_TABLE} WHERE id = $1",
                booking_id,
            )
        return _affected(result)


class PostgresCalendarWatchRepository(CalendarWatchRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def _fetch_one(self, query: str, *args: Any) -> CalendarWatch | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return _watch_from_row(row) if row is not None else None

    async def get_by_user(self, user_id: str) -> CalendarWatch | None:
        return await self._fetch_one(
            f"SELECT {_WATCH_COLUMNS} FROM {_WATCHES_TABLE} WHERE user_id = $1",
            user_id,
        )

    async def get_by_channel(self, channel_id: str) -> CalendarWatch | None:
        return await self._fetch_one(
            f"SELECT {_WATCH_COLUMNS} FROM {_WATCHES_TABLE} WHERE channel_id = $1",
            channel_id,
        )

    async def list_expiring_within(
        self,
        horizon: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[CalendarWatch]:
        cutoff = (now or utcnow()) + horizon
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_WATCH_COLUMNS} FROM {_WATCHES_TABLE}
                WHERE expiration < $1
                ORDER BY expiration
                """,
                ensure_utc(cutoff),
            )
        return [_watch_from_row(row) for row in rows]

    async def upsert(
        self,
        *,
        user_id: str,
        channel_id: str,
        resource_id: str,
        channel_token: str,
        expiration: datetime,
    ) -> CalendarWatch:
        watch = await self._fetch_one(
            f"""
            INSERT INTO {_WATCHES_TABLE}
                (id, user_id, channel_id, resource_id, channel_token, expiration)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (user_id) DO UPDATE SET
                channel_id    = EXCLUDED.channel_id,
                resource_id   = EXCLUDED.resource_id,
                channel_token = EXCLUDED.channel_token,
                expiration    = EXCLUDED.expiration
            RETURNING {_WATCH_COLUMNS}
            """,
            str(uuid.uuid4()),
            user_id,
            channel_id,
            resource_id,
            channel_token,
            ensure_utc(expiration),
        )
        if watch is None:
            raise RuntimeError("UPSERT into calendar watches returned no row")
        return watch

    async def delete_by_user(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_WATCHES_TABLE} WHERE user_id = $1",
                user_id,
            )
        return _affected(result)


class PostgresUserRepository(UserRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, user_id: str) -> User | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT id, email, refresh_token FROM {_USERS_TABLE} WHERE id = $1",
                user_id,
            )
        if row is None:
            return None
        return User(id=row["id"], email=row["email"], refresh_token=row["refresh_token"])

    async def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_USERS_TABLE} (id, refresh_token)
                VALUES ($1, $2)
                ON CONFLICT (id) DO UPDATE SET
                    refresh_token = EXCLUDED.refresh_token,
                    updated_at    = now()
                """,
                user_id,
                refresh_token,
            )

    def __repr__(self) -> str:
        return f"PostgresUserRepository(pool={self.pool!r})"
