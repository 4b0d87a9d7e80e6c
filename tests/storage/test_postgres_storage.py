"""Unit tests for the asyncpg repositories against a mocked pool."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from slotkeeper.errors import ConflictError, NotFoundError
from slotkeeper.storage.postgres import (
    PostgresBookingRepository,
    PostgresCalendarWatchRepository,
    PostgresUserRepository,
    ensure_schema,
)

pytestmark = pytest.mark.unit

T0 = datetime(2026, 3, 3, 10, 0, tzinfo=UTC)


def _async_cm(value):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def _mock_pool() -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="DELETE 1")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.transaction = MagicMock(return_value=_async_cm(None))
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_async_cm(conn))
    return pool, conn


def _booking_row(**overrides):
    row = {
        "id": "b1",
        "title": "Haircut",
        "start_at": T0,
        "end_at": T0 + timedelta(hours=1),
        "user_id": "alice",
        "external_event_id": None,
        "created_at": T0 - timedelta(days=1),
    }
    row.update(overrides)
    return row


class TestEnsureSchema:
    async def test_creates_extension_tables_and_overlap_constraint(self):
        pool, conn = _mock_pool()

        await ensure_schema(pool)

        statements = " ".join(call.args[0] for call in conn.execute.await_args_list)
        assert "btree_gist" in statements
        assert "CREATE TABLE IF NOT EXISTS bookings" in statements
        assert "CREATE TABLE IF NOT EXISTS calendar_watches" in statements
        assert "EXCLUDE USING gist" in statements
        conn.transaction.assert_called_once()


class TestPostgresBookingRepository:
    async def test_create_maps_exclusion_violation_to_conflict(self):
        pool, conn = _mock_pool()
        conn.fetchrow = AsyncMock(side_effect=asyncpg.ExclusionViolationError("overlap"))
        repo = PostgresBookingRepository(pool)

        with pytest.raises(ConflictError):
            await repo.create(
                user_id="alice", title="Haircut", start_at=T0, end_at=T0 + timedelta(hours=1)
            )

    async def test_create_returns_inserted_row(self):
        pool, conn = _mock_pool()
        conn.fetchrow = AsyncMock(return_value=_booking_row())
        repo = PostgresBookingRepository(pool)

        booking = await repo.create(
            user_id="alice", title="Haircut", start_at=T0, end_at=T0 + timedelta(hours=1)
        )

        assert booking.id == "b1"
        assert "INSERT INTO bookings" in conn.fetchrow.await_args.args[0]

    async def test_create_without_returned_row_raises(self):
        pool, _ = _mock_pool()
        repo = PostgresBookingRepository(pool)

        with pytest.raises(RuntimeError, match="returned no row"):
            await repo.create(
                user_id="alice", title="Haircut", start_at=T0, end_at=T0 + timedelta(hours=1)
            )

    async def test_find_overlapping_uses_half_open_predicate(self):
        pool, conn = _mock_pool()
        conn.fetch = AsyncMock(return_value=[_booking_row()])
        repo = PostgresBookingRepository(pool)

        found = await repo.find_overlapping("alice", T0, T0 + timedelta(hours=1))

        query, *args = conn.fetch.await_args.args
        assert "start_at < $3" in query
        assert "end_at > $2" in query
        assert args == ["alice", T0, T0 + timedelta(hours=1), None]
        assert [b.id for b in found] == ["b1"]

    async def test_set_external_event_id_on_missing_row_is_not_found(self):
        pool, _ = _mock_pool()
        repo = PostgresBookingRepository(pool)

        with pytest.raises(NotFoundError):
            await repo.set_external_event_id("missing", "evt")

    async def test_delete_reads_affected_row_count(self):
        pool, conn = _mock_pool()
        repo = PostgresBookingRepository(pool)

        assert await repo.delete("b1") is True
        conn.execute = AsyncMock(return_value="DELETE 0")
        assert await repo.delete("b1") is False


class TestPostgresCalendarWatchRepository:
    async def test_upsert_conflicts_on_user_id(self):
        pool, conn = _mock_pool()
        conn.fetchrow = AsyncMock(
            return_value={
                "id": "w1",
                "user_id": "alice",
                "channel_id": "c1",
                "resource_id": "r1",
                "channel_token": "t1",
                "expiration": T0,
                "created_at": T0,
            }
        )
        repo = PostgresCalendarWatchRepository(pool)

        watch = await repo.upsert(
            user_id="alice", channel_id="c1", resource_id="r1", channel_token="t1", expiration=T0
        )

        assert watch.channel_id == "c1"
        assert "ON CONFLICT (user_id) DO UPDATE" in conn.fetchrow.await_args.args[0]

    async def test_upsert_without_returned_row_raises(self):
        pool, _ = _mock_pool()
        repo = PostgresCalendarWatchRepository(pool)

        with pytest.raises(RuntimeError, match="returned no row"):
            await repo.upsert(
                user_id="alice",
                channel_id="c1",
                resource_id="r1",
                channel_token="t1",
                expiration=T0,
            )

    async def test_list_expiring_within_passes_cutoff(self):
        pool, conn = _mock_pool()
        repo = PostgresCalendarWatchRepository(pool)

        await repo.list_expiring_within(timedelta(hours=24), now=T0)

        assert conn.fetch.await_args.args[1] == T0 + timedelta(hours=24)


class TestPostgresUserRepository:
    async def test_get_missing_user_returns_none(self):
        pool, _ = _mock_pool()

        assert await PostgresUserRepository(pool).get("nobody") is None

    async def test_store_refresh_token_upserts(self):
        pool, conn = _mock_pool()

        await PostgresUserRepository(pool).store_refresh_token("alice", "rt")

        query, user_id, token = conn.execute.await_args.args
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert (user_id, token) == ("alice", "rt")
