"""Availability checking across the local store and the external calendar.

The local overlap query and the provider conflict query are issued together
and both are awaited before a verdict is produced.  A provider failure is
never read as "no external conflicts": it fails the whole check with
``ProviderUnavailableError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from slotkeeper.errors import InvalidRangeError, PastWindowError, ProviderUnavailableError
from slotkeeper.models import (
    AvailabilityResult,
    Booking,
    ExternalConflict,
    LocalConflict,
    ProviderCredentials,
    ensure_utc,
    utcnow,
)
from slotkeeper.ports import BookingRepository, CalendarProvider, call_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 15.0


def validate_window(
    start_at: datetime,
    end_at: datetime,
    *,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Normalize a requested window to UTC and reject unusable ones."""
    start_at = ensure_utc(start_at)
    end_at = ensure_utc(end_at)
    if start_at >= end_at:
        raise InvalidRangeError("start_at must be before end_at")
    if start_at < ensure_utc(now):
        raise PastWindowError("Cannot book a time slot in the past")
    return start_at, end_at


class AvailabilityChecker:
    """Read-only conflict check against both conflict sources."""

    def __init__(
        self,
        bookings: BookingRepository,
        provider: CalendarProvider,
        *,
        provider_timeout: float | None = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bookings = bookings
        self._provider = provider
        self._provider_timeout = provider_timeout
        self._clock = clock

    def validate(self, start_at: datetime, end_at: datetime) -> tuple[datetime, datetime]:
        return validate_window(start_at, end_at, now=self._clock())

    async def check(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        credentials: ProviderCredentials,
    ) -> AvailabilityResult:
        start_at, end_at = self.validate(start_at, end_at)
        local, external = await self.collect_conflicts(user_id, start_at, end_at, credentials)
        return AvailabilityResult(
            available=not local and not external,
            local_conflicts=[LocalConflict.from_booking(booking) for booking in local],
            external_conflicts=external,
        )

    async def collect_conflicts(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        credentials: ProviderCredentials,
    ) -> tuple[list[Booking], list[ExternalConflict]]:
        """Run both conflict queries concurrently on an already-validated window.

        Raises ``ProviderUnavailableError`` when the provider query fails or
        times out.  A local-store failure propagates unchanged.
        """
        local_result, external_result = await asyncio.gather(
            self._bookings.find_overlapping(user_id, start_at, end_at),
            call_with_timeout(
                self._provider.find_conflicts(credentials, start_at=start_at, end_at=end_at),
                self._provider_timeout,
            ),
            return_exceptions=True,
        )

        if isinstance(local_result, BaseException):
            raise local_result

        if isinstance(external_result, (InvalidRangeError, PastWindowError)):
            raise external_result
        if isinstance(external_result, BaseException):
            if not isinstance(external_result, Exception):
                raise external_result
            logger.error(
                "External conflict check failed for user %s: %s",
                user_id,
                external_result,
                exc_info=external_result,
            )
            raise ProviderUnavailableError(
                "Failed to verify availability: the calendar provider is temporarily unavailable"
            ) from external_result

        return list(local_result), list(external_result)
