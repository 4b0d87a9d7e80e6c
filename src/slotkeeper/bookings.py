"""Booking creation and cancellation across the local store and the provider.

Creation is a two-system write with no shared transaction, run as a saga:

1. validate the window
2. re-run both conflict queries at commit time
3. persist the booking locally
4. create the external event (description carries the local booking id)
5. link the external event id onto the local booking

If step 4 fails, the compensating action ``compensate_create`` deletes the
local booking and the caller sees ``ProviderUnavailableError``.

Cancellation is asymmetric: the external delete is
best-effort and never blocks removing the local booking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from slotkeeper.availability import DEFAULT_PROVIDER_TIMEOUT_SECONDS, AvailabilityChecker
from slotkeeper.core.logging import set_user_context
from slotkeeper.core.metrics import core_metrics
from slotkeeper.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderUnavailableError,
)
from slotkeeper.models import Booking, ProviderCredentials, utcnow
from slotkeeper.ports import BookingRepository, CalendarProvider, call_with_timeout

logger = logging.getLogger(__name__)

EVENT_DESCRIPTION_TEMPLATE = "Booking created via slotkeeper (ID: {booking_id})"
DEFAULT_ORPHAN_GRACE = timedelta(minutes=15)


class BookingSaga:
    """Create/cancel protocol for bookings mirrored into the external calendar."""

    def __init__(
        self,
        bookings: BookingRepository,
        provider: CalendarProvider,
        availability: AvailabilityChecker,
        *,
        provider_timeout: float | None = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bookings = bookings
        self._provider = provider
        self._availability = availability
        self._provider_timeout = provider_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
        credentials: ProviderCredentials,
    ) -> Booking:
        set_user_context(user_id)
        start_at, end_at = self._availability.validate(start_at, end_at)
        await self._recheck_conflicts(user_id, start_at, end_at, credentials)

        booking = await self._bookings.create(
            user_id=user_id,
            title=title,
            start_at=start_at,
            end_at=end_at,
        )

        try:
            event_id = await self._create_external_event(booking, credentials)
        except Exception as exc:
            logger.error(
                "Failed to create external event for booking %s; rolling back: %s",
                booking.id,
                exc,
                exc_info=True,
            )
            await self.compensate_create(booking.id)
            raise ProviderUnavailableError(
                "Booking could not be confirmed: failed to create the calendar event. "
                "Please try again."
            ) from exc

        try:
            linked = await self._bookings.set_external_event_id(booking.id, event_id)
        except Exception:
            logger.error(
                "Failed to link external event %s to booking %s; rolling back both writes",
                event_id,
                booking.id,
                exc_info=True,
            )
            await self._discard_external_event(event_id, credentials)
            await self.compensate_create(booking.id)
            raise

        core_metrics.booking_created()
        logger.info("Booking %s created and linked to external event %s", linked.id, event_id)
        return linked

    async def _recheck_conflicts(
        self,
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        credentials: ProviderCredentials,
    ) -> None:
        local, external = await self._availability.collect_conflicts(
            user_id, start_at, end_at, credentials
        )
        if local:
            raise ConflictError(
                f'Booking conflicts with existing reservation: "{local[0].title}"',
                conflicting_title=local[0].title,
            )
        if external:
            raise ConflictError(
                f'Booking conflicts with calendar event: "{external[0].title}"',
                conflicting_title=external[0].title,
            )

    async def _create_external_event(
        self,
        booking: Booking,
        credentials: ProviderCredentials,
    ) -> str:
        return await call_with_timeout(
            self._provider.create_event(
                credentials,
                title=booking.title,
                start_at=booking.start_at,
                end_at=booking.end_at,
                description=EVENT_DESCRIPTION_TEMPLATE.format(booking_id=booking.id),
            ),
            self._provider_timeout,
        )

    async def _discard_external_event(self, event_id: str, credentials: ProviderCredentials) -> None:
        try:
            await call_with_timeout(
                self._provider.delete_event(credentials, event_id=event_id),
                self._provider_timeout,
            )
        except Exception as exc:
            logger.warning("Could not discard external event %s: %s", event_id, exc)

    async def compensate_create(self, booking_id: str) -> bool:
        """Undo step 3 of creation by deleting the local booking.

        Safe to call repeatedly; returns False when the booking was already gone.
        """
        deleted = await self._bookings.delete(booking_id)
        if deleted:
            core_metrics.booking_compensated()
        logger.warning("Compensated booking %s (deleted=%s)", booking_id, deleted)
        return deleted

    async def sweep_orphaned_bookings(self, grace: timedelta = DEFAULT_ORPHAN_GRACE) -> int:
        """Delete unlinked bookings older than *grace*.

        A crash between the local write and the link step leaves a booking
        with no external event id; this sweep is the safety net for it.
        """
        cutoff = self._clock() - grace
        orphans = await self._bookings.list_unlinked_created_before(cutoff)
        removed = 0
        for booking in orphans:
            if await self.compensate_create(booking.id):
                removed += 1
        if removed:
            logger.info("Swept %d orphaned booking(s) created before %s", removed, cutoff)
        return removed

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(
        self,
        user_id: str,
        booking_id: str,
        credentials: ProviderCredentials,
    ) -> None:
        set_user_context(user_id)
        booking = await self._bookings.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking with ID {booking_id} not found")
        if not booking.is_owned_by(user_id):
            raise ForbiddenError("You do not have permission to cancel this booking")

        external = "none"
        if booking.external_event_id:
            try:
                await call_with_timeout(
                    self._provider.delete_event(credentials, event_id=booking.external_event_id),
                    self._provider_timeout,
                )
                external = "deleted"
            except Exception as exc:
                # Local store stays authoritative; the orphaned external event is tolerated.
                external = "failed"
                logger.warning(
                    "Could not delete external event %s for booking %s: %s",
                    booking.external_event_id,
                    booking.id,
                    exc,
                )

        await self._bookings.delete(booking.id)
        core_metrics.booking_cancelled(external)
        logger.info("Booking %s cancelled (external=%s)", booking.id, external)

    async def list_user_bookings(self, user_id: str) -> list[Booking]:
        return await self._bookings.list_by_user(user_id)
