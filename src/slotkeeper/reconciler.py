"""Inbound provider-notification handling and booking reconciliation.

Each notification moves through::

    unverified -> verified -> ignored (sync) | reconciling -> done

Unknown channels and token mismatches stop at ``unverified`` without any
side effect.  Whatever happens, ``handle_notification`` returns normally:
an error surfaced to the provider would only trigger its retry/backoff and
amplify the failure into a notification storm.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from slotkeeper.availability import DEFAULT_PROVIDER_TIMEOUT_SECONDS
from slotkeeper.core.logging import set_user_context
from slotkeeper.core.metrics import core_metrics
from slotkeeper.errors import PreconditionFailedError
from slotkeeper.models import Booking, ProviderCredentials
from slotkeeper.ports import (
    BookingRepository,
    CalendarProvider,
    CalendarWatchRepository,
    UserRepository,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

SYNC_RESOURCE_STATE = "sync"


class NotificationOutcome(StrEnum):
    """Terminal state of one inbound notification."""

    IGNORED_UNKNOWN_CHANNEL = "ignored_unknown_channel"
    IGNORED_INVALID_TOKEN = "ignored_invalid_token"
    IGNORED_SYNC = "ignored_sync"
    RECONCILED = "reconciled"
    FAILED = "failed"


class ReconcileAction(StrEnum):
    DELETED = "deleted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass
class ReconcileSummary:
    user_id: str
    actions: dict[str, ReconcileAction] = field(default_factory=dict)

    def count(self, action: ReconcileAction) -> int:
        return sum(1 for value in self.actions.values() if value == action)


def tokens_match(expected: str, provided: str | None) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


class WebhookReconciler:
    """Authenticates provider notifications and resolves local bookings against the provider."""

    def __init__(
        self,
        watches: CalendarWatchRepository,
        bookings: BookingRepository,
        users: UserRepository,
        provider: CalendarProvider,
        *,
        provider_timeout: float | None = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._watches = watches
        self._bookings = bookings
        self._users = users
        self._provider = provider
        self._provider_timeout = provider_timeout

    async def handle_notification(
        self,
        channel_id: str | None,
        channel_token: str | None,
        resource_state: str | None,
    ) -> NotificationOutcome:
        """Process one notification; never raises."""
        try:
            outcome = await self._handle(channel_id, channel_token, resource_state)
        except Exception as exc:
            logger.error(
                "Notification handling failed for channel %s: %s",
                channel_id,
                exc,
                exc_info=True,
            )
            outcome = NotificationOutcome.FAILED
        core_metrics.notification(outcome.value)
        return outcome

    async def _handle(
        self,
        channel_id: str | None,
        channel_token: str | None,
        resource_state: str | None,
    ) -> NotificationOutcome:
        watch = await self._watches.get_by_channel(channel_id) if channel_id else None
        if watch is None:
            logger.warning("Notification received for unknown channel: %s", channel_id)
            return NotificationOutcome.IGNORED_UNKNOWN_CHANNEL

        if not tokens_match(watch.channel_token, channel_token):
            logger.warning("Invalid channel token for channel %s", channel_id)
            return NotificationOutcome.IGNORED_INVALID_TOKEN

        set_user_context(watch.user_id)
        if (resource_state or "").strip().lower() == SYNC_RESOURCE_STATE:
            logger.info(
                "Sync notification received for channel %s (user %s)",
                channel_id,
                watch.user_id,
            )
            return NotificationOutcome.IGNORED_SYNC

        logger.info(
            "Calendar change detected for user %s, state: %s",
            watch.user_id,
            resource_state,
        )
        await self.reconcile_user(watch.user_id)
        return NotificationOutcome.RECONCILED

    async def reconcile_user(self, user_id: str) -> ReconcileSummary:
        """Bring every linked booking of *user_id* in line with the provider.

        Raises ``PreconditionFailedError`` when the user has no stored
        credential.  Per-booking provider failures are logged and skipped.
        """
        user = await self._users.get(user_id)
        if user is None or not user.refresh_token:
            raise PreconditionFailedError(
                f"No refresh token stored for user {user_id}; cannot reconcile"
            )
        credentials = ProviderCredentials(refresh_token=user.refresh_token)

        summary = ReconcileSummary(user_id=user_id)
        for booking in await self._bookings.list_linked_by_user(user_id):
            try:
                action = await self._reconcile_booking(booking, credentials)
            except Exception as exc:
                action = ReconcileAction.FAILED
                logger.error(
                    "Failed to reconcile booking %s (event %s): %s",
                    booking.id,
                    booking.external_event_id,
                    exc,
                )
            summary.actions[booking.id] = action
            core_metrics.reconcile_action(action.value)

        logger.info(
            "Reconciled user %s: deleted=%d updated=%d unchanged=%d failed=%d",
            user_id,
            summary.count(ReconcileAction.DELETED),
            summary.count(ReconcileAction.UPDATED),
            summary.count(ReconcileAction.UNCHANGED),
            summary.count(ReconcileAction.FAILED),
        )
        return summary

    async def _reconcile_booking(
        self,
        booking: Booking,
        credentials: ProviderCredentials,
    ) -> ReconcileAction:
        if booking.external_event_id is None:
            raise ValueError(f"Booking {booking.id} has no external event to reconcile")
        event = await call_with_timeout(
            self._provider.get_event(credentials, event_id=booking.external_event_id),
            self._provider_timeout,
        )

        if event is None or event.is_cancelled:
            await self._bookings.delete(booking.id)
            logger.info(
                "Booking %s deleted: external event %s was removed",
                booking.id,
                booking.external_event_id,
            )
            return ReconcileAction.DELETED

        if event.start_at != booking.start_at or event.end_at != booking.end_at:
            await self._bookings.update_window(
                booking.id,
                start_at=event.start_at,
                end_at=event.end_at,
            )
            logger.info(
                "Booking %s updated: external event %s moved to %s - %s",
                booking.id,
                booking.external_event_id,
                event.start_at.isoformat(),
                event.end_at.isoformat(),
            )
            return ReconcileAction.UPDATED

        return ReconcileAction.UNCHANGED
