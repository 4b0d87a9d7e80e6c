"""Push-notification subscription lifecycle for users' external calendars."""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime

from slotkeeper.availability import DEFAULT_PROVIDER_TIMEOUT_SECONDS
from slotkeeper.core.logging import set_user_context
from slotkeeper.errors import PreconditionFailedError, ProviderUnavailableError
from slotkeeper.models import CalendarWatch, ProviderCredentials, User, utcnow
from slotkeeper.ports import (
    CalendarProvider,
    CalendarWatchRepository,
    UserRepository,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/google-calendar"


def build_callback_url(webhook_base_url: str) -> str:
    return f"{webhook_base_url.rstrip('/')}{WEBHOOK_PATH}"


def new_channel_id() -> str:
    return str(uuid.uuid4())


def new_channel_token() -> str:
    return secrets.token_urlsafe(32)


class WatchLifecycleManager:
    """Creates, replaces, and stops one watch per user."""

    def __init__(
        self,
        watches: CalendarWatchRepository,
        users: UserRepository,
        provider: CalendarProvider,
        *,
        callback_url: str,
        provider_timeout: float | None = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._watches = watches
        self._users = users
        self._provider = provider
        self._callback_url = callback_url
        self._provider_timeout = provider_timeout
        self._clock = clock

    async def store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        """Persist the long-lived credential that watch creation requires."""
        normalized = refresh_token.strip()
        if not normalized:
            raise ValueError("refresh_token must be a non-empty string")
        await self._users.store_refresh_token(user_id, normalized)
        logger.info("Stored provider refresh credential for user %s", user_id)

    async def _require_credentials(self, user_id: str) -> tuple[User, ProviderCredentials]:
        user = await self._users.get(user_id)
        if user is None or not user.refresh_token:
            raise PreconditionFailedError(
                "Provider refresh token not stored. "
                "Store it via POST /api/calendar/watch/refresh-token first."
            )
        return user, ProviderCredentials(refresh_token=user.refresh_token)

    async def create_watch(self, user_id: str) -> CalendarWatch:
        """(Re)establish the user's subscription; always leaves exactly one watch row."""
        set_user_context(user_id)
        _, credentials = await self._require_credentials(user_id)

        existing = await self._watches.get_by_user(user_id)
        if existing is not None and not existing.is_expired(self._clock()):
            await self._stop_quietly(existing, credentials)

        channel_id = new_channel_id()
        channel_token = new_channel_token()
        try:
            registration = await call_with_timeout(
                self._provider.subscribe(
                    credentials,
                    channel_id=channel_id,
                    channel_token=channel_token,
                    callback_url=self._callback_url,
                ),
                self._provider_timeout,
            )
        except ProviderUnavailableError:
            raise
        except Exception as exc:
            raise ProviderUnavailableError(
                "Failed to register a calendar watch with the provider"
            ) from exc

        watch = await self._watches.upsert(
            user_id=user_id,
            channel_id=registration.channel_id,
            resource_id=registration.resource_id,
            channel_token=channel_token,
            expiration=registration.expiration,
        )
        logger.info(
            "Calendar watch created for user %s, expires %s",
            user_id,
            watch.expiration.isoformat(),
        )
        return watch

    async def stop_watch(self, user_id: str) -> bool:
        """Stop the user's subscription at the provider (best-effort) and drop the row."""
        set_user_context(user_id)
        existing = await self._watches.get_by_user(user_id)
        if existing is None:
            return False
        user = await self._users.get(user_id)
        if user is not None and user.refresh_token and not existing.is_expired(self._clock()):
            await self._stop_quietly(
                existing, ProviderCredentials(refresh_token=user.refresh_token)
            )
        return await self._watches.delete_by_user(user_id)

    async def _stop_quietly(
        self,
        watch: CalendarWatch,
        credentials: ProviderCredentials,
    ) -> None:
        # An orphaned subscription simply expires at the provider.
        try:
            await call_with_timeout(
                self._provider.unsubscribe(
                    credentials,
                    channel_id=watch.channel_id,
                    resource_id=watch.resource_id,
                ),
                self._provider_timeout,
            )
            logger.info("Stopped calendar watch %s", watch.channel_id)
        except Exception as exc:
            logger.warning("Failed to stop existing watch %s: %s", watch.channel_id, exc)
