"""Adapter-level error types and the refresh-and-retry-once decorator.

Provider adapters raise ``CalendarProviderError`` subclasses.  Methods wrapped
with ``refresh_and_retry_once`` take a ``ProviderCredentials`` as their first
positional argument.  When the first attempt fails with
``ProviderAuthError``, the adapter's ``refresh_credentials`` is awaited once
and the call is retried once with the fresh credential.  Any adapter error
that escapes is re-raised as ``ProviderUnavailableError``.
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Concatenate, ParamSpec, Protocol, TypeVar

from slotkeeper.errors import ProviderUnavailableError
from slotkeeper.models import ProviderCredentials

logger = logging.getLogger(__name__)


class CalendarProviderError(RuntimeError):
    """Base error raised by calendar provider adapters."""


class ProviderAuthError(CalendarProviderError):
    """Raised when the provider rejects the access credential (401/403)."""


class TokenRefreshError(CalendarProviderError):
    """Raised when exchanging the refresh credential for an access token fails."""


class ProviderRequestError(CalendarProviderError):
    """Raised when a provider request fails with a non-auth status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar provider request failed ({status_code}): {message}")


_REDACT_PATTERNS = (
    re.compile(r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)"),
)


def sanitize_error_message(message: str) -> str:
    """Redact credential values, collapse whitespace, and cap at 200 chars."""
    redacted = message
    for pattern in _REDACT_PATTERNS:
        redacted = pattern.sub(lambda m: f"{m.group(1)}=[REDACTED]", redacted)
    return " ".join(redacted.split())[:200]


class CredentialRefresher(Protocol):
    async def refresh_credentials(
        self, credentials: ProviderCredentials
    ) -> ProviderCredentials: ...


S = TypeVar("S", bound=CredentialRefresher)
P = ParamSpec("P")
R = TypeVar("R")


def refresh_and_retry_once(
    method: Callable[Concatenate[S, ProviderCredentials, P], Awaitable[R]],
) -> Callable[Concatenate[S, ProviderCredentials, P], Awaitable[R]]:
    """Retry *method* once with refreshed credentials after an auth failure."""

    @functools.wraps(method)
    async def wrapper(
        self: S,
        credentials: ProviderCredentials,
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> R:
        name = method.__name__
        try:
            return await method(self, credentials, *args, **kwargs)
        except ProviderAuthError as exc:
            logger.warning(
                "%s: provider rejected the access token (%s); refreshing and retrying once",
                name,
                sanitize_error_message(str(exc)),
            )
        except CalendarProviderError as exc:
            raise _unavailable(name, exc) from exc

        try:
            refreshed = await self.refresh_credentials(credentials)
            return await method(self, refreshed, *args, **kwargs)
        except CalendarProviderError as exc:
            raise _unavailable(name, exc) from exc

    return wrapper


def _unavailable(operation: str, exc: Exception) -> ProviderUnavailableError:
    detail = sanitize_error_message(str(exc))
    logger.error("Calendar provider %s failed: %s", operation, detail)
    return ProviderUnavailableError(f"Calendar provider {operation} failed: {detail}")

