"""Google Calendar adapter for the calendar provider port.

Talks to the Calendar v3 REST API over httpx.  Access tokens are obtained by
exchanging the user's refresh token at Google's OAuth endpoint and cached
per refresh token until shortly before expiry.  Every public operation is
wrapped in ``refresh_and_retry_once``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from slotkeeper.models import (
    ExternalConflict,
    ExternalEvent,
    ExternalEventStatus,
    ProviderCredentials,
    WatchRegistration,
    ensure_utc,
)
from slotkeeper.ports import CalendarProvider
from slotkeeper.providers.auth_retry import (
    CalendarProviderError,
    ProviderAuthError,
    ProviderRequestError,
    TokenRefreshError,
    refresh_and_retry_once,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
UNTITLED_EVENT = "(No title)"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
# 403s with these reasons are quota problems, not credential problems.
RATE_LIMIT_403_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
GONE_STATUS_CODES = {404, 410}
# Google caps web_hook channels at one week.
DEFAULT_WATCH_TTL = timedelta(days=7)


class GoogleOAuthApp(BaseModel):
    """OAuth client identity used for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return f"GoogleOAuthApp(client_id={self.client_id!r}, client_secret=<REDACTED>)"

    __str__ = __repr__


class GoogleOAuthClient:
    """Refresh-token exchange with per-credential access-token caching."""

    def __init__(self, app: GoogleOAuthApp, http_client: httpx.AsyncClient) -> None:
        self._app = app
        self._http_client = http_client
        self._tokens: dict[str, tuple[str, datetime]] = {}
        self._refresh_lock = asyncio.Lock()

    @staticmethod
    def _cache_key(refresh_token: str) -> str:
        return hashlib.sha256(refresh_token.encode()).hexdigest()

    def _cached(self, key: str) -> str | None:
        entry = self._tokens.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if datetime.now(UTC) >= expires_at:
            return None
        return token

    async def get_access_token(self, refresh_token: str, *, force_refresh: bool = False) -> str:
        key = self._cache_key(refresh_token)
        if not force_refresh and (token := self._cached(key)) is not None:
            return token

        async with self._refresh_lock:
            if not force_refresh and (token := self._cached(key)) is not None:
                return token
            token, expires_at = await self._exchange(refresh_token)
            self._tokens[key] = (token, expires_at)
            return token

    async def _exchange(self, refresh_token: str) -> tuple[str, datetime]:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._app.client_id,
                    "client_secret": self._app.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)
        return access_token.strip(), datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _google_error_payload(response: httpx.Response) -> Any:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload.get("error") if isinstance(payload, dict) else None


def _safe_google_error_message(response: httpx.Response) -> str:
    error_payload = _google_error_payload(response)
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return sanitize_error_message(message)
    if isinstance(error_payload, str) and error_payload.strip():
        return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _google_error_reasons(response: httpx.Response) -> set[str]:
    error_payload = _google_error_payload(response)
    if not isinstance(error_payload, dict):
        return set()
    errors = error_payload.get("errors")
    if not isinstance(errors, list):
        return set()
    return {
        str(item["reason"]) for item in errors if isinstance(item, dict) and item.get("reason")
    }


def is_auth_failure_response(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    if response.status_code == 403:
        return not (_google_error_reasons(response) & RATE_LIMIT_403_REASONS)
    return False


def _google_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise CalendarProviderError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return ensure_utc(parsed)


def _parse_event_boundary(payload: Any) -> datetime | None:
    """Read ``{"dateTime": ...}`` or all-day ``{"date": ...}`` as a UTC instant."""
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)
    day = payload.get("date")
    if isinstance(day, str) and day.strip():
        try:
            parsed = date.fromisoformat(day.strip())
        except ValueError as exc:
            raise CalendarProviderError(f"Google Calendar returned an invalid date: {day}") from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
    return None


def _parse_event_status(value: Any) -> ExternalEventStatus:
    if isinstance(value, str):
        try:
            return ExternalEventStatus(value.strip().lower())
        except ValueError:
            pass
    return ExternalEventStatus.CONFIRMED


def _event_title(payload: dict[str, Any]) -> str:
    summary = payload.get("summary")
    if isinstance(summary, str) and summary.strip():
        return summary.strip()
    return UNTITLED_EVENT


def _google_event_to_external_event(payload: dict[str, Any]) -> ExternalEvent | None:
    event_id = payload.get("id")
    start_at = _parse_event_boundary(payload.get("start"))
    end_at = _parse_event_boundary(payload.get("end"))
    if not isinstance(event_id, str) or start_at is None or end_at is None:
        return None
    return ExternalEvent(
        id=event_id,
        title=_event_title(payload),
        status=_parse_event_status(payload.get("status")),
        start_at=start_at,
        end_at=end_at,
    )


def _parse_watch_expiration(value: Any) -> datetime:
    """Google reports channel expiration as epoch milliseconds (string or int)."""
    if isinstance(value, bool):
        value = None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int | float) and value > 0:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    return datetime.now(UTC) + DEFAULT_WATCH_TTL


class GoogleCalendarProvider(CalendarProvider):
    """Calendar v3 adapter authenticated with per-user refresh tokens."""

    def __init__(
        self,
        app: GoogleOAuthApp,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        rate_limit_backoff_seconds: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
    ) -> None:
        self._calendar_id = calendar_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._oauth = GoogleOAuthClient(app, self._http_client)
        self._rate_limit_backoff_seconds = rate_limit_backoff_seconds

    @property
    def name(self) -> str:
        return "google"

    @property
    def _calendar_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}"

    async def refresh_credentials(self, credentials: ProviderCredentials) -> ProviderCredentials:
        access_token = await self._oauth.get_access_token(
            credentials.refresh_token, force_refresh=True
        )
        return credentials.model_copy(update={"access_token": access_token})

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        credentials: ProviderCredentials,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request, retrying 429/503 with backoff.

        Raises ``ProviderAuthError`` when the token is rejected so the
        decorator can refresh and retry.
        """
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        access_token = credentials.access_token or await self._oauth.get_access_token(
            credentials.refresh_token
        )

        response = await self._send(method, url, access_token, params, json_body)
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = self._rate_limit_backoff_seconds * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send(method, url, access_token, params, json_body)
            retry += 1

        if is_auth_failure_response(response):
            raise ProviderAuthError(
                f"Google Calendar rejected credentials ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarProviderError(f"Google Calendar request failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

    @staticmethod
    def _json_object(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                f"Google Calendar API returned invalid JSON for {operation}"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarProviderError(
                f"Google Calendar API returned an unexpected {operation} payload"
            )
        return payload

    # ------------------------------------------------------------------
    # Port operations
    # ------------------------------------------------------------------

    @refresh_and_retry_once
    async def find_conflicts(
        self,
        credentials: ProviderCredentials,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> list[ExternalConflict]:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(start_at),
            "timeMax": _google_rfc3339(end_at),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": 250,
        }
        conflicts: list[ExternalConflict] = []
        while True:
            response = await self._request(
                credentials, "GET", f"{self._calendar_path}/events", params=params
            )
            self._raise_for_status(response)
            payload = self._json_object(response, "list_events")
            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarProviderError("Google Calendar list response missing items array")

            for item in items:
                if not isinstance(item, dict):
                    continue
                event = _google_event_to_external_event(item)
                if event is None or event.is_cancelled:
                    continue
                conflicts.append(
                    ExternalConflict(
                        id=event.id,
                        title=event.title,
                        start_at=event.start_at,
                        end_at=event.end_at,
                    )
                )

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return conflicts
            params = {**params, "pageToken": page_token}

    @refresh_and_retry_once
    async def create_event(
        self,
        credentials: ProviderCredentials,
        *,
        title: str,
        start_at: datetime,
        end_at: datetime,
        description: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "summary": title,
            "start": {"dateTime": _google_rfc3339(start_at)},
            "end": {"dateTime": _google_rfc3339(end_at)},
        }
        if description:
            body["description"] = description

        response = await self._request(
            credentials, "POST", f"{self._calendar_path}/events", json_body=body
        )
        self._raise_for_status(response)
        event_id = self._json_object(response, "create_event").get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarProviderError(
                "Google Calendar did not return an event ID after creation"
            )
        logger.info("Google Calendar event created: %s", event_id)
        return event_id

    @refresh_and_retry_once
    async def delete_event(self, credentials: ProviderCredentials, *, event_id: str) -> None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request(
            credentials,
            "DELETE",
            f"{self._calendar_path}/events/{quote(normalized_event_id, safe='')}",
        )
        # Already gone counts as deleted.
        if response.status_code in GONE_STATUS_CODES:
            logger.debug("delete_event: event '%s' already deleted", normalized_event_id)
            return
        self._raise_for_status(response)
        logger.info("Google Calendar event deleted: %s", normalized_event_id)

    @refresh_and_retry_once
    async def get_event(
        self,
        credentials: ProviderCredentials,
        *,
        event_id: str,
    ) -> ExternalEvent | None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request(
            credentials,
            "GET",
            f"{self._calendar_path}/events/{quote(normalized_event_id, safe='')}",
        )
        if response.status_code in GONE_STATUS_CODES:
            return None
        self._raise_for_status(response)

        payload = self._json_object(response, "get_event")
        event = _google_event_to_external_event(payload)
        if event is None:
            if _parse_event_status(payload.get("status")) == ExternalEventStatus.CANCELLED:
                # Cancelled events can come back without start/end.
                return ExternalEvent(
                    id=normalized_event_id,
                    title=_event_title(payload),
                    status=ExternalEventStatus.CANCELLED,
                    start_at=datetime.fromtimestamp(0, tz=UTC),
                    end_at=datetime.fromtimestamp(1, tz=UTC),
                )
            raise CalendarProviderError(
                f"Google Calendar event {normalized_event_id} has no usable start/end"
            )
        return event

    @refresh_and_retry_once
    async def subscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        channel_token: str,
        callback_url: str,
    ) -> WatchRegistration:
        response = await self._request(
            credentials,
            "POST",
            f"{self._calendar_path}/events/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": callback_url,
                "token": channel_token,
            },
        )
        self._raise_for_status(response)
        payload = self._json_object(response, "watch")

        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id:
            raise CalendarProviderError("Google Calendar watch response missing resourceId")
        returned_channel_id = payload.get("id")
        registration = WatchRegistration(
            channel_id=returned_channel_id if isinstance(returned_channel_id, str) else channel_id,
            resource_id=resource_id,
            expiration=_parse_watch_expiration(payload.get("expiration")),
        )
        logger.info(
            "Watch created: channel=%s, expires=%s",
            registration.channel_id,
            registration.expiration.isoformat(),
        )
        return registration

    @refresh_and_retry_once
    async def unsubscribe(
        self,
        credentials: ProviderCredentials,
        *,
        channel_id: str,
        resource_id: str,
    ) -> None:
        response = await self._request(
            credentials,
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code in GONE_STATUS_CODES:
            logger.debug("unsubscribe: channel '%s' already stopped", channel_id)
            return
        self._raise_for_status(response)
        logger.info("Watch stopped: channel=%s", channel_id)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
