"""Tests for the refresh-and-retry-once decorator and adapter error helpers."""

from __future__ import annotations

import pytest

from slotkeeper.errors import ProviderUnavailableError
from slotkeeper.models import ProviderCredentials
from slotkeeper.providers.auth_retry import (
    CalendarProviderError,
    ProviderAuthError,
    ProviderRequestError,
    TokenRefreshError,
    refresh_and_retry_once,
    sanitize_error_message,
)

pytestmark = pytest.mark.unit


class _ScriptedAdapter:
    """Fails with the queued errors, then returns the access token it was called with."""

    def __init__(self, errors: list[Exception], *, refresh_error: Exception | None = None):
        self.errors = list(errors)
        self.refresh_error = refresh_error
        self.refresh_calls = 0
        self.seen_tokens: list[str | None] = []

    async def refresh_credentials(self, credentials: ProviderCredentials) -> ProviderCredentials:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return credentials.model_copy(update={"access_token": f"fresh-{self.refresh_calls}"})

    @refresh_and_retry_once
    async def fetch(self, credentials: ProviderCredentials, *, label: str) -> str:
        self.seen_tokens.append(credentials.access_token)
        if self.errors:
            raise self.errors.pop(0)
        return f"{label}:{credentials.access_token}"


@pytest.fixture
def stale() -> ProviderCredentials:
    return ProviderCredentials(refresh_token="rt", access_token="stale")


class TestRefreshAndRetryOnce:
    async def test_success_needs_no_refresh(self, stale):
        adapter = _ScriptedAdapter([])

        assert await adapter.fetch(stale, label="ok") == "ok:stale"
        assert adapter.refresh_calls == 0

    async def test_auth_failure_refreshes_and_retries_once(self, stale):
        adapter = _ScriptedAdapter([ProviderAuthError("401 expired")])

        result = await adapter.fetch(stale, label="ok")

        assert result == "ok:fresh-1"
        assert adapter.refresh_calls == 1
        assert adapter.seen_tokens == ["stale", "fresh-1"]

    async def test_second_auth_failure_surfaces_as_unavailable(self, stale):
        adapter = _ScriptedAdapter([ProviderAuthError("401"), ProviderAuthError("401 again")])

        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch(stale, label="x")
        assert adapter.refresh_calls == 1
        assert len(adapter.seen_tokens) == 2

    async def test_refresh_failure_surfaces_as_unavailable(self, stale):
        adapter = _ScriptedAdapter(
            [ProviderAuthError("401")], refresh_error=TokenRefreshError("invalid_grant")
        )

        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch(stale, label="x")
        assert len(adapter.seen_tokens) == 1

    async def test_non_auth_error_is_not_retried(self, stale):
        adapter = _ScriptedAdapter([ProviderRequestError(status_code=500, message="oops")])

        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch(stale, label="x")
        assert adapter.refresh_calls == 0

    async def test_token_exchange_failure_from_call_is_not_retried(self, stale):
        adapter = _ScriptedAdapter([TokenRefreshError("invalid_grant")])

        with pytest.raises(ProviderUnavailableError):
            await adapter.fetch(stale, label="x")
        assert adapter.refresh_calls == 0
        assert adapter.seen_tokens == ["stale"]

    async def test_unrelated_exceptions_pass_through(self, stale):
        adapter = _ScriptedAdapter([ValueError("bad argument")])

        with pytest.raises(ValueError):
            await adapter.fetch(stale, label="x")

    def test_wrapper_keeps_method_name(self):
        assert _ScriptedAdapter.fetch.__name__ == "fetch"


class TestErrors:
    def test_request_error_carries_status_and_message(self):
        err = ProviderRequestError(status_code=404, message="Not Found")
        assert isinstance(err, CalendarProviderError)
        assert err.status_code == 404
        assert "404" in str(err)

    def test_adapter_errors_are_runtime_errors(self):
        assert issubclass(CalendarProviderError, RuntimeError)
        assert issubclass(ProviderAuthError, CalendarProviderError)
        assert issubclass(TokenRefreshError, CalendarProviderError)
        assert not issubclass(TokenRefreshError, ProviderAuthError)


class TestSanitizeErrorMessage:
    def test_redacts_credential_pairs(self):
        message = sanitize_error_message("failed refresh_token=abc123 client_secret: s3cr3t")
        assert "abc123" not in message
        assert "s3cr3t" not in message
        assert "[REDACTED]" in message

    def test_collapses_whitespace(self):
        assert sanitize_error_message("a   b\n\nc") == "a b c"

    def test_truncates_to_200_chars(self):
        assert len(sanitize_error_message("x" * 500)) == 200
