"""Error taxonomy for booking, watch, and reconciliation operations.

Every error raised across the core boundary derives from
``SlotkeeperError`` and carries a stable ``code`` used by the HTTP layer
and a ``retryable`` flag:

- ``InvalidRangeError`` / ``PastWindowError``: client input, never retried.
- ``NotFoundError`` / ``ForbiddenError``: authorization-scoped, never retried.
- ``ConflictError``: the requested window collides; pick another one.
- ``ProviderUnavailableError``: transient external failure, retryable.
- ``PreconditionFailedError``: missing stored credential, retryable only
  after the caller stores one.
"""

from __future__ import annotations


class SlotkeeperError(RuntimeError):
    """Base error for all core operations."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False


class InvalidRangeError(SlotkeeperError):
    """Raised when a window's start is not strictly before its end."""

    code = "INVALID_RANGE"


class PastWindowError(SlotkeeperError):
    """Raised when a window starts before the current instant."""

    code = "PAST_WINDOW"


class NotFoundError(SlotkeeperError):
    """Raised when a booking does not exist."""

    code = "NOT_FOUND"


class ForbiddenError(SlotkeeperError):
    """Raised when the caller does not own the booking."""

    code = "FORBIDDEN"


class ConflictError(SlotkeeperError):
    """Raised when the requested window overlaps a local or external event."""

    code = "CONFLICT"

    def __init__(self, message: str, *, conflicting_title: str | None = None) -> None:
        self.conflicting_title = conflicting_title
        super().__init__(message)


class ProviderUnavailableError(SlotkeeperError):
    """Raised when the external calendar provider cannot answer."""

    code = "PROVIDER_UNAVAILABLE"
    retryable = True


class PreconditionFailedError(SlotkeeperError):
    """Raised when a user has no stored long-lived provider credential."""

    code = "PRECONDITION_FAILED"
