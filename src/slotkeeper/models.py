"""Domain values shared by the availability, booking, watch, and webhook flows."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Booking(BaseModel):
    """A reserved half-open window ``[start_at, end_at)`` owned by one user.

    Only ``external_event_id`` and the window change after creation; both
    are replaced through ``model_copy`` by the persistence layer.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    start_at: datetime
    end_at: datetime
    user_id: str
    external_event_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_at", "end_at", "created_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _validate_window(self) -> Booking:
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        return self

    def overlaps(self, start_at: datetime, end_at: datetime) -> bool:
        return self.start_at < ensure_utc(end_at) and self.end_at > ensure_utc(start_at)

    def conflicts_with(self, other: Booking) -> bool:
        """Half-open overlap between two bookings; a booking never conflicts with itself."""
        if other.id == self.id:
            return False
        return self.overlaps(other.start_at, other.end_at)

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id


class CalendarWatch(BaseModel):
    """A push-notification subscription on a user's external calendar."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    channel_id: str
    resource_id: str
    channel_token: str
    expiration: datetime
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("expiration", "created_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expiration < (now or utcnow())

    def is_expiring_within(self, horizon: timedelta, now: datetime | None = None) -> bool:
        return self.expiration < (now or utcnow()) + horizon

    def __repr__(self) -> str:
        return (
            f"CalendarWatch(user_id={self.user_id!r}, channel_id={self.channel_id!r}, "
            f"channel_token=<REDACTED>, expiration={self.expiration.isoformat()!r})"
        )

    __str__ = __repr__


class User(BaseModel):
    """The subset of a user record the core reads."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None
    refresh_token: str | None = None

    def __repr__(self) -> str:
        token_state = "<REDACTED>" if self.refresh_token else None
        return f"User(id={self.id!r}, email={self.email!r}, refresh_token={token_state})"

    __str__ = __repr__


class ProviderCredentials(BaseModel):
    """OAuth credentials used for one provider call.

    ``access_token`` is the short-lived token (optional: one is obtained
    from ``refresh_token`` when absent or rejected).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    refresh_token: str = Field(min_length=1)
    access_token: str | None = None

    @field_validator("refresh_token")
    @classmethod
    def _normalize_refresh_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("refresh_token must be a non-empty string")
        return normalized

    @field_validator("access_token")
    @classmethod
    def _normalize_access_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def __repr__(self) -> str:
        access_state = "<REDACTED>" if self.access_token else None
        return f"ProviderCredentials(refresh_token=<REDACTED>, access_token={access_state})"

    __str__ = __repr__


class ExternalEventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class ExternalConflict(BaseModel):
    """An external event overlapping a requested window."""

    id: str
    title: str
    start_at: datetime
    end_at: datetime


class ExternalEvent(BaseModel):
    """Current provider-side view of one event."""

    id: str
    title: str
    status: ExternalEventStatus = ExternalEventStatus.CONFIRMED
    start_at: datetime
    end_at: datetime

    @property
    def is_cancelled(self) -> bool:
        return self.status == ExternalEventStatus.CANCELLED


class WatchRegistration(BaseModel):
    """What the provider returns when a subscription is registered."""

    channel_id: str
    resource_id: str
    expiration: datetime


class LocalConflict(BaseModel):
    id: str
    title: str
    start_at: datetime
    end_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> LocalConflict:
        return cls(
            id=booking.id,
            title=booking.title,
            start_at=booking.start_at,
            end_at=booking.end_at,
        )


class AvailabilityResult(BaseModel):
    available: bool
    local_conflicts: list[LocalConflict] = Field(default_factory=list)
    external_conflicts: list[ExternalConflict] = Field(default_factory=list)
