"""Pydantic request/response models for the HTTP surface.

Provides the generic ``ApiResponse`` wrapper, the error envelope, and the
booking / watch payloads.  Stored secrets (refresh tokens, channel tokens)
never appear in any response model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field, field_validator

from slotkeeper.models import (
    AvailabilityResult,
    Booking,
    CalendarWatch,
    ExternalConflict,
    LocalConflict,
)

TITLE_MIN_LENGTH = 2
TITLE_MAX_LENGTH = 100

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class TimeWindowRequest(BaseModel):
    start_at: datetime
    end_at: datetime


class CreateBookingRequest(TimeWindowRequest):
    title: str

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) < TITLE_MIN_LENGTH:
            raise ValueError(f"title must be at least {TITLE_MIN_LENGTH} characters")
        if len(normalized) > TITLE_MAX_LENGTH:
            raise ValueError(f"title must be at most {TITLE_MAX_LENGTH} characters")
        return normalized


class BookingOut(BaseModel):
    id: str
    title: str
    start_at: datetime
    end_at: datetime
    external_event_id: str | None = None
    created_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> BookingOut:
        return cls(
            id=booking.id,
            title=booking.title,
            start_at=booking.start_at,
            end_at=booking.end_at,
            external_event_id=booking.external_event_id,
            created_at=booking.created_at,
        )


class AvailabilityOut(BaseModel):
    available: bool
    local_conflicts: list[LocalConflict]
    external_conflicts: list[ExternalConflict]

    @classmethod
    def from_result(cls, result: AvailabilityResult) -> AvailabilityOut:
        return cls(
            available=result.available,
            local_conflicts=result.local_conflicts,
            external_conflicts=result.external_conflicts,
        )


# ---------------------------------------------------------------------------
# Calendar watch
# ---------------------------------------------------------------------------


class StoreRefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=1)

    def __repr__(self) -> str:
        return "StoreRefreshTokenRequest(refresh_token=<REDACTED>)"

    __str__ = __repr__


class CalendarWatchOut(BaseModel):
    channel_id: str
    expiration: datetime
    created_at: datetime

    @classmethod
    def from_watch(cls, watch: CalendarWatch) -> CalendarWatchOut:
        return cls(
            channel_id=watch.channel_id,
            expiration=watch.expiration,
            created_at=watch.created_at,
        )
