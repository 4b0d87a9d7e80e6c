"""Booking endpoints.

Endpoints
---------
POST    /api/bookings/check
    Availability of a window against local bookings and the external calendar.

POST    /api/bookings
    Create a booking mirrored into the external calendar (201).

GET     /api/bookings
    The caller's bookings, soonest first.

DELETE  /api/bookings/{booking_id}
    Cancel a booking owned by the caller (204).

Check, create and cancel read the provider credential from the
``X-Calendar-Refresh-Token`` / ``X-Calendar-Access-Token`` headers.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response

from slotkeeper.api.deps import get_credentials, get_service, get_user_id
from slotkeeper.api.models import (
    ApiResponse,
    AvailabilityOut,
    BookingOut,
    CreateBookingRequest,
    TimeWindowRequest,
)
from slotkeeper.models import ProviderCredentials
from slotkeeper.service import SlotkeeperService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


@router.post("/check", response_model=ApiResponse[AvailabilityOut])
async def check_availability(
    request: TimeWindowRequest,
    user_id: str = Depends(get_user_id),
    credentials: ProviderCredentials = Depends(get_credentials),
    service: SlotkeeperService = Depends(get_service),
) -> ApiResponse[AvailabilityOut]:
    result = await service.availability.check(
        user_id, request.start_at, request.end_at, credentials
    )
    return ApiResponse[AvailabilityOut](data=AvailabilityOut.from_result(result))


@router.post("", status_code=201, response_model=ApiResponse[BookingOut])
async def create_booking(
    request: CreateBookingRequest,
    user_id: str = Depends(get_user_id),
    credentials: ProviderCredentials = Depends(get_credentials),
    service: SlotkeeperService = Depends(get_service),
) -> ApiResponse[BookingOut]:
    """Create a booking; 409 on conflict, 503 when the calendar write fails."""
    booking = await service.bookings.create(
        user_id, request.title, request.start_at, request.end_at, credentials
    )
    return ApiResponse[BookingOut](data=BookingOut.from_booking(booking))


@router.get("", response_model=ApiResponse[list[BookingOut]])
async def list_bookings(
    user_id: str = Depends(get_user_id),
    service: SlotkeeperService = Depends(get_service),
) -> ApiResponse[list[BookingOut]]:
    bookings = await service.bookings.list_user_bookings(user_id)
    return ApiResponse[list[BookingOut]](data=[BookingOut.from_booking(b) for b in bookings])


@router.delete("/{booking_id}", status_code=204)
async def cancel_booking(
    booking_id: str,
    user_id: str = Depends(get_user_id),
    credentials: ProviderCredentials = Depends(get_credentials),
    service: SlotkeeperService = Depends(get_service),
) -> Response:
    await service.bookings.cancel(user_id, booking_id, credentials)
    return Response(status_code=204)
