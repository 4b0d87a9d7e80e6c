"""Calendar watch endpoints.

Endpoints
---------
POST    /api/calendar/watch/refresh-token
    Store the caller's long-lived provider credential.

POST    /api/calendar/watch
    (Re)create the caller's push subscription (201).  412 when no
    credential is stored.

DELETE  /api/calendar/watch
    Stop the caller's subscription (204).  404 when there is none.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from slotkeeper.api.deps import get_service, get_user_id
from slotkeeper.api.models import ApiResponse, CalendarWatchOut, StoreRefreshTokenRequest
from slotkeeper.service import SlotkeeperService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar/watch", tags=["calendar"])


@router.post("/refresh-token", response_model=ApiResponse[dict])
async def store_refresh_token(
    request: StoreRefreshTokenRequest,
    user_id: str = Depends(get_user_id),
    service: SlotkeeperService = Depends(get_service),
) -> ApiResponse[dict]:
    try:
        await service.watches.store_refresh_token(user_id, request.refresh_token)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return ApiResponse[dict](data={"stored": True})


@router.post("", status_code=201, response_model=ApiResponse[CalendarWatchOut])
async def create_watch(
    user_id: str = Depends(get_user_id),
    service: SlotkeeperService = Depends(get_service),
) -> ApiResponse[CalendarWatchOut]:
    watch = await service.watches.create_watch(user_id)
    return ApiResponse[CalendarWatchOut](data=CalendarWatchOut.from_watch(watch))


@router.delete("", status_code=204)
async def stop_watch(
    user_id: str = Depends(get_user_id),
    service: SlotkeeperService = Depends(get_service),
) -> Response:
    if not await service.watches.stop_watch(user_id):
        raise HTTPException(status_code=404, detail="No calendar watch for this user")
    return Response(status_code=204)
