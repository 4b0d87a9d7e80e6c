"""Inbound Google Calendar push notifications.

The endpoint always answers 200: the outcome of a notification is recorded
in logs and metrics, never in the status code, so the provider does not
start retrying.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header

from slotkeeper.api.deps import get_service
from slotkeeper.service import SlotkeeperService
from slotkeeper.watches import WEBHOOK_PATH

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post(WEBHOOK_PATH)
async def google_calendar_notification(
    x_goog_channel_id: str | None = Header(default=None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str | None = Header(default=None, alias="X-Goog-Channel-Token"),
    x_goog_resource_state: str | None = Header(default=None, alias="X-Goog-Resource-State"),
    service: SlotkeeperService = Depends(get_service),
) -> dict:
    outcome = await service.reconciler.handle_notification(
        x_goog_channel_id, x_goog_channel_token, x_goog_resource_state
    )
    logger.debug("Notification for channel %s: %s", x_goog_channel_id, outcome)
    return {"status": "ok"}
