"""FastAPI dependencies: service access, caller identity, and per-request credentials.

``get_service`` is a stub that ``create_app`` overrides with the running
``SlotkeeperService`` (tests override it the same way).
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException
from pydantic import ValidationError

from slotkeeper.core.logging import set_user_context
from slotkeeper.models import ProviderCredentials
from slotkeeper.service import SlotkeeperService

USER_ID_HEADER = "X-User-Id"
REFRESH_TOKEN_HEADER = "X-Calendar-Refresh-Token"
ACCESS_TOKEN_HEADER = "X-Calendar-Access-Token"


def get_service() -> SlotkeeperService:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("SlotkeeperService not initialized")


async def get_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """Caller identity as established by the upstream auth layer.

    Async so the user context it sets is visible to the endpoint.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    set_user_context(user_id)
    return user_id


async def get_credentials(
    refresh_token: str | None = Header(default=None, alias=REFRESH_TOKEN_HEADER),
    access_token: str | None = Header(default=None, alias=ACCESS_TOKEN_HEADER),
    _user_id: str = Depends(get_user_id),
) -> ProviderCredentials:
    """Provider credentials supplied with the request."""
    try:
        return ProviderCredentials(refresh_token=refresh_token or "", access_token=access_token)
    except ValidationError as exc:
        raise HTTPException(
            status_code=401,
            detail=f"Missing or empty {REFRESH_TOKEN_HEADER} header",
        ) from exc
