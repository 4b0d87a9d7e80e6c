"""Error envelope and status mapping shared by every endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from slotkeeper.api.middleware import status_for
from slotkeeper.errors import (
    ConflictError,
    ForbiddenError,
    InvalidRangeError,
    NotFoundError,
    PastWindowError,
    PreconditionFailedError,
    ProviderUnavailableError,
    SlotkeeperError,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (InvalidRangeError("x"), 400),
        (PastWindowError("x"), 400),
        (ForbiddenError("x"), 403),
        (NotFoundError("x"), 404),
        (ConflictError("x"), 409),
        (PreconditionFailedError("x"), 412),
        (ProviderUnavailableError("x"), 503),
        (SlotkeeperError("x"), 500),
    ],
)
def test_status_for(error, status):
    assert status_for(error) == status


async def test_health(client):
    resp = await client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_unknown_route_uses_envelope(client):
    resp = await client.get("/api/nothing-here")

    assert resp.status_code == 404
    assert resp.json() == {
        "error": {"code": "NOT_FOUND", "message": "Not Found", "retryable": False}
    }


async def test_wrong_method_uses_envelope(client):
    resp = await client.put("/api/health")

    assert resp.status_code == 405
    assert resp.json()["error"]["code"] == "METHOD_NOT_ALLOWED"


async def test_malformed_body_is_422(client):
    resp = await client.post(
        "/api/bookings/check",
        json={"start_at": "not-a-date"},
        headers={"X-User-Id": "erin", "X-Calendar-Refresh-Token": "rt"},
    )

    assert resp.status_code == 422
    body = resp.json()["error"]
    assert body["code"] == "VALIDATION_ERROR"
    assert "start_at" in body["message"]


async def test_unhandled_exception_becomes_500_envelope(client, service, monkeypatch):
    monkeypatch.setattr(
        service.bookings, "list_user_bookings", AsyncMock(side_effect=RuntimeError("kaboom"))
    )

    resp = await client.get("/api/bookings", headers={"X-User-Id": "erin"})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "INTERNAL_ERROR"
    assert "kaboom" not in resp.text


async def test_error_message_carries_conflicting_title(client):
    headers = {"X-User-Id": "erin", "X-Calendar-Refresh-Token": "rt"}
    payload = {
        "title": "Yoga",
        "start_at": "2030-07-01T08:00:00Z",
        "end_at": "2030-07-01T09:00:00Z",
    }
    await client.post("/api/bookings", json=payload, headers=headers)

    resp = await client.post("/api/bookings", json=payload, headers=headers)

    assert resp.status_code == 409
    assert "Yoga" in resp.json()["error"]["message"]
