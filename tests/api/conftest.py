"""Fixtures for HTTP-level tests: an in-memory service behind an ASGI client."""

from __future__ import annotations

import httpx
import pytest

from slotkeeper.api.app import create_app
from slotkeeper.config import parse_config
from slotkeeper.service import build_service, memory_repositories


@pytest.fixture
def config():
    return parse_config(
        {
            "google": {"client_id": "cid", "client_secret": "csecret"},
            "webhook": {"base_url": "https://hooks.example.com"},
            "database": {"backend": "memory"},
        }
    )


@pytest.fixture
def service(config, provider):
    return build_service(config, memory_repositories(), provider=provider)


@pytest.fixture
def app(service):
    return create_app(service, run_renewal=False)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
