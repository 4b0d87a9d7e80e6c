"""Slotkeeper API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds the service (when not injected), starts the
  renewal loop, and shuts everything down cleanly
- Health endpoint at GET /api/health
- Booking, calendar-watch, and webhook routers
- Error envelope handlers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from slotkeeper import __version__
from slotkeeper.api.deps import get_service
from slotkeeper.api.middleware import register_error_handlers
from slotkeeper.api.routers.bookings import router as bookings_router
from slotkeeper.api.routers.calendar_watch import router as calendar_watch_router
from slotkeeper.api.routers.webhooks import router as webhooks_router
from slotkeeper.config import SlotkeeperConfig
from slotkeeper.service import SlotkeeperService, create_service

logger = logging.getLogger(__name__)


def wire_service(app: FastAPI, service: SlotkeeperService) -> None:
    app.state.service = service
    app.dependency_overrides[get_service] = lambda: service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the service and its renewal loop."""
    service: SlotkeeperService | None = app.state.service
    owns_service = service is None
    if service is None:
        config: SlotkeeperConfig | None = app.state.config
        if config is None:
            raise RuntimeError("create_app() needs either a service or a config")
        service = await create_service(config)
        wire_service(app, service)

    if app.state.run_renewal:
        service.start_renewal_loop()
        logger.info("Watch renewal loop started")

    yield

    if owns_service:
        await service.shutdown()
    else:
        await service.stop_renewal_loop()


def create_app(
    service: SlotkeeperService | None = None,
    *,
    config: SlotkeeperConfig | None = None,
    run_renewal: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        A pre-built service (tests, embedding).  When omitted, the lifespan
        builds one from *config*.
    config:
        Configuration used to build the service at startup.
    run_renewal:
        Whether the lifespan runs the periodic watch renewal loop.
    """
    app = FastAPI(
        title="Slotkeeper API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.service = None
    app.state.config = config
    app.state.run_renewal = run_renewal
    if service is not None:
        wire_service(app, service)

    register_error_handlers(app)

    app.include_router(bookings_router)
    app.include_router(calendar_watch_router)
    app.include_router(webhooks_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
