"""CLI for slotkeeper: run the API server and one-shot maintenance jobs."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

import click

from slotkeeper import __version__
from slotkeeper.config import DEFAULT_CONFIG_FILENAME, ConfigError, SlotkeeperConfig, load_config
from slotkeeper.core.logging import configure_logging
from slotkeeper.core.metrics import init_metrics
from slotkeeper.errors import SlotkeeperError
from slotkeeper.service import SlotkeeperService, create_service, open_database

logger = logging.getLogger(__name__)

SERVICE_NAME = "slotkeeper"


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    show_default=True,
    help="Path to slotkeeper.toml (or the directory holding it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Slotkeeper: bookings kept in sync with Google Calendar."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> SlotkeeperConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.file) if config.logging.file else None,
    )
    return config


T = TypeVar("T")


def _run_job(
    config: SlotkeeperConfig,
    job: Callable[[SlotkeeperService], Awaitable[T]],
) -> T:
    async def _main() -> T:
        service = await create_service(config)
        try:
            return await job(service)
        finally:
            await service.shutdown()

    return asyncio.run(_main())


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides [server].host)")
@click.option("--port", type=int, default=None, help="Bind port (overrides [server].port)")
@click.option(
    "--no-renewal",
    is_flag=True,
    default=False,
    help="Do not run the periodic watch renewal loop in this process",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, no_renewal: bool) -> None:
    """Run the HTTP API (and, by default, the watch renewal loop)."""
    import uvicorn

    from slotkeeper.api.app import create_app

    config = _load(ctx)
    init_metrics(SERVICE_NAME)
    app = create_app(config=config, run_renewal=not no_renewal)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    click.echo(f"Slotkeeper listening on {bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


@cli.command("renew-watches")
@click.pass_context
def renew_watches(ctx: click.Context) -> None:
    """Renew every calendar watch expiring within the configured horizon, once."""
    config = _load(ctx)
    _run_job(config, lambda service: service.renewal.renew_expiring_watches())
    click.echo("Watch renewal finished")


@cli.command("sweep-orphans")
@click.option(
    "--grace-minutes",
    type=click.IntRange(min=1),
    default=15,
    show_default=True,
    help="Only remove unlinked bookings older than this",
)
@click.pass_context
def sweep_orphans(ctx: click.Context, grace_minutes: int) -> None:
    """Delete bookings left without a calendar event by an interrupted create."""
    config = _load(ctx)
    removed = _run_job(
        config,
        lambda service: service.bookings.sweep_orphaned_bookings(
            timedelta(minutes=grace_minutes)
        ),
    )
    click.echo(f"Removed {removed} orphaned booking(s)")


@cli.command()
@click.argument("user_id")
@click.pass_context
def reconcile(ctx: click.Context, user_id: str) -> None:
    """Reconcile one user's bookings against their calendar."""
    config = _load(ctx)
    try:
        summary = _run_job(config, lambda service: service.reconciler.reconcile_user(user_id))
    except SlotkeeperError as exc:
        click.echo(f"Reconcile failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Reconciled {len(summary.actions)} booking(s) for {user_id}")


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the PostgreSQL schema if it does not exist."""
    config = _load(ctx)
    if config.database.backend != "postgres":
        click.echo("database.backend is not 'postgres'; nothing to initialize")
        return

    async def _main() -> None:
        database = await open_database(config)
        await database.close()

    asyncio.run(_main())
    click.echo("Database schema ready")
