"""Entry-point for the Little Microphones service."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

import uvicorn
import typer

from little_microphones.bootstrap import initialize_app
from little_microphones.config import ServiceSettings
from little_microphones.errors import LittleMicrophonesError
from little_microphones.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from little_microphones.services.playlist import PlaylistPublisher
from little_microphones.services.storage import LmidRepository
from little_microphones.web import create_app


LOGGER = logging.getLogger("little_microphones.cli")


cli = typer.Typer(add_completion=False, help="Little Microphones management commands")


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LITTLE_MICROPHONES_ROOT_PATH",
    ),
) -> None:
    """Run the HTTP API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = LmidRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(
        repository,
        config=app_config,
        settings=ServiceSettings.from_env(),
        root_path=normalized_root,
    )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Little Microphones on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command("seed-lmids")
def seed_lmids(
    count: int = typer.Option(..., min=1, help="Number of free LMIDs to create"),
    start: Optional[int] = typer.Option(
        None, min=1, help="First LMID to create (defaults to the next unused id)"
    ),
) -> None:
    """Add free LMIDs to the pool."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = LmidRepository(config)
    try:
        created = repository.seed(count, start=start)
    except sqlite3.IntegrityError as error:
        typer.echo(f"Could not seed LMIDs: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Created {len(created)} LMID(s): {created[0]}-{created[-1]}")


@cli.command("pool-status")
def pool_status() -> None:
    """Print how many LMIDs are free and used."""

    config = initialize_app()
    repository = LmidRepository(config)
    counts = repository.status_counts()
    typer.echo(f"free={counts.get('free', 0)} used={counts.get('used', 0)}")


@cli.command("build-playlist")
def build_playlist(
    lmid: int = typer.Option(..., help="LMID the recordings belong to"),
    world: str = typer.Option(..., help="World slug, e.g. spookyland"),
    recordings: Path = typer.Option(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON file mapping question ids to recording filenames",
    ),
) -> None:
    """Print the playlist manifest for a set of recordings."""

    with recordings.open("r", encoding="utf-8") as handle:
        mapping = json.load(handle)

    settings = ServiceSettings.from_env()
    publisher = PlaylistPublisher(None, cdn_url=settings.cdn_url)
    try:
        result = publisher.build(lmid, world, mapping)
    except LittleMicrophonesError as error:
        typer.echo(f"Could not build playlist: {error.message}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(result.manifest, nl=False)


if __name__ == "__main__":
    cli()
