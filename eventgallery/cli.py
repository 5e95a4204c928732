"""Typer CLI for EventGallery."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from . import crud
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .errors import GalleryError
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="EventGallery command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_read_only(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure the process can write to {settings.database_path} "
            "(run with sudo or adjust file ownership/permissions).",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


def _exit_with_error(exc: GalleryError) -> None:
    typer.secho(exc.reason, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_read_only(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app with uvicorn."""
    init_db()
    config = uvicorn.Config(
        "eventgallery.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventGallery on {host}:{port}")
    server.run()


@app.command("create-user")
def create_user(
    username: str = typer.Argument(..., help="Unique username"),
    full_name: str | None = typer.Option(None, "--full-name", help="Display name"),
) -> None:
    """Create a user and print its API token."""
    try:
        init_db()
        with get_session() as session:
            user = crud.create_user(session, username=username, full_name=full_name)
            token = user.api_token
    except OperationalError as exc:
        _exit_if_read_only(exc, "create the user")
        raise
    except GalleryError as exc:
        _exit_with_error(exc)
    typer.echo(token)


@app.command("rotate-user-token")
def rotate_user_token(
    username: str = typer.Argument(..., help="Username whose token to rotate"),
) -> None:
    """Issue a new API token for a user, invalidating the old one."""
    try:
        init_db()
        with get_session() as session:
            user = crud.get_user_by_username(session, username)
            token = crud.rotate_user_token(session, user)
    except OperationalError as exc:
        _exit_if_read_only(exc, "rotate the token")
        raise
    except GalleryError as exc:
        _exit_with_error(exc)
    typer.echo(token)


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(
        settings.seed_users, "--users", min=1, help="Number of users to create"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    images_per_event: int = typer.Option(
        settings.seed_images_per_event,
        "--images-per-event",
        min=0,
        help="Maximum images to attach to each event",
    ),
    private_percent: int = typer.Option(
        settings.seed_private_percent,
        "--private-percent",
        min=0,
        max=100,
        help="Percentage of events that should be private (0-100)",
    ),
):
    """Populate the database with fake users, events and images for testing."""
    stats = seed_fake_data(
        user_count=users,
        event_count=events,
        max_images_per_event=images_per_event,
        private_percentage=private_percent,
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['events']} events, "
        f"{stats['memberships']} memberships, {stats['images']} images created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to eventgallery.toml (default: ./eventgallery.toml)",
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Event listing page size"
    ),
    images_per_page: int | None = typer.Option(
        None, "--images-per-page", min=1, help="Image listing page size"
    ),
    comments_per_page: int | None = typer.Option(
        None, "--comments-per-page", min=1, help="Comment listing page size"
    ),
    max_per_page: int | None = typer.Option(
        None, "--max-per-page", min=1, help="Largest page size a client may request"
    ),
    search_preview_limit: int | None = typer.Option(
        None,
        "--search-preview-limit",
        min=1,
        help="Rows per section when searching all kinds",
    ),
    exact_capacity: bool | None = typer.Option(
        None,
        "--exact-capacity/--approximate-capacity",
        help="Lock the event row while checking capacity on join",
    ),
    public_base_url: str | None = typer.Option(
        None, "--public-base-url", help="URL prefix for stored images"
    ),
    seed_users: int | None = typer.Option(
        None, "--seed-users", min=1, help="Default seed-data users"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_private_percent: int | None = typer.Option(
        None,
        "--seed-private-percent",
        min=0,
        max=100,
        help="Default percent of private events for seed-data",
    ),
    seed_images_per_event: int | None = typer.Option(
        None, "--seed-images-per-event", min=0, help="Default seed-data images/event"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "app_host": host,
        "app_port": port,
        "events_per_page": events_per_page,
        "images_per_page": images_per_page,
        "comments_per_page": comments_per_page,
        "max_per_page": max_per_page,
        "search_preview_limit": search_preview_limit,
        "exact_capacity": exact_capacity,
        "public_base_url": public_base_url,
        "seed_users": seed_users,
        "seed_events": seed_events,
        "seed_private_percent": seed_private_percent,
        "seed_images_per_event": seed_images_per_event,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
