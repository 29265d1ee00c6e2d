"""Typer CLI for campuscal."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .approvals import find_incomplete_submissions, repair_incomplete_submissions
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .errors import CalendarError
from .recurrence import default_engine
from .seed import seed_fake_data
from .service import get_event, get_events_in_range
from .storage import init_db, upgrade_database

app = typer.Typer(help="campuscal command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


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
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
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
    """Start the FastAPI app under uvicorn."""
    init_db()
    config = uvicorn.Config(
        "campuscal.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting campuscal on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    calendars: int = typer.Option(
        settings.seed_calendars, "--calendars", min=0, help="Number of calendars to create"
    ),
    max_events: int = typer.Option(
        settings.seed_events_per_calendar,
        "--max-events",
        min=1,
        help="Maximum events to create on each calendar",
    ),
    recurring_percent: int = typer.Option(
        settings.seed_recurring_percent,
        "--recurring-percent",
        min=0,
        max=100,
        help="Percentage of events that repeat (0-100)",
    ),
):
    """Populate the database with fake calendars and events for testing."""
    stats = seed_fake_data(
        calendar_count=calendars,
        max_events_per_calendar=max_events,
        recurring_percentage=recurring_percent,
    )
    typer.echo(
        f"Seed complete: {stats['calendars']} calendars, {stats['events']} events "
        f"({stats['series']} recurring)."
    )


@app.command("expand")
def expand_event(
    event_id: str = typer.Argument(..., help="Event id to expand"),
    start: datetime | None = typer.Option(
        None, "--start", help="Window start (defaults to now)"
    ),
    days: int = typer.Option(30, "--days", min=1, help="Window length in days"),
):
    """Print the occurrences of one event within a window."""
    init_db()
    window_start = start or datetime.now().replace(microsecond=0)
    window_end = window_start + timedelta(days=days)
    try:
        with get_session() as session:
            event = get_event(session, event_id)
            if event.rrule:
                typer.echo(f"{event.title}: {default_engine.describe(event.rrule)}")
            instances = [
                instance
                for instance in get_events_in_range(
                    session,
                    start=window_start,
                    end=window_end,
                    calendar_ids=[event.calendar_id],
                )
                if instance.event_id == event.id or instance.parent_event_id == event.id
            ]
    except CalendarError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if not instances:
        typer.echo("No occurrences in window.")
        return
    for instance in instances:
        marker = " (exception)" if instance.is_exception else ""
        typer.echo(
            f"{instance.start_time.isoformat()} - {instance.end_time.isoformat()} "
            f"{instance.title} [{instance.id}]{marker}"
        )


@app.command("check")
def check(
    repair: bool = typer.Option(
        False,
        "--repair",
        help="Return half-submitted events to draft so they can be resubmitted",
    ),
):
    """Report events whose approval records disagree with their status."""
    init_db()
    with get_session() as session:
        problems = find_incomplete_submissions(session)
        for event, problem in problems:
            typer.echo(f"{event.id} ({event.title}): {problem}")
        if repair and problems:
            repaired = repair_incomplete_submissions(session)
            typer.secho(f"Repaired {repaired} event(s).", fg=typer.colors.GREEN)
    if not problems:
        typer.echo("No consistency problems found.")
    elif not repair:
        raise typer.Exit(code=1)


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    default_timezone: str | None = typer.Option(
        None, "--default-timezone", help="IANA zone used for new events"
    ),
    max_range_days: int | None = typer.Option(
        None, "--max-range-days", min=1, help="Largest window a query may request"
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Listing page size"
    ),
    ics_default_days: int | None = typer.Option(
        None, "--ics-default-days", min=1, help="Days covered by an ICS feed without an end"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to campuscal.toml (default: ./campuscal.toml)"
    ),
    seed_calendars: int | None = typer.Option(
        None, "--seed-calendars", min=0, help="Default seed-data calendars"
    ),
    seed_events_per_calendar: int | None = typer.Option(
        None,
        "--seed-events-per-calendar",
        min=1,
        help="Default seed-data events/calendar",
    ),
    seed_recurring_percent: int | None = typer.Option(
        None,
        "--seed-recurring-percent",
        min=0,
        max=100,
        help="Default percent of recurring events for seed-data",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "default_timezone": default_timezone,
        "max_range_days": max_range_days,
        "events_per_page": events_per_page,
        "ics_default_days": ics_default_days,
        "app_host": host,
        "app_port": port,
        "seed_calendars": seed_calendars,
        "seed_events_per_calendar": seed_events_per_calendar,
        "seed_recurring_percent": seed_recurring_percent,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    try:
        if clean_updates:
            settings_ref = update_config_file(clean_updates, path=target_path)
            typer.echo(f"Updated configuration in {target_path}")
        else:
            settings_ref = load_settings(target_path)
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))
