"""
Command-line interface for Household Calendar Sync.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from household_calendar_sync.config import CRON_SECRET_ENV
from household_calendar_sync.config import load_config
from household_calendar_sync.crypto import PasswordCipher
from household_calendar_sync.connections import ConnectionRegistry
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import DEFAULT_CONFIG
from household_calendar_sync.models import AppConfig
from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import SelectedCalendar
from household_calendar_sync.preflight import run_preflight_checks
from household_calendar_sync.triggers import SyncTriggers

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Two-way sync between the household calendar and CalDAV servers.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help="Database path (overrides config)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load() -> AppConfig:
    try:
        return load_config(state.config_path, state_db=state.state_db, verbose=state.verbose)
    except CalendarSyncError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        raise typer.Exit(1) from None


def _checked_config(need_cron_secret: bool = False) -> AppConfig:
    cfg = _load()
    if not run_preflight_checks(cfg, console, need_cron_secret=need_cron_secret):
        raise typer.Exit(1)
    return cfg


def _fail(message: str, e: Exception) -> None:
    console.print(f"[bold red]{message}:[/] {e}")
    raise typer.Exit(1) from None


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "—"


def _status_text(status: str | None) -> Text:
    style = {"success": "green", "error": "bold red", "pending": "yellow"}.get(status or "", "dim")
    return Text(status or "never", style=style)


def _print_sync_results(payload: dict) -> None:
    results = payload.get("results", [])
    if not results:
        console.print(f"[yellow]{payload.get('message', 'Nothing to sync')}[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Connection")
    table.add_column("Status")
    table.add_column("Found", justify="right")
    table.add_column("Synced", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Pushed", justify="right")
    table.add_column("Push errors", justify="right")

    for r in results:
        status = Text("✓ ok", style="green") if r["success"] else Text("✗ failed", style="bold red")
        table.add_row(
            r["email"],
            status,
            str(r["eventsFound"]),
            str(r["syncedEvents"]),
            str(r["errorCount"]),
            str(r["pushedEvents"]),
            str(r["pushErrorCount"]),
        )
        for calendar in r["calendars"]:
            table.add_row(
                Text(f"  {calendar['name']}", style="dim"),
                "",
                str(calendar["eventsFound"]),
                str(calendar["syncedEvents"]),
                str(calendar["errorCount"]),
                "",
                "",
            )
        if r.get("error"):
            table.add_row(Text(f"  {r['error']}", style="red"), "", "", "", "", "", "")

    console.print(Panel(table, title="[bold]Results[/bold]", expand=False))
    console.print(f"[dim]{payload['message']}[/dim]")


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------

_USER_OPT = Annotated[str, typer.Option("--user", "-u", help="Owning user id")]
_SERVER_OPT = Annotated[
    str, typer.Option("--server-url", "-s", help="CalDAV server URL, e.g. https://caldav.icloud.com")
]
_EMAIL_OPT = Annotated[str, typer.Option("--email", "-e", help="Account email / username")]
_PASSWORD_OPT = Annotated[
    str,
    typer.Option(
        "--password",
        prompt=True,
        hide_input=True,
        help="App-specific password (prompted when omitted)",
    ),
]


# ---------------------------------------------------------------------------
# Subcommands: connection setup
# ---------------------------------------------------------------------------


@app.command()
def calendars(server_url: _SERVER_OPT, email: _EMAIL_OPT, password: _PASSWORD_OPT) -> None:
    """Test credentials and list the account's calendars."""
    cfg = _checked_config()
    with CalendarStore(cfg.state_db_path) as store:
        registry = ConnectionRegistry(store, PasswordCipher(cfg.encryption_key))
        try:
            found = registry.test_connection(server_url, email, password)
        except (CalendarSyncError, ValueError) as e:
            _fail("Connection failed", e)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", style="bold", justify="right", width=3)
    table.add_column("Name")
    table.add_column("Colour")
    table.add_column("URL", overflow="fold", style="dim")
    for i, calendar in enumerate(found, 1):
        table.add_row(str(i), calendar.display_name, calendar.color or "", calendar.url)
    console.print(Panel(table, title=f"[bold]{email}[/bold]: {len(found)} calendar(s)"))


@app.command()
def connect(
    user: _USER_OPT,
    household: Annotated[str, typer.Option("--household", "-H", help="Household id")],
    server_url: _SERVER_OPT,
    email: _EMAIL_OPT,
    password: _PASSWORD_OPT,
    calendar: Annotated[
        list[str] | None,
        typer.Option("--calendar", help="Calendar name to sync (repeatable; default: all)"),
    ] = None,
    member_email: Annotated[
        str | None,
        typer.Option("--member-email", help="Household email of the user (default: --email)"),
    ] = None,
    past_days: Annotated[int | None, typer.Option("--past-days", help="Days of history to pull")] = None,
    future_days: Annotated[
        int | None, typer.Option("--future-days", help="Days ahead to pull")
    ] = None,
) -> None:
    """Test a CalDAV account, select calendars and save the connection."""
    cfg = _checked_config()
    with CalendarStore(cfg.state_db_path) as store:
        registry = ConnectionRegistry(store, PasswordCipher(cfg.encryption_key))
        try:
            found = registry.test_connection(server_url, email, password)
        except (CalendarSyncError, ValueError) as e:
            _fail("Connection failed", e)

        wanted = set(calendar or [])
        unknown = wanted - {c.display_name for c in found}
        if unknown:
            console.print(f"[bold red]Error:[/] Unknown calendar(s): {', '.join(sorted(unknown))}")
            raise typer.Exit(1)

        selected = [
            SelectedCalendar(name=c.display_name, url=c.url, enabled=True, color=c.color)
            for c in found
            if not wanted or c.display_name in wanted
        ]
        store.add_household_member(household, user, member_email or email)
        connection = registry.create_connection(
            user,
            household,
            email,
            password,
            server_url,
            selected_calendars=selected,
            sync_past_days=cfg.sync_past_days if past_days is None else past_days,
            sync_future_days=cfg.sync_future_days if future_days is None else future_days,
        )

    info = Text()
    info.append("  Id:        ", style="bold")
    info.append(f"{connection.id}\n")
    info.append("  Account:   ", style="bold")
    info.append(f"{email}\n")
    info.append("  Calendars: ", style="bold")
    info.append(", ".join(c.name for c in selected) + "\n")
    info.append("  Window:    ", style="bold")
    info.append(f"-{connection.sync_past_days} / +{connection.sync_future_days} days")
    console.print(Panel(info, title="[bold]Connection saved[/bold]"))


@app.command()
def connections(
    user: Annotated[str | None, typer.Option("--user", "-u", help="Only this user's connections")] = None,
) -> None:
    """List saved connections."""
    cfg = _load()
    with CalendarStore(cfg.state_db_path) as store:
        rows = store.list_connections(user_id=user)

    if not rows:
        console.print("[yellow]No connections saved yet.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Id", overflow="fold", style="dim")
    table.add_column("Account")
    table.add_column("Enabled")
    table.add_column("Calendars")
    table.add_column("Last sync")
    table.add_column("Status")
    for c in rows:
        table.add_row(
            c.id,
            c.email,
            Text("yes", style="green") if c.enabled else Text("no", style="yellow"),
            ", ".join(s.name for s in c.enabled_calendars) or "(all)",
            _fmt_time(c.last_sync_at),
            _status_text(c.last_sync_status),
        )
        if c.last_sync_error:
            table.add_row("", Text(c.last_sync_error, style="red"), "", "", "", "")
    console.print(table)


@app.command()
def toggle(
    connection_id: Annotated[str, typer.Argument(help="Connection id")],
    user: _USER_OPT,
    enable: Annotated[bool, typer.Option("--enable/--disable", help="Enable or pause syncing")] = True,
) -> None:
    """Enable or disable a connection without deleting it."""
    cfg = _load()
    with CalendarStore(cfg.state_db_path) as store:
        registry = ConnectionRegistry(store, PasswordCipher(cfg.encryption_key))
        try:
            registry.set_enabled(connection_id, user, enable)
        except CalendarSyncError as e:
            _fail("Toggle failed", e)
    console.print(f"Connection [cyan]{connection_id}[/] {'enabled' if enable else 'disabled'}.")


# ---------------------------------------------------------------------------
# Subcommands: sync triggers
# ---------------------------------------------------------------------------


@app.command()
def sync(
    user: _USER_OPT,
    connection: Annotated[
        str | None, typer.Option("--connection", help="Sync only this connection")
    ] = None,
) -> None:
    """Sync the user's enabled connections now (pull, then push)."""
    cfg = _checked_config()
    with CalendarStore(cfg.state_db_path) as store:
        try:
            payload = SyncTriggers(store, cfg).interactive_sync(user, connection)
        except CalendarSyncError as e:
            _fail("Sync failed", e)
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted by user[/]")
            raise typer.Exit(130) from None

    _print_sync_results(payload)
    if any(not r["success"] for r in payload["results"]):
        raise typer.Exit(1)


@app.command()
def cron(
    secret: Annotated[
        str,
        typer.Option("--secret", envvar=CRON_SECRET_ENV, help="Shared cron secret"),
    ],
) -> None:
    """Scheduled sync of every enabled connection."""
    cfg = _checked_config(need_cron_secret=True)
    with CalendarStore(cfg.state_db_path) as store:
        try:
            payload = SyncTriggers(store, cfg).scheduled_sync(secret)
        except CalendarSyncError as e:
            _fail("Cron sync failed", e)

    _print_sync_results(payload)


@app.command("retry-push")
def retry_push(
    household: Annotated[str, typer.Option("--household", "-H", help="Household id")],
    event: Annotated[str | None, typer.Option("--event", help="Retry one event")] = None,
    retry_all: Annotated[
        bool, typer.Option("--all", help="Retry every event whose last push failed")
    ] = False,
) -> None:
    """Re-push events whose last push failed."""
    if not event and not retry_all:
        raise typer.BadParameter("Either --event or --all must be provided")
    cfg = _checked_config()
    with CalendarStore(cfg.state_db_path) as store:
        try:
            payload = SyncTriggers(store, cfg).retry_push(household, event, retry_all)
        except CalendarSyncError as e:
            _fail("Retry failed", e)

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Pushed", str(payload["successCount"]))
    error_val = Text(str(payload["errorCount"]))
    if payload["errorCount"] == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    console.print(Panel(results, title="[bold]Retry push[/bold]", expand=False))

    if payload["errorCount"]:
        raise typer.Exit(1)


@app.command("delete-event")
def delete_event(
    event_id: Annotated[str, typer.Argument(help="Local event id")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Delete an event locally and from every CalDAV server it was pushed to."""
    cfg = _checked_config()
    if not yes:
        typer.confirm(f"Delete event {event_id} everywhere?", abort=True)
    with CalendarStore(cfg.state_db_path) as store:
        try:
            payload = SyncTriggers(store, cfg).delete_event(event_id)
        except CalendarSyncError as e:
            _fail("Delete failed", e)
    console.print(f"[green]{payload['message']}[/]")


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and per-connection sync state."""
    cfg = _load()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  Database: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Key:      ", style="bold")
    cfg_info.append(
        "configured" if cfg.encryption_key else "missing",
        style="green" if cfg.encryption_key else "bold red",
    )
    console.print(Panel(cfg_info, title="[bold]Household Calendar Sync Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No database yet. Run[/] [cyan]household-calendar-sync connect[/] "
            "[yellow]to create it.[/]"
        )
        return

    with CalendarStore(cfg.state_db_path) as store:
        rows = store.connection_status()

    if not rows:
        console.print("[yellow]No connections saved yet.[/]")
        return

    for row in rows:
        connection = row["connection"]
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Kind")
        table.add_column("State")
        table.add_column("Count", justify="right")
        for direction, count in sorted(row["directions"].items()):
            table.add_row("Mappings", direction, str(count))
        for push_state, count in sorted(row["push_states"].items()):
            table.add_row("Events", _status_text(push_state), str(count))

        title = f"[bold]{connection.email}[/bold]  last sync {_fmt_time(connection.last_sync_at)}"
        if not connection.enabled:
            title += "  [yellow](disabled)[/yellow]"
        console.print(Panel(table, title=title, expand=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
