"""
Command-line interface for Vividly CalDAV Sync.
"""

import logging
import os
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vividly_sync.credentials import CredentialStore
from vividly_sync.credentials import mask_username
from vividly_sync.db import StateDatabase
from vividly_sync.db import query_status
from vividly_sync.models import DEFAULT_CONFIG
from vividly_sync.models import DEFAULT_STATE_DB
from vividly_sync.models import AppConfig
from vividly_sync.models import CalDAVConfig
from vividly_sync.models import Calendar
from vividly_sync.models import CalendarSyncError
from vividly_sync.models import Session
from vividly_sync.models import SyncResult
from vividly_sync.models import TransportError
from vividly_sync.preflight import run_preflight_checks
from vividly_sync.service import CalDAVSyncService

CONFIG_SECTION = "vividly-sync"

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Incremental CalDAV calendar sync into the local Vividly event store.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
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
    # urllib3 logs every request line at DEBUG, including auth retries
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _optional_int(value: str | None) -> int | None:
    return int(value) if value not in (None, "") else None


def _app_config(yes: bool = False) -> AppConfig:
    config_file = _load_config_file(state.config_path)
    try:
        return AppConfig(
            state_db_path=state.state_db,
            server_url=config_file.get("server_url"),
            username=config_file.get("username"),
            user_id=config_file.get("user_id", "local"),
            proxy_url=config_file.get("proxy_url"),
            access_token=os.environ.get("VIVIDLY_ACCESS_TOKEN") or config_file.get("access_token"),
            timezone=config_file.get("timezone", "UTC"),
            timeout=float(config_file.get("timeout", 30)),
            max_workers=int(config_file.get("max_workers", 4)),
            window_past_days=_optional_int(config_file.get("window_past_days")),
            window_future_days=_optional_int(config_file.get("window_future_days")),
            verbose=state.verbose,
            yes=yes,
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/] Invalid value in {state.config_path}: {e}")
        raise typer.Exit(1) from None


def _session(cfg: AppConfig) -> Session:
    return Session(user_id=cfg.user_id, access_token=cfg.access_token, proxy_url=cfg.proxy_url)


def _service(cfg: AppConfig, db: StateDatabase) -> CalDAVSyncService:
    return CalDAVSyncService(_session(cfg), db, CredentialStore(db), app_config=cfg)


def _fail(e: CalendarSyncError, prefix: str = "Error") -> None:
    console.print(f"[bold red]{prefix}:[/] {e}")
    if isinstance(e, TransportError) and e.fallback:
        console.print(f"[yellow]Tip:[/] {e.fallback}")
    raise typer.Exit(1) from None


def _presence(path: Path) -> Text:
    text = Text(f"{path} ")
    if path.exists():
        text.append("(present)", style="green")
    else:
        text.append("(missing)", style="yellow")
    return text


def _print_calendars(calendars: list[Calendar], selected: set[str] | None = None) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", style="bold", justify="right", width=3)
    table.add_column("Calendar / URL", min_width=36, overflow="fold")
    table.add_column("Color")
    table.add_column("Mode")
    for i, cal in enumerate(calendars, 1):
        name_cell = Text()
        name_cell.append(cal.display_name, style="bold")
        if selected is not None and cal.url in selected:
            name_cell.append("  (selected)", style="green")
        name_cell.append("\n")
        name_cell.append(cal.url, style="dim")

        if cal.is_subscription:
            mode = Text("Subscription", style="yellow")
        elif cal.read_only:
            mode = Text("Read-only", style="yellow")
        elif cal.is_shared:
            mode = Text("Shared", style="cyan")
        else:
            mode = Text("Read-write", style="green")
        table.add_row(str(i), name_cell, Text("■ " + cal.color, style=cal.color), mode)
    console.print(table)


def _pick_calendars(calendars: list[Calendar]) -> list[str]:
    """Prompt for a comma-separated list of numbers; 'all' selects everything."""
    answer = typer.prompt("Calendars to sync (e.g. 1,3 or 'all')", default="all")
    if answer.strip().lower() == "all":
        return [cal.url for cal in calendars]
    picked = []
    for part in answer.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 1 <= int(part) <= len(calendars):
            console.print(f"[bold red]Error:[/] Invalid selection: {part}")
            raise typer.Exit(1)
        picked.append(calendars[int(part) - 1].url)
    return picked


def _print_results(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Calendars", str(len(result.synced_calendars)))
    results.add_row("Added", str(result.added))
    results.add_row("Modified", str(result.modified))
    results.add_row("Deleted", str(result.deleted))
    results.add_row("Skipped", str(result.skipped))
    failed_val = Text(str(len(result.failures)))
    if result.ok:
        failed_val.append(" ✓", style="green")
    else:
        failed_val.stylize("bold red")
    results.add_row("Failed", failed_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if result.failures:
        table = Table(show_header=True, header_style="bold red")
        table.add_column("Calendar", overflow="fold")
        table.add_column("Error")
        table.add_column("Detail", overflow="fold")
        for failure in result.failures:
            table.add_row(failure.calendar_url, failure.kind, failure.message)
        console.print(table)


def _run_sync(
    service: CalDAVSyncService,
    caldav: CalDAVConfig,
    urls: set[str],
    last_sync_at: datetime | None,
    force_full: bool,
) -> None:
    """Core sync runner: run, show results, exit 1 on any failed calendar."""
    try:
        result = service.sync_selected_calendars(caldav, urls, last_sync_at, force_full=force_full)
    except CalendarSyncError as e:
        _fail(e, "Sync failed")
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    _print_results(result)
    if not result.ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------

_SERVER_OPT = Annotated[
    str | None, typer.Option("--server", "-s", help="CalDAV server URL (overrides config)")
]
_USER_OPT = Annotated[
    str | None, typer.Option("--username", "-u", help="CalDAV username (overrides config)")
]
_PASSWORD_OPT = Annotated[
    str | None,
    typer.Option(
        "--password",
        envvar="VIVIDLY_CALDAV_PASSWORD",
        help="CalDAV password (app-specific password for iCloud)",
    ),
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars(
    server: _SERVER_OPT = None,
    username: _USER_OPT = None,
    password: _PASSWORD_OPT = None,
) -> None:
    """Discover and list the calendars of a CalDAV account."""
    cfg = _app_config()
    with StateDatabase(cfg.state_db_path, cfg.user_id) as db:
        service = _service(cfg, db)
        caldav = service.build_config(
            server or cfg.server_url, username or cfg.username, password
        )
        if not run_preflight_checks(cfg, caldav, console):
            raise typer.Exit(1)
        try:
            found = service.get_calendars(caldav)
        except CalendarSyncError as e:
            _fail(e, "Discovery failed")
        settings = db.get_settings()
        selected = settings.selected_calendar_urls if settings else set()
    _print_calendars(found, selected)


# ---------------------------------------------------------------------------
# Subcommand: connect
# ---------------------------------------------------------------------------


@app.command()
def connect(
    server: _SERVER_OPT = None,
    username: _USER_OPT = None,
    password: _PASSWORD_OPT = None,
    yes: _YES = False,
) -> None:
    """Connect an account: discover calendars, pick the ones to sync, run a first sync."""
    cfg = _app_config(yes=yes)
    with StateDatabase(cfg.state_db_path, cfg.user_id) as db:
        service = _service(cfg, db)
        loaded = service.load_settings()

        server = server or cfg.server_url or loaded.server_url
        if not server:
            server = typer.prompt("CalDAV server URL", default="https://caldav.icloud.com")
        username = username or cfg.username or loaded.username
        if not username:
            username = typer.prompt("Username")

        caldav = service.build_config(server, username, password)
        if not caldav.password and not caldav.setting_id:
            caldav.password = typer.prompt("Password", hide_input=True)

        if not run_preflight_checks(cfg, caldav, console):
            raise typer.Exit(1)

        try:
            found = service.get_calendars(caldav)
        except CalendarSyncError as e:
            _fail(e, "Discovery failed")

        console.rule("[bold]Calendars[/bold]")
        _print_calendars(found)
        console.print()
        urls = [c.url for c in found] if yes else _pick_calendars(found)
        selected = service.select_calendars(caldav, found, urls)

        info = Text()
        info.append("  Server:    ", style="bold")
        info.append(f"{caldav.server_url}\n")
        info.append("  Account:   ", style="bold")
        info.append(f"{mask_username(caldav.username)}\n")
        info.append("  Selected:  ", style="bold")
        info.append(f"{len(selected)} calendar(s)\n")
        info.append("  Operation: ")
        info.append("INITIAL SYNC", style="bold green")
        console.print(Panel(info, title="[bold]Vividly CalDAV Sync[/bold]"))

        if not cfg.yes:
            typer.confirm("Proceed?", abort=True)
        _run_sync(service, caldav, selected, None, force_full=True)


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    password: _PASSWORD_OPT = None,
    full: Annotated[
        bool, typer.Option("--full", help="Ignore stored sync tokens and fetch everything")
    ] = False,
) -> None:
    """Synchronise the selected calendars (incremental by default)."""
    cfg = _app_config()
    with StateDatabase(cfg.state_db_path, cfg.user_id) as db:
        settings = db.get_settings()
        if settings is None or not settings.selected_calendar_urls:
            console.print(
                "[yellow]No calendars selected — run[/] [cyan]vividly-sync connect[/] [yellow]first.[/]"
            )
            raise typer.Exit(1)

        service = _service(cfg, db)
        server_url = cfg.server_url or settings.server_url
        username = cfg.username or settings.username
        caldav = service.build_config(server_url, username, password)
        if not caldav.setting_id and settings.setting_id and not caldav.password:
            caldav.setting_id = settings.setting_id

        if not run_preflight_checks(cfg, caldav, console):
            raise typer.Exit(1)

        # A checkpoint only applies to the account it was recorded for
        same_account = server_url == settings.server_url and username == settings.username
        last_sync_at = settings.last_sync_at if same_account and not full else None
        _run_sync(service, caldav, settings.selected_calendar_urls, last_sync_at, force_full=full)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show the configured account and what the state database holds for it."""
    cfg = _app_config()
    db_exists = state.state_db.exists()
    settings = None
    if db_exists:
        with StateDatabase(state.state_db, cfg.user_id) as db:
            settings = db.get_settings()

    server = cfg.server_url or (settings.server_url if settings else None)
    username = cfg.username or (settings.username if settings else None)
    overview = Table.grid(padding=(0, 2))
    overview.add_column(style="bold")
    overview.add_column()
    overview.add_row("Config file", _presence(state.config_path))
    overview.add_row("State DB", _presence(state.state_db))
    overview.add_row("Server", server or Text("not set", style="dim"))
    overview.add_row("Account", mask_username(username) if username else Text("not set", style="dim"))
    overview.add_row("Time zone", cfg.timezone)
    if settings is not None and settings.last_sync_at is not None:
        overview.add_row("Last full pass", settings.last_sync_at.strftime("%Y-%m-%d %H:%M:%S %Z"))
    console.print(Panel(overview, title="[bold]Vividly CalDAV Sync[/bold]", expand=False))

    rows = [row for row in query_status(state.state_db) if row["user_id"] == cfg.user_id]
    if not rows:
        if not db_exists:
            console.print(
                "[yellow]No state database yet. Create one with[/] [cyan]vividly-sync connect[/]."
            )
        else:
            console.print("[yellow]No calendars recorded yet.[/]")
        return

    selected = settings.selected_calendar_urls if settings else set()
    table = Table(box=None, header_style="bold cyan", padding=(0, 2))
    table.add_column("Calendar")
    table.add_column("Events", justify="right")
    table.add_column("Token")
    table.add_column("Synced at")
    for row in rows:
        name = Text(row["display_name"], style="bold" if row["calendar_url"] in selected else "dim")
        if row["read_only"] or row["is_subscription"]:
            name.append(" (read-only)", style="yellow")
        ts = row["last_synced_at"]
        synced_at = datetime.fromtimestamp(ts).isoformat(sep=" ", timespec="seconds") if ts else "never"
        table.add_row(
            name,
            str(row["events"]),
            Text("✓", style="green") if row["has_token"] else Text("—", style="dim"),
            synced_at,
        )
    console.print(Panel(table, title="[bold]Calendars[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: disconnect
# ---------------------------------------------------------------------------


@app.command()
def disconnect(yes: _YES = False) -> None:
    """Remove every synced event, sync token and the stored credentials."""
    cfg = _app_config(yes=yes)
    # The credential behind the proxy outlives a deleted state database
    if not state.state_db.exists() and not _session(cfg).is_active:
        console.print("[yellow]Nothing to remove — no state database.[/]")
        return

    if not cfg.yes:
        console.print(
            "[bold red]This removes all synced events and the saved account. "
            "It cannot be undone.[/]"
        )
        typer.confirm("Disconnect?", abort=True)

    with StateDatabase(cfg.state_db_path, cfg.user_id) as db:
        try:
            summary = _service(cfg, db).delete_all_caldav_data()
        except CalendarSyncError as e:
            _fail(e, "Disconnect failed (nothing was removed)")

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Events removed", str(summary["events"]))
    results.add_row("Tokens cleared", str(summary["tokens"]))
    results.add_row("Calendars forgotten", str(summary["calendars"]))
    console.print(Panel(results, title="[bold]Disconnected[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: migrate-credentials
# ---------------------------------------------------------------------------


@app.command("migrate-credentials")
def migrate_credentials(password: _PASSWORD_OPT = None) -> None:
    """Move locally stored credentials behind the credential proxy."""
    cfg = _app_config()
    with StateDatabase(cfg.state_db_path, cfg.user_id) as db:
        store = CredentialStore(db)
        try:
            setting_id = store.migrate_legacy(_session(cfg), password)
        except CalendarSyncError as e:
            _fail(e, "Migration failed")
    if setting_id is None:
        console.print("[green]Nothing to migrate.[/]")
    else:
        console.print(f"[green]Credentials migrated.[/] Setting id: [cyan]{setting_id}[/]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
