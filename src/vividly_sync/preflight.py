"""
Preflight checks run before any network call to catch misconfigurations early.
"""

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from vividly_sync.models import AppConfig
from vividly_sync.models import CalDAVConfig
from vividly_sync.models import PreconditionError

logger = logging.getLogger(__name__)

Issue = tuple[str, str, str]  # (label, detail, hint)


def _check_account(caldav: CalDAVConfig) -> Issue | None:
    try:
        caldav.validate()
    except PreconditionError as e:
        return (
            "Account",
            str(e),
            "Run: vividly-sync connect, or set server_url/username in the config file",
        )
    return None


def _check_timezone(name: str) -> Issue | None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ("Time zone", f"Unknown zone: {name}", "Use an IANA name, e.g. Europe/Berlin")
    return None


def _check_state_db(db_path: Path) -> Issue | None:
    """The directory must be creatable and an existing file must accept a write lock."""
    hint = f"Make {db_path.parent} writable; sqlite keeps its journal next to the database"
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"State directory {db_path.parent} unusable: {e}")
        return ("State database", f"{db_path.parent}: {e}", hint)

    if not db_path.exists():
        return None
    try:
        with closing(sqlite3.connect(db_path)) as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
            conn.rollback()
    except sqlite3.Error as e:
        logger.error(f"State database {db_path} failed the write-lock check: {e}")
        return ("State database", f"{db_path}: {e}", hint)
    return None


def collect_issues(app_config: AppConfig, caldav: CalDAVConfig | None) -> list[Issue]:
    """Return (label, detail, hint) for every problem found."""
    checks = [
        _check_account(caldav) if caldav is not None else None,
        _check_timezone(app_config.timezone),
        _check_state_db(app_config.state_db_path),
    ]
    return [issue for issue in checks if issue is not None]


def run_preflight_checks(
    app_config: AppConfig, caldav: CalDAVConfig | None, console: Console
) -> bool:
    """Print every issue found; True means it is safe to go on."""
    issues = collect_issues(app_config, caldav)
    if not issues:
        return True
    body = Text()
    for label, detail, hint in issues:
        if body:
            body.append("\n")
        body.append(f"  ✗  {label}: {detail}", style="bold red")
        body.append(f"\n       → {hint}", style="yellow")
    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
    return False
