"""
Pure data models and the error taxonomy. No HTTP or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/vividly-sync/state.db"
DEFAULT_CONFIG = Path.home() / ".config/vividly-sync.conf"

DEFAULT_COLOR = "#3b82f6"
DEFAULT_TIMEOUT = 30.0
DEFAULT_SYNC_INTERVAL_MINUTES = 60

SOURCE_CALDAV = "caldav"
SOURCE_LOCAL = "local"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    kind = "error"


class PreconditionError(CalendarSyncError):
    """Required configuration (server URL, username, credential) is missing."""

    kind = "precondition"


class AuthenticationError(CalendarSyncError):
    """The server or credential proxy rejected the credentials."""

    kind = "authentication"


class TransportError(CalendarSyncError):
    """Network failure, timeout or TLS problem."""

    kind = "transport"

    def __init__(self, message: str, fallback: str | None = None):
        super().__init__(message)
        self.fallback = fallback


class ProtocolError(CalendarSyncError):
    """The server answered with something we cannot interpret."""

    kind = "protocol"


class TokenInvalidated(ProtocolError):
    """The server no longer accepts the stored sync token."""

    kind = "token_invalidated"


class ReadOnlyCalendarError(CalendarSyncError):
    """A write was attempted against a read-only or subscription calendar."""

    kind = "read_only"


class SyncInProgressError(CalendarSyncError):
    """Another sync pass already holds the calendar."""

    kind = "busy"


class SyncCancelledError(CalendarSyncError):
    """The pass was cancelled before this calendar was applied."""

    kind = "cancelled"


# ---------------------------------------------------------------------------
# Session / configuration
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """Host application session, passed explicitly into every call."""

    user_id: str
    access_token: str | None = None
    proxy_url: str | None = None

    @property
    def is_active(self) -> bool:
        return bool(self.access_token and self.proxy_url)


@dataclass
class CalDAVConfig:
    """Connection parameters for one CalDAV account."""

    server_url: str
    username: str
    password: str | None = None
    setting_id: str | None = None

    def validate(self):
        if not (self.server_url or "").strip():
            raise PreconditionError("CalDAV server URL is required")
        if not (self.username or "").strip():
            raise PreconditionError("CalDAV username is required")
        if not self.password and not self.setting_id:
            raise PreconditionError("A password or a stored credential reference is required")

    def __repr__(self) -> str:
        return (
            f"CalDAVConfig(server_url={self.server_url!r}, username={self.username!r}, "
            f"password={'***' if self.password else None}, setting_id={self.setting_id!r})"
        )


@dataclass
class AppConfig:
    """Values read from the INI config file, overridable from the CLI."""

    state_db_path: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    server_url: str | None = None
    username: str | None = None
    user_id: str = "local"
    proxy_url: str | None = None
    access_token: str | None = None
    timezone: str = "UTC"
    timeout: float = DEFAULT_TIMEOUT
    max_workers: int = 4
    window_past_days: int | None = None
    window_future_days: int | None = None
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting


# ---------------------------------------------------------------------------
# Remote / local records
# ---------------------------------------------------------------------------


@dataclass
class Calendar:
    """A remote calendar collection. Identity is the normalized URL."""

    url: str
    display_name: str
    color: str = DEFAULT_COLOR
    is_shared: bool = False
    is_subscription: bool = False
    read_only: bool = False
    ctag: str | None = None
    sync_token: str | None = None

    @property
    def writable(self) -> bool:
        return not (self.read_only or self.is_subscription)


@dataclass
class CalendarMetadata:
    """Local projection of a selected Calendar."""

    url: str
    display_name: str
    color: str = DEFAULT_COLOR
    is_shared: bool = False
    is_subscription: bool = False
    read_only: bool = False
    last_synced_at: datetime | None = None

    @classmethod
    def from_calendar(cls, calendar: Calendar) -> "CalendarMetadata":
        return cls(
            url=calendar.url,
            display_name=calendar.display_name,
            color=calendar.color,
            is_shared=calendar.is_shared,
            is_subscription=calendar.is_subscription,
            read_only=calendar.read_only,
        )


@dataclass
class SyncSettings:
    """Per-user persisted sync settings (one row per user)."""

    server_url: str
    username: str
    password: str | None = None
    setting_id: str | None = None
    selected_calendar_urls: set[str] = field(default_factory=set)
    last_sync_at: datetime | None = None
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    enabled: bool = True


@dataclass
class LoadedSettings:
    """Result of CredentialStore.load_settings()."""

    exists: bool
    server_url: str | None = None
    username: str | None = None
    setting_id: str | None = None
    has_password: bool = False
    authoritative: bool = True
    source: str = "secure"  # 'secure' or 'legacy'


@dataclass
class RemoteEvent:
    """One calendar object resource as returned by the server."""

    href: str
    calendar_data: str
    etag: str | None = None


@dataclass
class ChangeSet:
    """Result of fetch_changes()."""

    events: list[RemoteEvent] = field(default_factory=list)
    deleted_urls: list[str] = field(default_factory=list)
    new_token: str | None = None
    full_snapshot: bool = False
    window: tuple[datetime, datetime] | None = None


@dataclass
class Event:
    """Local event row."""

    calendar_url: str
    caldav_uid: str
    title: str
    date: str  # YYYY-MM-DD
    color: str = DEFAULT_COLOR
    end_date: str | None = None
    start_time: str | None = None  # HH:MM
    end_time: str | None = None
    memo: str | None = None
    href: str | None = None
    etag: str | None = None
    source: str = SOURCE_CALDAV
    content_hash: str | None = None
    remote_modified_at: datetime | None = None
    local_modified_at: datetime | None = None
    synced_at: datetime | None = None
    id: int | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CalendarFailure:
    calendar_url: str
    kind: str
    message: str


@dataclass
class SyncResult:
    """Statistics for one sync pass."""

    added: int = 0
    modified: int = 0
    deleted: int = 0
    skipped: int = 0
    synced_calendars: list[str] = field(default_factory=list)
    failures: list[CalendarFailure] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return self.added + self.modified + self.deleted

    @property
    def ok(self) -> bool:
        return not self.failures
