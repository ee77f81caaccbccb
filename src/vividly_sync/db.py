"""
SQLite persistence for sync settings, tokens, calendar metadata and the local
event store.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone
from pathlib import Path

from vividly_sync.models import SOURCE_CALDAV
from vividly_sync.models import CalendarMetadata
from vividly_sync.models import Event
from vividly_sync.models import ReadOnlyCalendarError
from vividly_sync.models import SyncSettings
from vividly_sync.urls import normalize_calendar_url

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_settings (
        user_id TEXT PRIMARY KEY,
        server_url TEXT NOT NULL,
        username TEXT NOT NULL,
        password TEXT,
        setting_id TEXT,
        selected_calendar_urls TEXT NOT NULL DEFAULT '[]',
        last_sync_at REAL,
        sync_interval_minutes INTEGER NOT NULL DEFAULT 60,
        enabled INTEGER NOT NULL DEFAULT 1,
        updated_at REAL NOT NULL
    );
    CREATE TABLE IF NOT EXISTS sync_tokens (
        user_id TEXT NOT NULL,
        calendar_url TEXT NOT NULL,
        token TEXT NOT NULL,
        updated_at REAL NOT NULL,
        PRIMARY KEY (user_id, calendar_url)
    );
    CREATE TABLE IF NOT EXISTS calendar_metadata (
        user_id TEXT NOT NULL,
        url TEXT NOT NULL,
        display_name TEXT NOT NULL,
        color TEXT NOT NULL,
        is_shared INTEGER NOT NULL DEFAULT 0,
        is_subscription INTEGER NOT NULL DEFAULT 0,
        read_only INTEGER NOT NULL DEFAULT 0,
        last_synced_at REAL,
        PRIMARY KEY (user_id, url)
    );
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        calendar_url TEXT NOT NULL,
        caldav_uid TEXT NOT NULL,
        href TEXT,
        etag TEXT,
        title TEXT NOT NULL,
        date TEXT NOT NULL,
        end_date TEXT,
        start_time TEXT,
        end_time TEXT,
        memo TEXT,
        color TEXT NOT NULL,
        source TEXT NOT NULL,
        content_hash TEXT,
        remote_modified_at REAL,
        local_modified_at REAL,
        synced_at REAL,
        UNIQUE(user_id, calendar_url, caldav_uid)
    );
    CREATE INDEX IF NOT EXISTS idx_events_href ON events(user_id, href);
"""

# Columns a user may edit through update_local_event()
_USER_EDITABLE = frozenset(
    {"title", "date", "end_date", "start_time", "end_time", "memo", "color"}
)


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value else None


def _dt(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StateDatabase:
    """
    Manages the SQLite state database.

    Every query is scoped to one user. Mutating methods never commit on their
    own: wrap them in transaction() (or call commit()) so that a calendar's
    events and its sync token are persisted together.
    """

    def __init__(self, db_path: Path, user_id: str):
        self.db_path = db_path
        self.user_id = user_id
        self.conn: sqlite3.Connection | None = None
        self._depth = 0

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    @contextmanager
    def transaction(self):
        """
        Commit on success, roll back on any exception.

        Nested use joins the outermost transaction; only the outermost block
        commits or rolls back.
        """
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.conn.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    # ------------------------------------------------------------------ #
    # Sync settings                                                        #
    # ------------------------------------------------------------------ #

    def get_settings(self) -> SyncSettings | None:
        row = self.conn.execute(
            "SELECT * FROM sync_settings WHERE user_id = ?", (self.user_id,)
        ).fetchone()
        if row is None:
            return None
        return SyncSettings(
            server_url=row["server_url"],
            username=row["username"],
            password=row["password"],
            setting_id=row["setting_id"],
            selected_calendar_urls=set(json.loads(row["selected_calendar_urls"])),
            last_sync_at=_dt(row["last_sync_at"]),
            sync_interval_minutes=row["sync_interval_minutes"],
            enabled=bool(row["enabled"]),
        )

    def save_settings(self, settings: SyncSettings):
        """Full replace of the user's settings row (last writer wins)."""
        selected = sorted(normalize_calendar_url(u) for u in settings.selected_calendar_urls)
        self.conn.execute(
            "INSERT OR REPLACE INTO sync_settings "
            "(user_id, server_url, username, password, setting_id, selected_calendar_urls, "
            " last_sync_at, sync_interval_minutes, enabled, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self.user_id,
                settings.server_url,
                settings.username,
                settings.password,
                settings.setting_id,
                json.dumps(selected),
                _ts(settings.last_sync_at),
                settings.sync_interval_minutes,
                int(settings.enabled),
                time.time(),
            ),
        )

    def update_last_sync_at(self, when: datetime):
        self.conn.execute(
            "UPDATE sync_settings SET last_sync_at = ?, updated_at = ? WHERE user_id = ?",
            (_ts(when), time.time(), self.user_id),
        )

    def delete_settings(self) -> bool:
        cursor = self.conn.execute("DELETE FROM sync_settings WHERE user_id = ?", (self.user_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Sync tokens, keyed by normalized calendar URL                        #
    # ------------------------------------------------------------------ #

    def get_token(self, calendar_url: str) -> str | None:
        row = self.conn.execute(
            "SELECT token FROM sync_tokens WHERE user_id = ? AND calendar_url = ?",
            (self.user_id, normalize_calendar_url(calendar_url)),
        ).fetchone()
        return row["token"] if row else None

    def get_all_tokens(self) -> dict[str, str]:
        cursor = self.conn.execute(
            "SELECT calendar_url, token FROM sync_tokens WHERE user_id = ?", (self.user_id,)
        )
        return {row["calendar_url"]: row["token"] for row in cursor.fetchall()}

    def set_token(self, calendar_url: str, token: str):
        self.conn.execute(
            "INSERT OR REPLACE INTO sync_tokens (user_id, calendar_url, token, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (self.user_id, normalize_calendar_url(calendar_url), token, time.time()),
        )

    def clear_token(self, calendar_url: str):
        self.conn.execute(
            "DELETE FROM sync_tokens WHERE user_id = ? AND calendar_url = ?",
            (self.user_id, normalize_calendar_url(calendar_url)),
        )

    def clear_all_tokens(self) -> int:
        cursor = self.conn.execute("DELETE FROM sync_tokens WHERE user_id = ?", (self.user_id,))
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Calendar metadata                                                    #
    # ------------------------------------------------------------------ #

    def save_calendar_metadata(self, calendars: list[CalendarMetadata]):
        """Upsert metadata for the given calendars, keeping last_synced_at."""
        for cal in calendars:
            self.conn.execute(
                "INSERT INTO calendar_metadata "
                "(user_id, url, display_name, color, is_shared, is_subscription, read_only) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, url) DO UPDATE SET "
                "display_name = excluded.display_name, color = excluded.color, "
                "is_shared = excluded.is_shared, is_subscription = excluded.is_subscription, "
                "read_only = excluded.read_only",
                (
                    self.user_id,
                    normalize_calendar_url(cal.url),
                    cal.display_name,
                    cal.color,
                    int(cal.is_shared),
                    int(cal.is_subscription),
                    int(cal.read_only),
                ),
            )

    def get_calendar_metadata(self) -> dict[str, CalendarMetadata]:
        cursor = self.conn.execute(
            "SELECT * FROM calendar_metadata WHERE user_id = ? ORDER BY display_name",
            (self.user_id,),
        )
        return {
            row["url"]: CalendarMetadata(
                url=row["url"],
                display_name=row["display_name"],
                color=row["color"],
                is_shared=bool(row["is_shared"]),
                is_subscription=bool(row["is_subscription"]),
                read_only=bool(row["read_only"]),
                last_synced_at=_dt(row["last_synced_at"]),
            )
            for row in cursor.fetchall()
        }

    def mark_calendar_synced(self, calendar_url: str, when: datetime):
        self.conn.execute(
            "UPDATE calendar_metadata SET last_synced_at = ? WHERE user_id = ? AND url = ?",
            (_ts(when), self.user_id, normalize_calendar_url(calendar_url)),
        )

    def clear_calendar_metadata(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM calendar_metadata WHERE user_id = ?", (self.user_id,)
        )
        return cursor.rowcount

    def is_calendar_writable(self, calendar_url: str) -> bool:
        """False for calendars recorded as read-only or subscriptions."""
        row = self.conn.execute(
            "SELECT read_only, is_subscription FROM calendar_metadata "
            "WHERE user_id = ? AND url = ?",
            (self.user_id, normalize_calendar_url(calendar_url)),
        ).fetchone()
        if row is None:
            return True
        return not (row["read_only"] or row["is_subscription"])

    # ------------------------------------------------------------------ #
    # Local event store                                                    #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            calendar_url=row["calendar_url"],
            caldav_uid=row["caldav_uid"],
            href=row["href"],
            etag=row["etag"],
            title=row["title"],
            date=row["date"],
            end_date=row["end_date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            memo=row["memo"],
            color=row["color"],
            source=row["source"],
            content_hash=row["content_hash"],
            remote_modified_at=_dt(row["remote_modified_at"]),
            local_modified_at=_dt(row["local_modified_at"]),
            synced_at=_dt(row["synced_at"]),
        )

    def get_event(self, event_id: int) -> Event | None:
        row = self.conn.execute(
            "SELECT * FROM events WHERE user_id = ? AND id = ?", (self.user_id, event_id)
        ).fetchone()
        return self._row_to_event(row) if row else None

    def get_event_by_uid(self, calendar_url: str, caldav_uid: str) -> Event | None:
        row = self.conn.execute(
            "SELECT * FROM events WHERE user_id = ? AND calendar_url = ? AND caldav_uid = ?",
            (self.user_id, normalize_calendar_url(calendar_url), caldav_uid),
        ).fetchone()
        return self._row_to_event(row) if row else None

    def list_events(self, calendar_url: str | None = None) -> list[Event]:
        if calendar_url is None:
            cursor = self.conn.execute(
                "SELECT * FROM events WHERE user_id = ? ORDER BY date, start_time, id",
                (self.user_id,),
            )
        else:
            cursor = self.conn.execute(
                "SELECT * FROM events WHERE user_id = ? AND calendar_url = ? "
                "ORDER BY date, start_time, id",
                (self.user_id, normalize_calendar_url(calendar_url)),
            )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def upsert_event(self, event: Event) -> str:
        """
        Insert or update a synced event keyed by (calendar_url, caldav_uid).

        Returns 'added', 'modified' or 'unchanged' (same content hash).
        """
        calendar_url = normalize_calendar_url(event.calendar_url)
        existing = self.get_event_by_uid(calendar_url, event.caldav_uid)
        now = time.time()
        if existing is None:
            self.conn.execute(
                "INSERT INTO events "
                "(user_id, calendar_url, caldav_uid, href, etag, title, date, end_date, "
                " start_time, end_time, memo, color, source, content_hash, "
                " remote_modified_at, local_modified_at, synced_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)",
                (
                    self.user_id,
                    calendar_url,
                    event.caldav_uid,
                    event.href,
                    event.etag,
                    event.title,
                    event.date,
                    event.end_date,
                    event.start_time,
                    event.end_time,
                    event.memo,
                    event.color,
                    event.source,
                    event.content_hash,
                    _ts(event.remote_modified_at),
                    now,
                ),
            )
            return "added"

        changed = existing.content_hash != event.content_hash or event.content_hash is None
        self.conn.execute(
            "UPDATE events SET href = ?, etag = ?, title = ?, date = ?, end_date = ?, "
            "start_time = ?, end_time = ?, memo = ?, color = ?, source = ?, content_hash = ?, "
            "remote_modified_at = ?, local_modified_at = NULL, synced_at = ? "
            "WHERE id = ?",
            (
                event.href,
                event.etag,
                event.title,
                event.date,
                event.end_date,
                event.start_time,
                event.end_time,
                event.memo,
                event.color,
                event.source,
                event.content_hash,
                _ts(event.remote_modified_at),
                now,
                existing.id,
            ),
        )
        return "modified" if changed else "unchanged"

    def delete_event_by_href(self, href: str) -> int:
        """Delete the synced event stored under a resource URL. Missing rows are fine."""
        cursor = self.conn.execute(
            "DELETE FROM events WHERE user_id = ? AND href = ?", (self.user_id, href)
        )
        return cursor.rowcount

    def delete_event_by_uid(self, calendar_url: str, caldav_uid: str) -> int:
        cursor = self.conn.execute(
            "DELETE FROM events WHERE user_id = ? AND calendar_url = ? AND caldav_uid = ?",
            (self.user_id, normalize_calendar_url(calendar_url), caldav_uid),
        )
        return cursor.rowcount

    def delete_events_for_calendars(self, calendar_urls) -> int:
        total = 0
        for url in {normalize_calendar_url(u) for u in calendar_urls}:
            cursor = self.conn.execute(
                "DELETE FROM events WHERE user_id = ? AND calendar_url = ?", (self.user_id, url)
            )
            total += cursor.rowcount
        return total

    def delete_synced_events(self) -> int:
        """Remove every event that came from CalDAV, whatever its calendar."""
        cursor = self.conn.execute(
            "DELETE FROM events WHERE user_id = ? AND source = ?", (self.user_id, SOURCE_CALDAV)
        )
        return cursor.rowcount

    def count_events_by_calendar(self) -> dict[str, int]:
        cursor = self.conn.execute(
            "SELECT calendar_url, COUNT(*) AS count FROM events WHERE user_id = ? "
            "GROUP BY calendar_url",
            (self.user_id,),
        )
        return {row["calendar_url"]: row["count"] for row in cursor.fetchall()}

    # ------------------------------------------------------------------ #
    # User-side mutations, guarded against read-only calendars             #
    # ------------------------------------------------------------------ #

    def _require_writable(self, calendar_url: str):
        if calendar_url and not self.is_calendar_writable(calendar_url):
            raise ReadOnlyCalendarError(
                f"Calendar {calendar_url} is read-only; its events cannot be edited locally"
            )

    def update_local_event(self, event_id: int, **changes) -> Event:
        """Apply a user edit to an event and stamp local_modified_at."""
        unknown = set(changes) - _USER_EDITABLE
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        event = self.get_event(event_id)
        if event is None:
            raise KeyError(event_id)
        self._require_writable(event.calendar_url)
        if not changes:
            return event

        assignments = ", ".join(f"{name} = ?" for name in sorted(changes))
        values = [changes[name] for name in sorted(changes)]
        self.conn.execute(
            f"UPDATE events SET {assignments}, local_modified_at = ? WHERE user_id = ? AND id = ?",
            (*values, time.time(), self.user_id, event_id),
        )
        return self.get_event(event_id)

    def delete_local_event(self, event_id: int):
        event = self.get_event(event_id)
        if event is None:
            return
        self._require_writable(event.calendar_url)
        self.conn.execute(
            "DELETE FROM events WHERE user_id = ? AND id = ?", (self.user_id, event_id)
        )

    def insert_local_event(self, event: Event) -> int:
        """Create a user event; refused for read-only calendars."""
        self._require_writable(event.calendar_url)
        calendar_url = normalize_calendar_url(event.calendar_url) if event.calendar_url else ""
        cursor = self.conn.execute(
            "INSERT INTO events "
            "(user_id, calendar_url, caldav_uid, href, etag, title, date, end_date, "
            " start_time, end_time, memo, color, source, content_hash, local_modified_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self.user_id,
                calendar_url,
                event.caldav_uid,
                event.href,
                event.etag,
                event.title,
                event.date,
                event.end_date,
                event.start_time,
                event.end_time,
                event.memo,
                event.color,
                event.source,
                event.content_hash,
                time.time(),
            ),
        )
        return cursor.lastrowid

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> list:
    """
    Return one aggregate row per (user, calendar) recorded in the database.

    Each row exposes: user_id, calendar_url, display_name, events, has_token,
    last_synced_at. Returns an empty list when the DB file does not exist yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "calendar_metadata" not in tables:
            return []
        cursor = conn.execute("""
            SELECT
                m.user_id,
                m.url                       AS calendar_url,
                m.display_name,
                m.read_only,
                m.is_subscription,
                (SELECT COUNT(*) FROM events e
                   WHERE e.user_id = m.user_id AND e.calendar_url = m.url) AS events,
                EXISTS (SELECT 1 FROM sync_tokens t
                   WHERE t.user_id = m.user_id AND t.calendar_url = m.url) AS has_token,
                m.last_synced_at
            FROM calendar_metadata m
            ORDER BY m.user_id, m.display_name
        """)
        return cursor.fetchall()
    finally:
        conn.close()
