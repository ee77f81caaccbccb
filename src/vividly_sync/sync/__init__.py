"""
SyncEngine: pulls remote changes for the selected calendars into the local store.
"""

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import as_completed
from datetime import datetime
from zoneinfo import ZoneInfo

from vividly_sync.db import StateDatabase
from vividly_sync.ical import to_local_event
from vividly_sync.models import DEFAULT_COLOR
from vividly_sync.models import CalendarFailure
from vividly_sync.models import CalendarSyncError
from vividly_sync.models import ProtocolError
from vividly_sync.models import Session
from vividly_sync.models import SyncCancelledError
from vividly_sync.models import SyncInProgressError
from vividly_sync.models import SyncResult
from vividly_sync.models import TokenInvalidated
from vividly_sync.sync.apply import FetchedCalendar
from vividly_sync.sync.apply import apply_fetched
from vividly_sync.sync.locks import acquire_calendar
from vividly_sync.sync.teardown import teardown
from vividly_sync.urls import normalize_calendar_url

__all__ = ["SyncEngine", "teardown"]


class SyncEngine:
    """
    Main synchronization engine.

    Fetching and mapping run concurrently, one worker per calendar. Applying
    runs on the calling thread, one calendar at a time, because the sqlite
    connection belongs to that thread.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        client,
        max_workers: int = 4,
        lock_timeout: float = 0,
        tz: ZoneInfo | None = None,
    ):
        self.state_db = state_db
        self.client = client
        self.max_workers = max(1, max_workers)
        self.lock_timeout = lock_timeout
        self.tz = tz or ZoneInfo("UTC")
        self.logger = logging.getLogger(__name__)

    def sync(
        self,
        session: Session,
        selected_urls,
        last_sync_at: datetime | None,
        force_full: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """
        Sync every selected calendar and return aggregated counts and failures.

        last_sync_at=None (or force_full) ignores stored tokens and fetches a
        full snapshot of each calendar.
        """
        result = SyncResult()
        urls = sorted({normalize_calendar_url(u) for u in selected_urls})
        if not urls:
            return result

        fresh = force_full or last_sync_at is None
        if fresh:
            self.logger.info(f"Full sync of {len(urls)} calendar(s)")
        metadata = self.state_db.get_calendar_metadata()

        held = []
        jobs = []
        try:
            for url in urls:
                try:
                    held.append(acquire_calendar(session.user_id, url, self.lock_timeout))
                except SyncInProgressError as e:
                    self.logger.warning(str(e))
                    result.failures.append(CalendarFailure(url, e.kind, str(e)))
                    continue
                token = None if fresh else self.state_db.get_token(url)
                color = metadata[url].color if url in metadata else DEFAULT_COLOR
                jobs.append((url, token, color))

            if jobs:
                self._run_jobs(jobs, result, cancel_event)
        finally:
            for lock in held:
                lock.release()

        self.logger.info(
            f"Sync finished: {result.added} added, {result.modified} modified, "
            f"{result.deleted} deleted, {len(result.failures)} failed"
        )
        return result

    def _run_jobs(self, jobs, result: SyncResult, cancel_event: threading.Event | None):
        workers = min(self.max_workers, len(jobs))
        stale: set[str] = set()  # calendars whose stored token the server rejected
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="caldav-fetch") as pool:
            futures = {
                pool.submit(self._fetch_and_map, url, token, color, cancel_event, stale): url
                for url, token, color in jobs
            }
            for future in as_completed(futures):
                url = futures[future]
                try:
                    fetched = future.result()
                    if cancel_event is not None and cancel_event.is_set():
                        raise SyncCancelledError(f"Sync of {url} cancelled before apply")
                    counts = apply_fetched(self.state_db, fetched)
                except CalendarSyncError as e:
                    self._record_failure(result, url, e.kind, str(e))
                    if url in stale:
                        with self.state_db.transaction():
                            self.state_db.clear_token(url)
                except sqlite3.Error as e:
                    self._record_failure(result, url, "apply", f"Local apply failed: {e}")
                except Exception as e:
                    self.logger.exception(f"Unexpected error while syncing {url}")
                    self._record_failure(result, url, "protocol", f"Unexpected error: {e}")
                else:
                    result.added += counts.added
                    result.modified += counts.modified
                    result.deleted += counts.deleted
                    result.skipped += counts.skipped
                    result.synced_calendars.append(url)

    def _record_failure(self, result: SyncResult, url: str, kind: str, message: str):
        self.logger.error(f"Calendar {url} failed ({kind}): {message}")
        result.failures.append(CalendarFailure(url, kind, message))

    def _fetch_and_map(
        self,
        url: str,
        token: str | None,
        color: str,
        cancel_event: threading.Event | None,
        stale: set[str],
    ) -> FetchedCalendar:
        """Worker: fetch one calendar's changes and map them to local events."""
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError(f"Sync of {url} cancelled before fetch")

        invalidated = False
        try:
            changes = self.client.fetch_changes(url, token)
        except TokenInvalidated:
            if token is None:
                raise
            self.logger.warning(f"Sync token for {url} rejected; running a full resync")
            invalidated = True
            stale.add(url)
            # Exactly one retry; a second failure propagates
            changes = self.client.fetch_changes(url, None)

        fetched = FetchedCalendar(
            calendar_url=url, changes=changes, token_invalidated=invalidated
        )
        for remote in changes.events:
            if changes.full_snapshot:
                fetched.seen_hrefs.add(normalize_calendar_url(remote.href, url + "/"))
            try:
                event = to_local_event(remote, url, color, self.tz)
            except (ProtocolError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unparsable event {remote.href}: {e}")
                fetched.unparsable += 1
                continue
            if event is not None:
                fetched.events.append(event)
        return fetched

    def teardown(self, session: Session, credential_store=None) -> dict[str, int]:
        """Remove every synced event, token, metadata row and the settings."""
        return teardown(self.state_db, session, credential_store)
