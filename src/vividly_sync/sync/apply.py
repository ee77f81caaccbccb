"""
Apply one calendar's fetched changes to the local store.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timezone

from vividly_sync.db import StateDatabase
from vividly_sync.models import SOURCE_CALDAV
from vividly_sync.models import ChangeSet
from vividly_sync.models import Event

logger = logging.getLogger(__name__)


@dataclass
class FetchedCalendar:
    """Output of the fetch-and-map stage for one calendar."""

    calendar_url: str
    changes: ChangeSet
    events: list[Event] = field(default_factory=list)
    # Every resource href seen in a snapshot, including ones we could not parse
    seen_hrefs: set[str] = field(default_factory=set)
    unparsable: int = 0
    token_invalidated: bool = False


@dataclass
class ApplyCounts:
    added: int = 0
    modified: int = 0
    deleted: int = 0
    skipped: int = 0


def local_edit_wins(existing: Event, incoming: Event) -> bool:
    """
    True when a local edit made since the last sync should survive this sync.

    Only a remote LAST-MODIFIED that is not strictly newer than the local edit
    keeps the local copy; without a remote revision stamp the remote wins.
    """
    if existing.local_modified_at is None:
        return False
    if existing.synced_at is not None and existing.local_modified_at <= existing.synced_at:
        return False
    if incoming.remote_modified_at is None:
        return False
    return incoming.remote_modified_at <= existing.local_modified_at


def _in_window(event: Event, window) -> bool:
    if window is None:
        return True
    start, end = window
    day = date.fromisoformat(event.date)
    last_day = date.fromisoformat(event.end_date) if event.end_date else day
    return last_day >= start.date() and day <= end.date()


def apply_fetched(state_db: StateDatabase, fetched: FetchedCalendar) -> ApplyCounts:
    """
    Upsert, delete and advance the token for one calendar in one transaction.

    Any exception rolls everything back, including the token, so the same
    delta is fetched again on the next pass.
    """
    url = fetched.calendar_url
    changes = fetched.changes
    counts = ApplyCounts(skipped=fetched.unparsable)

    with state_db.transaction():
        if fetched.token_invalidated:
            state_db.clear_token(url)

        seen_uids = set()
        for event in fetched.events:
            seen_uids.add(event.caldav_uid)
            existing = state_db.get_event_by_uid(url, event.caldav_uid)
            if existing is not None and local_edit_wins(existing, event):
                logger.info(f"Keeping local edit of '{existing.title}' ({event.caldav_uid})")
                counts.skipped += 1
                continue
            outcome = state_db.upsert_event(event)
            if outcome == "added":
                counts.added += 1
            elif outcome == "modified":
                counts.modified += 1

        for href in changes.deleted_urls:
            counts.deleted += state_db.delete_event_by_href(href)

        # A snapshot also tells us what is gone. An empty snapshot is more
        # likely a server hiccup than a wiped calendar, so it removes nothing.
        if changes.full_snapshot and fetched.seen_hrefs:
            for local in state_db.list_events(url):
                if local.source != SOURCE_CALDAV:
                    continue
                if local.href in fetched.seen_hrefs or local.caldav_uid in seen_uids:
                    continue
                if not _in_window(local, changes.window):
                    continue
                counts.deleted += state_db.delete_event_by_uid(url, local.caldav_uid)

        if changes.new_token:
            state_db.set_token(url, changes.new_token)
        state_db.mark_calendar_synced(url, datetime.now(timezone.utc))

    logger.debug(
        f"Applied {url}: +{counts.added} ~{counts.modified} -{counts.deleted} "
        f"(skipped {counts.skipped})"
    )
    return counts
