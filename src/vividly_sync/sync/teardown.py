"""
Disconnect: remove everything the sync ever wrote for a user.
"""

import logging

from vividly_sync.db import StateDatabase
from vividly_sync.models import Session

logger = logging.getLogger(__name__)


def teardown(state_db: StateDatabase, session: Session, credential_store=None) -> dict[str, int]:
    """
    Delete synced events, sync tokens, calendar metadata and sync settings.

    All local deletions run in one transaction. The stored credential is
    removed before that transaction commits; if removing it fails the local
    deletions are rolled back and the error propagates, so the caller either
    sees everything gone or nothing changed.
    """
    logger.warning("Removing all CalDAV data for this account...")

    with state_db.transaction():
        settings = state_db.get_settings()
        calendar_urls = set(state_db.get_calendar_metadata())
        calendar_urls |= set(state_db.get_all_tokens())
        if settings is not None:
            calendar_urls |= settings.selected_calendar_urls

        events = state_db.delete_events_for_calendars(calendar_urls)
        # Synced events whose calendar was deselected before disconnecting
        events += state_db.delete_synced_events()
        tokens = state_db.clear_all_tokens()
        calendars = state_db.clear_calendar_metadata()
        state_db.delete_settings()

        if credential_store is not None:
            credential_store.delete_settings(session)

    summary = {"events": events, "tokens": tokens, "calendars": calendars}
    logger.info(
        f"Disconnect complete: removed {events} event(s), {tokens} token(s), "
        f"{calendars} calendar(s)"
    )
    return summary
