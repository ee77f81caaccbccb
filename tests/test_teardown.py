"""
Tests for disconnect: everything synced goes, or nothing does.
"""

import pytest

from vividly_sync.credentials import CredentialStore
from vividly_sync.models import SOURCE_LOCAL
from vividly_sync.models import CalendarMetadata
from vividly_sync.models import Event
from vividly_sync.models import ProtocolError
from vividly_sync.models import SyncSettings
from vividly_sync.sync import SyncEngine
from vividly_sync.sync import teardown
from tests.conftest import HOME_CAL
from tests.conftest import SERVER
from tests.conftest import WORK_CAL
from tests.conftest import make_vevent
from tests.fake_client import FakeCalDAVClient

UNRELATED_CAL = f"{SERVER}/calendars/alice/unrelated"


class _RecordingStore:
    """Stand-in for CredentialStore.delete_settings()."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.deleted = 0

    def delete_settings(self, session):
        self.deleted += 1
        if self.error is not None:
            raise self.error
        return True


@pytest.fixture
def synced_db(state_db, session):
    """Two selected calendars synced, plus a local event on an unrelated calendar."""
    client = FakeCalDAVClient(
        {
            HOME_CAL: {"E1": make_vevent("E1"), "E2": make_vevent("E2")},
            WORK_CAL: {"W1": make_vevent("W1")},
        }
    )
    state_db.save_calendar_metadata(
        [
            CalendarMetadata(url=HOME_CAL, display_name="Home"),
            CalendarMetadata(url=WORK_CAL, display_name="Work"),
        ]
    )
    state_db.save_settings(
        SyncSettings(
            server_url=SERVER,
            username="alice",
            setting_id="set-1",
            selected_calendar_urls={HOME_CAL, WORK_CAL},
        )
    )
    state_db.commit()
    SyncEngine(state_db, client).sync(session, [HOME_CAL, WORK_CAL], None)
    state_db.insert_local_event(
        Event(
            calendar_url=UNRELATED_CAL,
            caldav_uid="L1",
            title="Dentist",
            date="2026-03-05",
            source=SOURCE_LOCAL,
        )
    )
    state_db.commit()
    return state_db


def test_removes_all_synced_data(synced_db, session):
    store = _RecordingStore()

    summary = teardown(synced_db, session, store)

    assert summary == {"events": 3, "tokens": 2, "calendars": 2}
    assert store.deleted == 1
    assert synced_db.get_settings() is None
    assert synced_db.get_all_tokens() == {}
    assert synced_db.get_calendar_metadata() == {}
    assert [e.title for e in synced_db.list_events()] == ["Dentist"]


def test_catches_synced_events_of_deselected_calendars(synced_db, session):
    settings = synced_db.get_settings()
    settings.selected_calendar_urls = {HOME_CAL}
    synced_db.save_settings(settings)
    synced_db.clear_calendar_metadata()
    synced_db.clear_token(WORK_CAL)
    synced_db.commit()

    teardown(synced_db, session, _RecordingStore())
    assert synced_db.list_events(WORK_CAL) == []


def test_credential_failure_rolls_everything_back(synced_db, session):
    store = _RecordingStore(error=ProtocolError("Credential proxy deleteSettings failed"))

    with pytest.raises(ProtocolError):
        teardown(synced_db, session, store)

    assert synced_db.get_settings() is not None
    assert len(synced_db.get_all_tokens()) == 2
    assert len(synced_db.get_calendar_metadata()) == 2
    assert len(synced_db.list_events()) == 4


def test_teardown_twice_is_harmless(synced_db, session):
    teardown(synced_db, session, _RecordingStore())
    second = teardown(synced_db, session, _RecordingStore())
    assert second == {"events": 0, "tokens": 0, "calendars": 0}


def test_engine_delegates(synced_db, session):
    engine = SyncEngine(synced_db, FakeCalDAVClient())
    assert engine.teardown(session)["events"] == 3
    assert synced_db.get_settings() is None


def test_local_settings_not_found_afterwards(synced_db, offline_session):
    store = CredentialStore(synced_db)
    assert store.load_settings(offline_session).exists

    teardown(synced_db, offline_session, store)

    loaded = store.load_settings(offline_session)
    assert not loaded.exists
    assert loaded.source == "legacy"
