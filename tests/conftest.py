"""
Shared pytest fixtures and iCal helpers.
"""

import pytest

from vividly_sync.db import StateDatabase
from vividly_sync.models import CalDAVConfig
from vividly_sync.models import Session

USER_ID = "user-test"
OTHER_USER_ID = "user-other"
SERVER = "https://caldav.example.com"
HOME_CAL = f"{SERVER}/calendars/alice/home"
WORK_CAL = f"{SERVER}/calendars/alice/work"
HOLIDAYS_CAL = f"{SERVER}/calendars/alice/holidays"
PROXY_URL = "https://proxy.example.com/caldav-credentials"


def make_vevent(
    uid: str,
    summary: str = "Test Event",
    dtstart: str = "20260301T100000Z",
    dtend: str | None = "20260301T110000Z",
    extra: tuple = (),
) -> str:
    """Return a minimal, valid VCALENDAR holding one VEVENT."""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Test//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        f"DTSTART:{dtstart}" if "T" in dtstart else f"DTSTART;VALUE=DATE:{dtstart}",
    ]
    if dtend is not None:
        lines.append(f"DTEND:{dtend}" if "T" in dtend else f"DTEND;VALUE=DATE:{dtend}")
    lines.append("DTSTAMP:20260224T000000Z")
    lines.extend(extra)
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"


def make_all_day_vevent(uid: str, start: str, end: str, summary: str = "All Day") -> str:
    """VALUE=DATE event; ``end`` is the exclusive DTEND."""
    return make_vevent(uid, summary, dtstart=start, dtend=end)


def make_todo(uid: str) -> str:
    """A calendar object without any VEVENT."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "BEGIN:VTODO\r\n"
        f"UID:{uid}\r\n"
        "SUMMARY:Buy milk\r\n"
        "END:VTODO\r\n"
        "END:VCALENDAR\r\n"
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path, USER_ID) as db:
        yield db


@pytest.fixture
def session():
    return Session(user_id=USER_ID, access_token="token-abc", proxy_url=PROXY_URL)


@pytest.fixture
def offline_session():
    return Session(user_id=USER_ID)


@pytest.fixture
def caldav_config():
    return CalDAVConfig(server_url=SERVER, username="alice@example.com", password="app-pass")
