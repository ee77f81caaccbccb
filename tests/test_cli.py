"""
CLI smoke tests through typer's CliRunner; none of them reach the network.
"""

import json

import pytest
import responses
from typer.testing import CliRunner

from vividly_sync.cli import app
from vividly_sync.db import StateDatabase
from vividly_sync.models import CalendarMetadata
from vividly_sync.models import Event
from vividly_sync.models import SyncSettings
from tests.conftest import HOME_CAL
from tests.conftest import PROXY_URL
from tests.conftest import SERVER

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "vividly-sync.conf"
    path.write_text("[vividly-sync]\nuser_id = cli-user\ntimezone = Europe/Berlin\n")
    return path


def _invoke(config_path, db_path, *args):
    return runner.invoke(app, ["--config", str(config_path), "--state-db", str(db_path), *args])


@pytest.fixture
def populated_db(db_path):
    with StateDatabase(db_path, "cli-user") as db:
        db.save_settings(
            SyncSettings(
                server_url=SERVER,
                username="alice@example.com",
                setting_id="set-1",
                selected_calendar_urls={HOME_CAL},
            )
        )
        db.save_calendar_metadata([CalendarMetadata(url=HOME_CAL, display_name="Home")])
        db.upsert_event(
            Event(calendar_url=HOME_CAL, caldav_uid="E1", title="Standup", date="2026-03-01")
        )
        db.set_token(HOME_CAL, "tok-1")
        db.commit()
    return db_path


def test_status_without_database(config_path, db_path):
    result = _invoke(config_path, db_path, "status")
    assert result.exit_code == 0
    assert "No state database yet" in result.output


def test_status_lists_calendars(config_path, populated_db):
    result = _invoke(config_path, populated_db, "status")
    assert result.exit_code == 0
    assert "a***@example.com" in result.output
    assert "Home" in result.output


def test_sync_without_selection(config_path, db_path):
    result = _invoke(config_path, db_path, "sync")
    assert result.exit_code == 1
    assert "No calendars selected" in result.output


def test_calendars_stops_at_preflight(tmp_path, db_path):
    config_path = tmp_path / "bad.conf"
    config_path.write_text(
        f"[vividly-sync]\nserver_url = {SERVER}\nusername = alice\ntimezone = Mars/Olympus\n"
    )
    result = _invoke(config_path, db_path, "calendars", "--password", "pw")
    assert result.exit_code == 1
    assert "Preflight checks failed" in result.output


def test_invalid_number_in_config(tmp_path, db_path):
    config_path = tmp_path / "bad.conf"
    config_path.write_text("[vividly-sync]\nmax_workers = many\n")
    result = _invoke(config_path, db_path, "status")
    assert result.exit_code == 1
    assert "Invalid value" in result.output


def test_disconnect(config_path, populated_db):
    result = _invoke(config_path, populated_db, "disconnect", "--yes")
    assert result.exit_code == 0, result.output
    assert "Disconnected" in result.output

    with StateDatabase(populated_db, "cli-user") as db:
        assert db.get_settings() is None
        assert db.list_events() == []
        assert db.get_all_tokens() == {}


def test_migrate_with_nothing_to_migrate(config_path, db_path):
    result = _invoke(config_path, db_path, "migrate-credentials")
    assert result.exit_code == 0
    assert "Nothing to migrate" in result.output


def test_disconnect_without_database_or_session(config_path, db_path):
    result = _invoke(config_path, db_path, "disconnect", "--yes")
    assert result.exit_code == 0
    assert "Nothing to remove" in result.output
    assert not db_path.exists()


@responses.activate
def test_disconnect_without_database_removes_stored_credential(tmp_path, db_path):
    config_path = tmp_path / "online.conf"
    config_path.write_text(
        f"[vividly-sync]\nuser_id = cli-user\nproxy_url = {PROXY_URL}\naccess_token = token-abc\n"
    )
    responses.add(responses.POST, PROXY_URL, json={"success": True})

    result = _invoke(config_path, db_path, "disconnect", "--yes")

    assert result.exit_code == 0, result.output
    assert "Disconnected" in result.output
    assert len(responses.calls) == 1
    assert json.loads(responses.calls[0].request.body)["action"] == "deleteSettings"
