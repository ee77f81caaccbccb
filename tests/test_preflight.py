"""
Unit tests for the preflight checks.
"""

from rich.console import Console

from vividly_sync.models import AppConfig
from vividly_sync.models import CalDAVConfig
from vividly_sync.preflight import collect_issues
from vividly_sync.preflight import run_preflight_checks
from tests.conftest import SERVER


def test_clean_configuration(db_path, caldav_config):
    assert collect_issues(AppConfig(state_db_path=db_path), caldav_config) == []


def test_missing_account_fields(db_path):
    issues = collect_issues(
        AppConfig(state_db_path=db_path), CalDAVConfig(server_url=SERVER, username="")
    )
    assert [label for label, _, _ in issues] == ["Account"]


def test_unknown_time_zone(db_path, caldav_config):
    issues = collect_issues(AppConfig(state_db_path=db_path, timezone="Mars/Olympus"), caldav_config)
    assert [label for label, _, _ in issues] == ["Time zone"]


def test_unusable_state_db(tmp_path, caldav_config):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    issues = collect_issues(AppConfig(state_db_path=blocker / "state.db"), caldav_config)
    assert [label for label, _, _ in issues] == ["State database"]


def test_corrupt_state_db(tmp_path, caldav_config):
    db_path = tmp_path / "state.db"
    db_path.write_bytes(b"this is not sqlite" * 100)
    issues = collect_issues(AppConfig(state_db_path=db_path), caldav_config)
    assert [label for label, _, _ in issues] == ["State database"]


def test_run_prints_panel(db_path):
    console = Console(record=True, width=120)
    ok = run_preflight_checks(
        AppConfig(state_db_path=db_path, timezone="Mars/Olympus"), None, console
    )
    assert not ok
    text = console.export_text()
    assert "Preflight checks failed" in text
    assert "Mars/Olympus" in text
