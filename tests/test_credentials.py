"""
Tests for the credential store: source precedence, the proxy JSON contract and
legacy migration.
"""

import json
from datetime import datetime
from datetime import timezone

import pytest
import requests
import responses

from vividly_sync.credentials import CredentialProxy
from vividly_sync.credentials import CredentialStore
from vividly_sync.credentials import mask_username
from vividly_sync.models import AuthenticationError
from vividly_sync.models import PreconditionError
from vividly_sync.models import ProtocolError
from vividly_sync.models import SyncSettings
from vividly_sync.models import TransportError
from tests.conftest import HOME_CAL
from tests.conftest import PROXY_URL
from tests.conftest import SERVER


def _sent(call) -> dict:
    return json.loads(call.request.body)


@pytest.fixture
def store(state_db):
    return CredentialStore(state_db)


class TestProxy:
    @responses.activate
    def test_posts_action_with_bearer_token(self, session):
        responses.add(responses.POST, PROXY_URL, json={"exists": False})

        assert CredentialProxy(session).call("loadSettings") == {"exists": False}
        request = responses.calls[0].request
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert _sent(responses.calls[0]) == {"action": "loadSettings"}

    def test_inactive_session(self, offline_session):
        with pytest.raises(PreconditionError):
            CredentialProxy(offline_session).call("loadSettings")

    @responses.activate
    def test_rejected_session(self, session):
        responses.add(responses.POST, PROXY_URL, status=401, json={"error": "expired"})
        with pytest.raises(AuthenticationError):
            CredentialProxy(session).call("loadSettings")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"body": "<html>gateway</html>", "status": 502},
            {"json": ["not", "a", "dict"]},
            {"json": {"error": "boom"}, "status": 500},
        ],
    )
    @responses.activate
    def test_bad_answers(self, session, kwargs):
        responses.add(responses.POST, PROXY_URL, **kwargs)
        with pytest.raises(ProtocolError):
            CredentialProxy(session).call("loadSettings")

    @responses.activate
    def test_timeout(self, session):
        responses.add(responses.POST, PROXY_URL, body=requests.exceptions.ReadTimeout())
        with pytest.raises(TransportError):
            CredentialProxy(session).call("loadSettings")


class TestLoad:
    @responses.activate
    def test_secure_source_wins(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url="https://old.example.com", username="old"))
        state_db.commit()
        responses.add(
            responses.POST,
            PROXY_URL,
            json={
                "exists": True,
                "serverUrl": SERVER,
                "username": "alice@example.com",
                "settingId": "set-1",
                "hasPassword": True,
            },
        )

        loaded = store.load_settings(session)
        assert loaded.source == "secure"
        assert loaded.authoritative
        assert loaded.server_url == SERVER
        assert loaded.setting_id == "set-1"
        assert loaded.has_password

    @responses.activate
    def test_proxy_failure_falls_back_to_legacy(self, store, state_db, session):
        state_db.save_settings(
            SyncSettings(server_url=SERVER, username="alice", password="legacy-secret")
        )
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, status=503, body="unavailable")

        loaded = store.load_settings(session)
        assert loaded.source == "legacy"
        assert not loaded.authoritative
        assert loaded.username == "alice"
        # The legacy source never hands out a password
        assert not loaded.has_password

    def test_no_session_reads_legacy(self, store, offline_session):
        loaded = store.load_settings(offline_session)
        assert not loaded.exists
        assert loaded.source == "legacy"

    @pytest.mark.parametrize("status", [401, 403])
    @responses.activate
    def test_rejected_session_falls_back_to_legacy(self, store, state_db, session, status):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice"))
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, status=status, json={"error": "JWT expired"})

        loaded = store.load_settings(session)
        assert loaded.exists
        assert loaded.source == "legacy"
        assert not loaded.authoritative
        assert loaded.server_url == SERVER



class TestSave:
    @responses.activate
    def test_saves_and_records_setting_id(self, store, state_db, session):
        state_db.save_settings(
            SyncSettings(
                server_url=SERVER,
                username="alice",
                password="plain",
                selected_calendar_urls={HOME_CAL},
                last_sync_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            )
        )
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, json={"success": True, "settingId": "set-9"})

        assert store.save_settings(session, SERVER, "alice", "app-pass") == "set-9"

        sent = _sent(responses.calls[0])
        assert sent == {
            "action": "saveSettings",
            "serverUrl": SERVER,
            "username": "alice",
            "password": "app-pass",
        }
        settings = state_db.get_settings()
        assert settings.setting_id == "set-9"
        assert settings.password is None
        assert settings.selected_calendar_urls == {HOME_CAL}
        assert settings.last_sync_at is not None

    @responses.activate
    def test_account_change_resets_checkpoint(self, store, state_db, session):
        state_db.save_settings(
            SyncSettings(
                server_url=SERVER,
                username="alice",
                last_sync_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            )
        )
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, json={"success": True, "settingId": "set-2"})

        store.save_settings(session, SERVER, "bob", "pw")
        settings = state_db.get_settings()
        assert settings.username == "bob"
        assert settings.last_sync_at is None

    @responses.activate
    def test_failure_leaves_local_settings_untouched(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice", setting_id="old"))
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, json={"success": False})

        with pytest.raises(ProtocolError):
            store.save_settings(session, SERVER, "alice", "pw")
        assert state_db.get_settings().setting_id == "old"

    def test_requires_session_and_fields(self, store, session, offline_session):
        with pytest.raises(PreconditionError):
            store.save_settings(offline_session, SERVER, "alice", "pw")
        with pytest.raises(PreconditionError):
            store.save_settings(session, SERVER, "alice", "")


class TestDelete:
    @responses.activate
    def test_delete_clears_tokens(self, store, state_db, session):
        state_db.set_token(HOME_CAL, "tok")
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, json={"success": True})

        assert store.delete_settings(session) is True
        assert _sent(responses.calls[0]) == {"action": "deleteSettings"}
        assert state_db.get_all_tokens() == {}

    def test_delete_without_session(self, store, state_db, offline_session):
        state_db.set_token(HOME_CAL, "tok")
        assert store.delete_settings(offline_session) is True
        assert state_db.get_all_tokens() == {}


class TestMigrate:
    def test_nothing_to_migrate(self, store, session):
        assert store.migrate_legacy(session) is None

    @responses.activate
    def test_local_password_moves_behind_proxy(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice", password="plain"))
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, json={"success": True, "settingId": "set-5"})

        assert store.migrate_legacy(session) == "set-5"
        assert _sent(responses.calls[0])["password"] == "plain"
        settings = state_db.get_settings()
        assert settings.password is None
        assert settings.setting_id == "set-5"

    def test_already_migrated(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice", setting_id="s"))
        state_db.commit()
        assert store.migrate_legacy(session) is None

    def test_missing_password(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice"))
        state_db.commit()
        with pytest.raises(PreconditionError):
            store.migrate_legacy(session)

    @responses.activate
    def test_proxy_failure_keeps_legacy_row(self, store, state_db, session):
        state_db.save_settings(SyncSettings(server_url=SERVER, username="alice", password="plain"))
        state_db.commit()
        responses.add(responses.POST, PROXY_URL, status=500, json={"error": "down"})

        with pytest.raises(ProtocolError):
            store.migrate_legacy(session)
        assert state_db.get_settings().password == "plain"


def test_mask_username():
    assert mask_username("alice@example.com") == "a***@example.com"
    assert mask_username("bob") == "b***"
    assert mask_username(None) == ""
