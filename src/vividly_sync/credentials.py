"""
Credential storage with an explicit precedence between two sources.

The secure source is the credential proxy: a JSON endpoint that keeps the
CalDAV password server-side and hands back an opaque setting id. The legacy
source is the local sync_settings row written by older clients; it is only
consulted when the proxy cannot be used, and it never yields a password.
"""

import logging

import requests

from vividly_sync.db import StateDatabase
from vividly_sync.models import DEFAULT_TIMEOUT
from vividly_sync.models import AuthenticationError
from vividly_sync.models import CalendarSyncError
from vividly_sync.models import LoadedSettings
from vividly_sync.models import PreconditionError
from vividly_sync.models import ProtocolError
from vividly_sync.models import Session
from vividly_sync.models import SyncSettings
from vividly_sync.models import TransportError

logger = logging.getLogger(__name__)


def mask_username(username: str | None) -> str:
    """'alice@example.com' -> 'a***@example.com'."""
    if not username:
        return ""
    name, sep, domain = username.partition("@")
    return f"{name[:1]}***{sep}{domain}"


class CredentialProxy:
    """Thin JSON-over-HTTPS client for the credential proxy endpoint."""

    def __init__(
        self,
        session: Session,
        timeout: float = DEFAULT_TIMEOUT,
        http: requests.Session | None = None,
    ):
        self.session = session
        self.timeout = timeout
        self.http = http or requests.Session()

    def call(self, action: str, **payload) -> dict:
        if not self.session.is_active:
            raise PreconditionError("No active session for the credential proxy")

        logger.debug(f"Credential proxy call: {action}")
        try:
            response = self.http.post(
                self.session.proxy_url,
                json={"action": action, **payload},
                headers={"Authorization": f"Bearer {self.session.access_token}"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransportError(f"Credential proxy timed out during {action}") from e
        except requests.RequestException as e:
            raise TransportError(f"Credential proxy unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Credential proxy rejected the session (HTTP {response.status_code})"
            )

        try:
            data = response.json()
        except ValueError:
            raise ProtocolError(
                f"Credential proxy returned non-JSON for {action} (HTTP {response.status_code})"
            ) from None

        if not isinstance(data, dict):
            raise ProtocolError(f"Credential proxy returned an unexpected body for {action}")
        if not response.ok or data.get("error"):
            message = data.get("error") or f"HTTP {response.status_code}"
            raise ProtocolError(f"Credential proxy {action} failed: {message}")
        return data


class SecureSettingsSource:
    """Authoritative settings held behind the credential proxy."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, http: requests.Session | None = None):
        self.timeout = timeout
        self.http = http

    def _proxy(self, session: Session) -> CredentialProxy:
        return CredentialProxy(session, timeout=self.timeout, http=self.http)

    def load(self, session: Session) -> LoadedSettings:
        data = self._proxy(session).call("loadSettings")
        if not data.get("exists"):
            return LoadedSettings(exists=False, authoritative=True, source="secure")
        return LoadedSettings(
            exists=True,
            server_url=data.get("serverUrl"),
            username=data.get("username"),
            setting_id=data.get("settingId"),
            has_password=bool(data.get("hasPassword")),
            authoritative=True,
            source="secure",
        )

    def save(self, session: Session, server_url: str, username: str, password: str) -> str:
        data = self._proxy(session).call(
            "saveSettings", serverUrl=server_url, username=username, password=password
        )
        setting_id = data.get("settingId")
        if data.get("success") is False or not setting_id:
            raise ProtocolError("Credential proxy did not return a setting id")
        return str(setting_id)

    def delete(self, session: Session) -> bool:
        self._proxy(session).call("deleteSettings")
        return True


class LegacySettingsSource:
    """Non-authoritative settings left in the local state database."""

    def __init__(self, state_db: StateDatabase):
        self.state_db = state_db

    def load(self) -> LoadedSettings:
        settings = self.state_db.get_settings()
        if settings is None:
            return LoadedSettings(exists=False, authoritative=False, source="legacy")
        return LoadedSettings(
            exists=True,
            server_url=settings.server_url,
            username=settings.username,
            setting_id=settings.setting_id,
            has_password=False,
            authoritative=False,
            source="legacy",
        )


class CredentialStore:
    """Loads, saves and deletes CalDAV credentials for one user."""

    def __init__(
        self,
        state_db: StateDatabase,
        secure: SecureSettingsSource | None = None,
        legacy: LegacySettingsSource | None = None,
    ):
        self.state_db = state_db
        self.secure = secure or SecureSettingsSource()
        self.legacy = legacy or LegacySettingsSource(state_db)

    def load_settings(self, session: Session | None) -> LoadedSettings:
        if session is not None and session.is_active:
            try:
                return self.secure.load(session)
            except (AuthenticationError, TransportError, ProtocolError) as e:
                logger.warning(f"Secure settings unavailable, using local settings: {e}")
        else:
            logger.debug("No active session; reading local settings")
        return self.legacy.load()

    def save_settings(
        self, session: Session | None, server_url: str, username: str, password: str
    ) -> str:
        """
        Store credentials behind the proxy and return the setting id.

        Raises on failure without touching local settings. On success the
        local row records the setting id and drops any stored password.
        """
        if session is None or not session.is_active:
            raise PreconditionError("Saving credentials requires an active session")
        if not server_url or not username or not password:
            raise PreconditionError("Server URL, username and password are required")

        setting_id = self.secure.save(session, server_url, username, password)
        logger.info(f"Credentials saved for {mask_username(username)}")

        with self.state_db.transaction():
            settings = self.state_db.get_settings()
            if settings is None:
                settings = SyncSettings(server_url=server_url, username=username)
            elif settings.server_url != server_url or settings.username != username:
                # A different account invalidates any recorded checkpoint
                settings.server_url = server_url
                settings.username = username
                settings.last_sync_at = None
            settings.setting_id = setting_id
            settings.password = None
            self.state_db.save_settings(settings)
        return setting_id

    def delete_settings(self, session: Session | None) -> bool:
        """Remove the stored credential; no proxy or session counts as already deleted."""
        if session is not None and session.is_active:
            self.secure.delete(session)
        else:
            logger.debug("No active session; nothing to delete behind the proxy")
        with self.state_db.transaction():
            self.state_db.clear_all_tokens()
        return True

    def migrate_legacy(self, session: Session | None, password: str | None = None) -> str | None:
        """
        Move legacy local settings behind the proxy.

        Uses a password still stored locally, else the one given. Returns the
        new setting id, or None when there is nothing to migrate.
        """
        legacy = self.state_db.get_settings()
        if legacy is None:
            return None
        if legacy.setting_id and not legacy.password and password is None:
            return None

        secret = legacy.password or password
        if not secret:
            raise PreconditionError("Local settings hold no password; supply it to migrate")
        try:
            return self.save_settings(session, legacy.server_url, legacy.username, secret)
        except CalendarSyncError:
            logger.error(f"Migration of local settings for {mask_username(legacy.username)} failed")
            raise
