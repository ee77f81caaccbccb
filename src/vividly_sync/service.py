"""
The operations the rest of the application calls.

get_calendars, sync_selected_calendars, normalize_calendar_url and
delete_all_caldav_data form the whole contract; the other methods support
the connect flow (loading settings, remembering credentials, recording the
user's calendar selection).
"""

import logging
import threading
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo

from vividly_sync.caldav_client import CalDAVClient
from vividly_sync.caldav_client import ProxyRelayTransport
from vividly_sync.credentials import CredentialProxy
from vividly_sync.credentials import CredentialStore
from vividly_sync.credentials import mask_username
from vividly_sync.db import StateDatabase
from vividly_sync.models import AppConfig
from vividly_sync.models import CalDAVConfig
from vividly_sync.models import Calendar
from vividly_sync.models import CalendarMetadata
from vividly_sync.models import CalendarSyncError
from vividly_sync.models import LoadedSettings
from vividly_sync.models import PreconditionError
from vividly_sync.models import Session
from vividly_sync.models import SyncResult
from vividly_sync.models import SyncSettings
from vividly_sync.sync import SyncEngine
from vividly_sync.sync import teardown
from vividly_sync.urls import normalize_calendar_url as _normalize

logger = logging.getLogger(__name__)


class CalDAVSyncService:
    def __init__(
        self,
        session: Session,
        state_db: StateDatabase,
        credential_store: CredentialStore | None = None,
        client_factory=None,
        app_config: AppConfig | None = None,
    ):
        self.session = session
        self.state_db = state_db
        self.credential_store = credential_store or CredentialStore(state_db)
        self.client_factory = client_factory
        self.app_config = app_config or AppConfig()

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _window(self) -> tuple[datetime, datetime] | None:
        cfg = self.app_config
        if cfg.window_past_days is None and cfg.window_future_days is None:
            return None
        now = datetime.now(timezone.utc)
        return (
            now - timedelta(days=cfg.window_past_days or 0),
            now + timedelta(days=cfg.window_future_days or 0),
        )

    def make_client(self, config: CalDAVConfig):
        if self.client_factory is not None:
            return self.client_factory(config)
        if config.password:
            return CalDAVClient(config, timeout=self.app_config.timeout, window=self._window())
        if config.setting_id and self.session.is_active:
            transport = ProxyRelayTransport(
                CredentialProxy(self.session, timeout=self.app_config.timeout), config.setting_id
            )
            return CalDAVClient(
                config, transport=transport, timeout=self.app_config.timeout, window=self._window()
            )
        raise PreconditionError("A password or an active session with stored credentials is required")

    def load_settings(self) -> LoadedSettings:
        return self.credential_store.load_settings(self.session)

    def build_config(
        self, server_url: str | None = None, username: str | None = None, password: str | None = None
    ) -> CalDAVConfig:
        """Fill in whatever the caller left out from the stored settings."""
        loaded = self.load_settings()
        server_url = server_url or loaded.server_url or ""
        username = username or loaded.username or ""
        setting_id = None
        same_account = server_url == loaded.server_url and username == loaded.username
        if not password and loaded.exists and same_account:
            setting_id = loaded.setting_id
        return CalDAVConfig(
            server_url=server_url, username=username, password=password, setting_id=setting_id
        )

    def save_credentials(self, config: CalDAVConfig) -> str | None:
        """
        Remember the credentials behind the proxy after a successful discovery.

        Failures are logged and swallowed: they must not block discovery or sync.
        """
        if not config.password or not self.session.is_active:
            return None
        try:
            setting_id = self.credential_store.save_settings(
                self.session, config.server_url, config.username, config.password
            )
        except CalendarSyncError as e:
            logger.warning(f"Could not save credentials for {mask_username(config.username)}: {e}")
            return None
        config.setting_id = setting_id
        return setting_id

    def select_calendars(
        self, config: CalDAVConfig, calendars: list[Calendar], urls
    ) -> set[str]:
        """Persist metadata for the chosen calendars and record the selection."""
        known = {_normalize(c.url): c for c in calendars}
        selected = {_normalize(u) for u in urls}
        missing = selected - set(known)
        if missing:
            logger.warning(f"Ignoring {len(missing)} calendar(s) not offered by the server")
            selected -= missing

        with self.state_db.transaction():
            self.state_db.save_calendar_metadata(
                [CalendarMetadata.from_calendar(known[url]) for url in sorted(selected)]
            )
            settings = self.state_db.get_settings()
            if settings is None:
                settings = SyncSettings(server_url=config.server_url, username=config.username)
            elif settings.server_url != config.server_url or settings.username != config.username:
                settings.server_url = config.server_url
                settings.username = config.username
                settings.last_sync_at = None
            settings.selected_calendar_urls = selected
            settings.setting_id = config.setting_id or settings.setting_id
            settings.password = None
            self.state_db.save_settings(settings)
        return selected

    # ------------------------------------------------------------------ #
    # Public contract                                                      #
    # ------------------------------------------------------------------ #

    def get_calendars(self, config: CalDAVConfig) -> list[Calendar]:
        """Authenticate and list the account's calendars. Touches no local data."""
        config.validate()
        client = self.make_client(config)
        calendars = client.authenticate_and_discover()
        self.save_credentials(config)
        return calendars

    def sync_selected_calendars(
        self,
        config: CalDAVConfig,
        urls,
        last_sync_at: datetime | None,
        force_full: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        config.validate()
        client = self.make_client(config)
        engine = SyncEngine(
            self.state_db,
            client,
            max_workers=self.app_config.max_workers,
            tz=ZoneInfo(self.app_config.timezone),
        )
        result = engine.sync(
            self.session, urls, last_sync_at, force_full=force_full, cancel_event=cancel_event
        )
        if result.synced_calendars:
            with self.state_db.transaction():
                self.state_db.update_last_sync_at(datetime.now(timezone.utc))
        return result

    @staticmethod
    def normalize_calendar_url(url: str) -> str:
        return _normalize(url)

    def delete_all_caldav_data(self) -> dict[str, int]:
        return teardown(self.state_db, self.session, self.credential_store)
