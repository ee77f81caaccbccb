"""
CalDAV protocol client: discovery, change fetching and resource writes.
"""

import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from urllib.parse import unquote
from urllib.parse import urljoin
from xml.sax.saxutils import escape

import requests

from vividly_sync.credentials import CredentialProxy
from vividly_sync.ical import normalize_color
from vividly_sync.models import DEFAULT_COLOR
from vividly_sync.models import DEFAULT_TIMEOUT
from vividly_sync.models import AuthenticationError
from vividly_sync.models import CalDAVConfig
from vividly_sync.models import Calendar
from vividly_sync.models import ChangeSet
from vividly_sync.models import PreconditionError
from vividly_sync.models import ProtocolError
from vividly_sync.models import ReadOnlyCalendarError
from vividly_sync.models import RemoteEvent
from vividly_sync.models import TokenInvalidated
from vividly_sync.models import TransportError
from vividly_sync.urls import normalize_calendar_url
from vividly_sync.urls import rebase_url
from vividly_sync.urls import resource_url
from vividly_sync.urls import server_origin

logger = logging.getLogger(__name__)

NS_DAV = "DAV:"
NS_CALDAV = "urn:ietf:params:xml:ns:caldav"
NS_CALSERVER = "http://calendarserver.org/ns/"
NS_APPLE = "http://apple.com/ns/ical/"

# iCloud only serves full calendar data to clients it recognises
USER_AGENT = "iOS/17.0 (21A329) accountsd/1.0"
MAX_REDIRECTS = 5
TIMESTAMP_TOKEN_PREFIX = "ts:"
IMPORT_FALLBACK = "Export the calendar as an .ics file and import it manually instead."

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

_PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal />
  </d:prop>
</d:propfind>
"""

_HOME_SET_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set />
  </d:prop>
</d:propfind>
"""

_CALENDARS_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav"
            xmlns:cs="http://calendarserver.org/ns/" xmlns:a="http://apple.com/ns/ical/">
  <d:prop>
    <d:displayname />
    <d:resourcetype />
    <d:sync-token />
    <d:current-user-privilege-set />
    <a:calendar-color />
    <cs:getctag />
    <c:supported-calendar-component-set />
  </d:prop>
</d:propfind>
"""

_SYNC_TOKEN_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:sync-token />
  </d:prop>
</d:propfind>
"""

_CALENDAR_QUERY_BODY = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag />
    <c:calendar-data />
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">{time_range}</c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""

_SYNC_COLLECTION_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:sync-collection xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:sync-token>{token}</d:sync-token>
  <d:sync-level>1</d:sync-level>
  <d:prop>
    <d:getetag />
    <c:calendar-data />
  </d:prop>
</d:sync-collection>
"""

_MKCALENDAR_BODY = """<?xml version="1.0" encoding="utf-8"?>
<c:mkcalendar xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav"
              xmlns:a="http://apple.com/ns/ical/">
  <d:set>
    <d:prop>
      <d:displayname>{name}</d:displayname>
      <a:calendar-color>{color}</a:calendar-color>
      <c:supported-calendar-component-set>
        <c:comp name="VEVENT" />
      </c:supported-calendar-component-set>
    </d:prop>
  </d:set>
</c:mkcalendar>
"""


def _tag(ns: str, name: str) -> str:
    return f"{{{ns}}}{name}"


def make_timestamp_token(when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"{TIMESTAMP_TOKEN_PREFIX}{when.isoformat()}"


def is_timestamp_token(token: str | None) -> bool:
    return bool(token) and token.startswith(TIMESTAMP_TOKEN_PREFIX)


def _strip_etag(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"') or None


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


@dataclass
class DAVResponse:
    status: int
    url: str
    text: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class BasicAuthTransport:
    """
    Direct HTTP transport with basic auth.

    Redirects are followed by hand: requests would turn PROPFIND/REPORT into
    GET on 301/302 and drop the Authorization header when the host changes,
    and iCloud redirects every account to a per-user shard host.
    """

    def __init__(
        self,
        username: str,
        password: str,
        timeout: float = DEFAULT_TIMEOUT,
        http: requests.Session | None = None,
    ):
        self.auth = (username.strip(), password.strip())
        self.timeout = timeout
        self.http = http or requests.Session()

    def request(
        self, method: str, url: str, headers: dict[str, str] | None = None, body: str | None = None
    ) -> DAVResponse:
        headers = {"User-Agent": USER_AGENT, **(headers or {})}
        data = body.encode("utf-8") if body is not None else None
        for _ in range(MAX_REDIRECTS + 1):
            try:
                response = self.http.request(
                    method,
                    url,
                    headers=headers,
                    data=data,
                    auth=self.auth,
                    allow_redirects=False,
                    timeout=self.timeout,
                )
            except requests.Timeout as e:
                raise TransportError(f"{method} {url} timed out", fallback=IMPORT_FALLBACK) from e
            except requests.RequestException as e:
                raise TransportError(
                    f"Could not reach the CalDAV server: {e}", fallback=IMPORT_FALLBACK
                ) from e

            location = response.headers.get("Location")
            if response.status_code in _REDIRECT_STATUSES and location:
                url = urljoin(url, location)
                logger.debug(f"{method} redirected to {url}")
                continue

            response.encoding = response.encoding or "utf-8"
            return DAVResponse(
                status=response.status_code,
                url=url,
                text=response.text,
                headers=dict(response.headers),
            )
        raise ProtocolError(f"Too many redirects for {method} {url}")


class ProxyRelayTransport:
    """
    Relays requests through the credential proxy, which attaches the stored
    password itself. Used when only a setting id is known.
    """

    def __init__(self, proxy: CredentialProxy, setting_id: str):
        self.proxy = proxy
        self.setting_id = setting_id

    def request(
        self, method: str, url: str, headers: dict[str, str] | None = None, body: str | None = None
    ) -> DAVResponse:
        data = self.proxy.call(
            "relay",
            settingId=self.setting_id,
            method=method,
            url=url,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
            body=body,
        )
        try:
            status = int(data["status"])
        except (KeyError, TypeError, ValueError):
            raise ProtocolError("Credential proxy relay returned no status") from None
        return DAVResponse(
            status=status,
            url=data.get("url") or url,
            text=data.get("body") or "",
            headers=data.get("headers") or {},
        )


# ---------------------------------------------------------------------------
# Multistatus parsing
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    href: str
    status: int | None
    props: dict[str, ET.Element]


def _status_code(text: str | None) -> int | None:
    # "HTTP/1.1 200 OK"
    if not text:
        return None
    parts = text.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def parse_multistatus(text: str) -> tuple[list[_Entry], ET.Element]:
    """Return one entry per <response>; only props with a 2xx propstat are kept."""
    try:
        root = ET.fromstring(text.encode("utf-8") if isinstance(text, str) else text)
    except ET.ParseError as e:
        raise ProtocolError(f"Malformed XML from CalDAV server: {e}") from None
    if root.tag != _tag(NS_DAV, "multistatus"):
        raise ProtocolError(f"Expected a multistatus response, got {root.tag}")

    entries = []
    for response in root.findall(_tag(NS_DAV, "response")):
        href = (response.findtext(_tag(NS_DAV, "href")) or "").strip()
        if not href:
            continue
        props: dict[str, ET.Element] = {}
        for propstat in response.findall(_tag(NS_DAV, "propstat")):
            code = _status_code(propstat.findtext(_tag(NS_DAV, "status")))
            if code is None or not 200 <= code < 300:
                continue
            prop = propstat.find(_tag(NS_DAV, "prop"))
            if prop is None:
                continue
            for node in prop:
                props[node.tag] = node
        entries.append(
            _Entry(
                href=href,
                status=_status_code(response.findtext(_tag(NS_DAV, "status"))),
                props=props,
            )
        )
    return entries, root


def _prop_href(entry: _Entry, ns: str, name: str) -> str | None:
    node = entry.props.get(_tag(ns, name))
    if node is None:
        return None
    href = (node.findtext(_tag(NS_DAV, "href")) or "").strip()
    return href or None


def _prop_text(entry: _Entry, ns: str, name: str) -> str | None:
    node = entry.props.get(_tag(ns, name))
    if node is None:
        return None
    return (node.text or "").strip() or None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CalDAVClient:
    """CalDAV operations for one account."""

    def __init__(
        self,
        config: CalDAVConfig,
        transport=None,
        timeout: float = DEFAULT_TIMEOUT,
        window: tuple[datetime, datetime] | None = None,
    ):
        config.validate()
        self.config = config
        if transport is None:
            if not config.password:
                raise PreconditionError(
                    "A stored credential reference needs a proxy relay transport"
                )
            transport = BasicAuthTransport(config.username, config.password, timeout=timeout)
        self.transport = transport
        self.window = window
        server = config.server_url.strip()
        if "://" not in server:
            server = f"https://{server}"
        self.server_url = server.rstrip("/")
        self.base_url = server_origin(self.server_url)
        self.calendar_home: str | None = None

    # ------------------------------------------------------------------ #
    # Request plumbing                                                     #
    # ------------------------------------------------------------------ #

    def _request(
        self,
        method: str,
        url: str,
        body: str | None = None,
        depth: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> DAVResponse:
        all_headers = dict(headers or {})
        if body is not None and "Content-Type" not in all_headers:
            all_headers["Content-Type"] = "application/xml; charset=utf-8"
        if depth is not None:
            all_headers["Depth"] = depth
        response = self.transport.request(method, url, headers=all_headers, body=body)
        logger.debug(f"{method} {url} -> {response.status}")
        return response

    @staticmethod
    def _raise_for_status(response: DAVResponse, method: str, url: str):
        if response.ok:
            return
        if response.status == 401:
            raise AuthenticationError(
                "The CalDAV server rejected the username or password. "
                "For iCloud, use an app-specific password."
            )
        if response.status == 403:
            raise AuthenticationError(f"Access to {url} is forbidden (HTTP 403)")
        raise ProtocolError(f"{method} {url} failed with HTTP {response.status}")

    def _propfind(self, url: str, body: str, depth: str) -> tuple[list[_Entry], str]:
        response = self._request("PROPFIND", url, body=body, depth=depth)
        self._raise_for_status(response, "PROPFIND", url)
        entries, _ = parse_multistatus(response.text)
        return entries, response.url

    def _absolute(self, href: str, base: str | None = None) -> str:
        """Resolve an href; absolute hrefs are moved onto the origin serving the request."""
        base = base or self.base_url
        if "://" in href:
            return normalize_calendar_url(rebase_url(href, base))
        return normalize_calendar_url(href, base + "/")

    # ------------------------------------------------------------------ #
    # Discovery                                                            #
    # ------------------------------------------------------------------ #

    def authenticate_and_discover(self) -> list[Calendar]:
        """
        Find the principal, its calendar home, and the calendars inside it.

        Read-only: nothing local is touched.
        """
        principal_url = self._find_principal()
        home_url = self._find_calendar_home(principal_url)
        calendars = self._list_calendars(home_url)
        if not calendars:
            raise ProtocolError("No calendars found on the CalDAV server")
        logger.info(f"Discovered {len(calendars)} calendar(s) at {self.base_url}")
        return calendars

    def _find_principal(self) -> str:
        candidates = [f"{self.server_url}/.well-known/caldav", self.server_url]
        for url in candidates:
            response = self._request("PROPFIND", url, body=_PRINCIPAL_BODY, depth="0")
            if response.status in (404, 405):
                logger.debug(f"No principal lookup at {url} (HTTP {response.status})")
                continue
            self._raise_for_status(response, "PROPFIND", url)
            # Follow the shard the server redirected us to
            self.base_url = server_origin(response.url)
            entries, _ = parse_multistatus(response.text)
            for entry in entries:
                href = _prop_href(entry, NS_DAV, "current-user-principal")
                if href:
                    return self._absolute(href)
        raise ProtocolError("The server did not report a current-user-principal")

    def _find_calendar_home(self, principal_url: str) -> str:
        entries, final_url = self._propfind(principal_url, _HOME_SET_BODY, "0")
        self.base_url = server_origin(final_url)
        for entry in entries:
            href = _prop_href(entry, NS_CALDAV, "calendar-home-set")
            if href:
                self.calendar_home = self._absolute(href)
                return self.calendar_home
        logger.debug("No calendar-home-set; listing calendars under the principal")
        self.calendar_home = normalize_calendar_url(principal_url)
        return self.calendar_home

    def _list_calendars(self, home_url: str) -> list[Calendar]:
        entries, _ = self._propfind(home_url, _CALENDARS_BODY, "1")
        home = normalize_calendar_url(home_url)
        calendars = []
        for entry in entries:
            url = self._absolute(entry.href)
            if url == home:
                continue
            calendar = self._calendar_from_entry(entry, url)
            if calendar is not None:
                calendars.append(calendar)
        return calendars

    @staticmethod
    def _calendar_from_entry(entry: _Entry, url: str) -> Calendar | None:
        resourcetype = entry.props.get(_tag(NS_DAV, "resourcetype"))
        kinds = {child.tag for child in resourcetype} if resourcetype is not None else set()
        subscribed = _tag(NS_CALSERVER, "subscribed") in kinds
        if _tag(NS_CALDAV, "calendar") not in kinds and not subscribed:
            return None

        components = entry.props.get(_tag(NS_CALDAV, "supported-calendar-component-set"))
        if components is not None:
            names = {(comp.get("name") or "").upper() for comp in components}
            if names and "VEVENT" not in names:
                logger.debug(f"Skipping {url}: no VEVENT support ({', '.join(sorted(names))})")
                return None

        last_segment = unquote(url.rstrip("/").rsplit("/", 1)[-1])
        display_name = _prop_text(entry, NS_DAV, "displayname") or last_segment

        privileges = entry.props.get(_tag(NS_DAV, "current-user-privilege-set"))
        can_write = True
        if privileges is not None:
            granted = {
                child.tag
                for privilege in privileges.findall(_tag(NS_DAV, "privilege"))
                for child in privilege
            }
            can_write = bool(
                granted
                & {_tag(NS_DAV, "write"), _tag(NS_DAV, "write-content"), _tag(NS_DAV, "all")}
            )

        is_shared = _tag(NS_CALSERVER, "shared") in kinds or (
            len(last_segment) >= 60
            and "-" not in last_segment
            and all(c in "0123456789abcdefABCDEF" for c in last_segment)
        )
        is_subscription = subscribed or url.lower().endswith(".ics")

        return Calendar(
            url=url,
            display_name=display_name,
            color=normalize_color(_prop_text(entry, NS_APPLE, "calendar-color"), DEFAULT_COLOR),
            is_shared=is_shared,
            is_subscription=is_subscription,
            read_only=is_subscription or not can_write,
            ctag=_prop_text(entry, NS_CALSERVER, "getctag"),
            sync_token=_prop_text(entry, NS_DAV, "sync-token"),
        )

    # ------------------------------------------------------------------ #
    # Change fetching                                                      #
    # ------------------------------------------------------------------ #

    def fetch_sync_token(self, calendar_url: str) -> str | None:
        """Current sync-token of a collection, or None when the server has none."""
        response = self._request("PROPFIND", calendar_url, body=_SYNC_TOKEN_BODY, depth="0")
        if response.status in (400, 404, 405, 501):
            return None
        self._raise_for_status(response, "PROPFIND", calendar_url)
        entries, _ = parse_multistatus(response.text)
        for entry in entries:
            token = _prop_text(entry, NS_DAV, "sync-token")
            if token:
                return token
        return None

    def fetch_changes(self, calendar_url: str, since_token: str | None) -> ChangeSet:
        """
        Full snapshot when since_token is None or a timestamp token, otherwise
        the delta reported by sync-collection.
        """
        calendar_url = normalize_calendar_url(calendar_url, self.base_url + "/")
        if since_token is None or is_timestamp_token(since_token):
            return self._fetch_snapshot(calendar_url)
        return self._fetch_delta(calendar_url, since_token)

    def _fetch_snapshot(self, calendar_url: str) -> ChangeSet:
        # Read the token first so changes made during the query are fetched again next time
        token = self.fetch_sync_token(calendar_url)

        time_range = ""
        if self.window is not None:
            start, end = self.window
            time_range = (
                f'<c:time-range start="{start.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}" '
                f'end="{end.astimezone(timezone.utc):%Y%m%dT%H%M%SZ}" />'
            )
        body = _CALENDAR_QUERY_BODY.format(time_range=time_range)
        response = self._request("REPORT", calendar_url, body=body, depth="1")
        self._raise_for_status(response, "REPORT", calendar_url)
        entries, _ = parse_multistatus(response.text)

        events = []
        for entry in entries:
            remote = self._remote_event(entry, calendar_url)
            if remote is not None:
                events.append(remote)

        logger.debug(f"Snapshot of {calendar_url}: {len(events)} resource(s)")
        return ChangeSet(
            events=events,
            new_token=token or make_timestamp_token(),
            full_snapshot=True,
            window=self.window,
        )

    def _fetch_delta(self, calendar_url: str, since_token: str) -> ChangeSet:
        body = _SYNC_COLLECTION_BODY.format(token=escape(since_token))
        response = self._request("REPORT", calendar_url, body=body, depth="1")
        if response.status == 410 or (
            response.status in (400, 403, 409) and "valid-sync-token" in response.text
        ):
            raise TokenInvalidated(f"Sync token for {calendar_url} is no longer valid")
        self._raise_for_status(response, "REPORT", calendar_url)
        entries, root = parse_multistatus(response.text)

        events = []
        deleted = []
        for entry in entries:
            if entry.status in (404, 410):
                deleted.append(self._absolute(entry.href, server_origin(calendar_url)))
                continue
            remote = self._remote_event(entry, calendar_url)
            if remote is not None:
                events.append(remote)

        new_token = (root.findtext(_tag(NS_DAV, "sync-token")) or "").strip() or since_token
        logger.debug(
            f"Delta of {calendar_url}: {len(events)} changed, {len(deleted)} deleted"
        )
        return ChangeSet(events=events, deleted_urls=deleted, new_token=new_token)

    def _remote_event(self, entry: _Entry, calendar_url: str) -> RemoteEvent | None:
        url = self._absolute(entry.href, server_origin(calendar_url))
        if url == calendar_url or entry.href.endswith("/"):
            return None
        if entry.status is not None and not 200 <= entry.status < 300:
            return None
        etag = _strip_etag(_prop_text(entry, NS_DAV, "getetag"))
        node = entry.props.get(_tag(NS_CALDAV, "calendar-data"))
        data = node.text if node is not None else None
        if data and data.strip():
            return RemoteEvent(href=url, calendar_data=data, etag=etag)
        # Some servers leave calendar-data out of sync-collection answers
        return self.get_resource(url)

    def get_resource(self, href: str) -> RemoteEvent | None:
        url = normalize_calendar_url(href, self.base_url + "/")
        response = self._request("GET", url)
        if response.status in (404, 410):
            return None
        self._raise_for_status(response, "GET", url)
        etag = _strip_etag(response.headers.get("ETag") or response.headers.get("etag"))
        return RemoteEvent(href=url, calendar_data=response.text, etag=etag)

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _require_writable(calendar: Calendar):
        if not calendar.writable:
            raise ReadOnlyCalendarError(f"Calendar {calendar.display_name} is read-only")

    def put_event(
        self, calendar: Calendar, uid: str, ics: str, etag: str | None = None
    ) -> str | None:
        """Create or replace an event resource. Returns the new ETag when the server sends one."""
        self._require_writable(calendar)
        url = resource_url(calendar.url, uid)
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if etag:
            headers["If-Match"] = f'"{etag}"'
        response = self._request("PUT", url, body=ics, headers=headers)
        if response.status == 412:
            raise ProtocolError(f"Event {uid} changed on the server; fetch it before saving")
        self._raise_for_status(response, "PUT", url)
        return _strip_etag(response.headers.get("ETag") or response.headers.get("etag"))

    def delete_event(self, calendar: Calendar, uid: str, etag: str | None = None):
        self._require_writable(calendar)
        url = resource_url(calendar.url, uid)
        headers = {"If-Match": f'"{etag}"'} if etag else None
        response = self._request("DELETE", url, headers=headers)
        if response.status == 404:
            return
        self._raise_for_status(response, "DELETE", url)

    def create_calendar(self, name: str, color: str = DEFAULT_COLOR) -> Calendar:
        if self.calendar_home is None:
            self._find_calendar_home(self._find_principal())
        url = f"{self.calendar_home}/{str(uuid.uuid4()).upper()}"
        color = normalize_color(color)
        body = _MKCALENDAR_BODY.format(name=escape(name), color=color)
        response = self._request("MKCALENDAR", f"{url}/", body=body)
        self._raise_for_status(response, "MKCALENDAR", url)
        logger.info(f"Created calendar {name!r}")
        return Calendar(url=normalize_calendar_url(url), display_name=name, color=color)

    def delete_calendar(self, calendar: Calendar):
        self._require_writable(calendar)
        response = self._request("DELETE", f"{calendar.url}/")
        if response.status == 404:
            return
        self._raise_for_status(response, "DELETE", calendar.url)
        logger.info(f"Deleted calendar {calendar.display_name!r}")
