"""
Calendar URL canonicalisation.

Servers are inconsistent about how they spell the same collection: iCloud
hands out hrefs with and without a trailing slash, some proxies add the
default port, and hrefs inside a multistatus are often relative to the host
the request was finally served from. Every calendar URL that is stored or
compared goes through normalize_calendar_url() first.
"""

import re
from urllib.parse import urljoin
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}
_MULTI_SLASH_RE = re.compile(r"/{2,}")


def normalize_calendar_url(url: str, base_url: str | None = None) -> str:
    """
    Return the canonical form of a calendar URL.

    - scheme and host are lower-cased
    - the default port for the scheme is dropped
    - repeated slashes in the path collapse to one
    - one trailing slash is stripped (the bare root stays "/")
    - relative URLs are resolved against base_url when given

    The result is stable: normalizing an already-normalized URL returns it
    unchanged.
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("calendar URL is empty")

    if base_url and not urlsplit(url).scheme:
        url = urljoin(base_url, url)

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise ValueError(f"not an absolute URL: {url!r}")

    netloc = host
    if ":" in host:  # IPv6 literal
        netloc = f"[{host}]"
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = _MULTI_SLASH_RE.sub("/", parts.path or "/")
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    return urlunsplit((scheme, netloc, path, parts.query, ""))


def same_calendar(a: str, b: str) -> bool:
    """True when two URLs identify the same calendar collection."""
    return normalize_calendar_url(a) == normalize_calendar_url(b)


def server_origin(url: str) -> str:
    """Return scheme://host[:port] of a URL, normalized."""
    parts = urlsplit(normalize_calendar_url(url))
    return f"{parts.scheme}://{parts.netloc}"


def rebase_url(url: str, origin: str) -> str:
    """Move an absolute URL onto another origin, keeping its path and query."""
    parts = urlsplit(url)
    target = urlsplit(origin)
    return urlunsplit((target.scheme, target.netloc, parts.path, parts.query, ""))


def resource_url(calendar_url: str, uid: str) -> str:
    """URL of the calendar object resource for an event UID."""
    return f"{normalize_calendar_url(calendar_url)}/{uid}.ics"
