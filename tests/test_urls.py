"""
Unit tests for calendar URL normalization.
"""

import pytest

from vividly_sync.urls import normalize_calendar_url
from vividly_sync.urls import rebase_url
from vividly_sync.urls import resource_url
from vividly_sync.urls import same_calendar
from vividly_sync.urls import server_origin


class TestNormalize:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://CalDAV.Example.com/cal/home/", "https://caldav.example.com/cal/home"),
            ("https://caldav.example.com:443/cal/home", "https://caldav.example.com/cal/home"),
            ("http://caldav.example.com:80/cal", "http://caldav.example.com/cal"),
            ("https://caldav.example.com:8443/cal/", "https://caldav.example.com:8443/cal"),
            ("https://caldav.example.com//cal///home/", "https://caldav.example.com/cal/home"),
            ("HTTPS://caldav.example.com", "https://caldav.example.com/"),
            ("https://caldav.example.com/", "https://caldav.example.com/"),
        ],
    )
    def test_canonical_form(self, url, expected):
        assert normalize_calendar_url(url) == expected

    def test_repeated_trailing_slashes(self):
        """Slashes collapse before the trailing one is stripped, so none remain."""
        assert normalize_calendar_url("https://a.example/cal//") == "https://a.example/cal"

    def test_idempotent(self):
        urls = [
            "https://P12-CalDAV.icloud.com:443/123/calendars/ABC/",
            "https://caldav.example.com/",
            "http://[::1]:8080/dav/cal/",
            "https://user@caldav.example.com/cal?x=1",
        ]
        for url in urls:
            once = normalize_calendar_url(url)
            assert normalize_calendar_url(once) == once

    def test_path_case_is_preserved(self):
        assert (
            normalize_calendar_url("https://EXAMPLE.com/Calendars/Work")
            == "https://example.com/Calendars/Work"
        )

    def test_query_and_userinfo_kept_fragment_dropped(self):
        assert (
            normalize_calendar_url("https://bob@Example.com/cal/?a=1#frag")
            == "https://bob@example.com/cal?a=1"
        )

    def test_ipv6_host(self):
        assert normalize_calendar_url("http://[::1]:80/cal/") == "http://[::1]/cal"

    def test_relative_resolved_against_base(self):
        assert (
            normalize_calendar_url("/calendars/alice/home/", "https://caldav.example.com/x/")
            == "https://caldav.example.com/calendars/alice/home"
        )
        assert (
            normalize_calendar_url("event.ics", "https://caldav.example.com/cal/home/")
            == "https://caldav.example.com/cal/home/event.ics"
        )

    @pytest.mark.parametrize("url", ["", "   ", None, "/relative/only", "not a url"])
    def test_rejects_empty_or_relative_without_base(self, url):
        with pytest.raises(ValueError):
            normalize_calendar_url(url)


class TestHelpers:
    def test_same_calendar(self):
        assert same_calendar("https://A.example/cal/", "https://a.example:443/cal")
        assert not same_calendar("https://a.example/cal", "https://a.example/other")

    def test_server_origin(self):
        assert server_origin("https://P01-CalDAV.icloud.com:443/1/calendars/") == (
            "https://p01-caldav.icloud.com"
        )

    def test_rebase_url_moves_path_to_other_host(self):
        assert (
            rebase_url("https://caldav.icloud.com/1/calendars/home/", "https://p07-caldav.icloud.com")
            == "https://p07-caldav.icloud.com/1/calendars/home/"
        )

    def test_resource_url(self):
        assert (
            resource_url("https://caldav.example.com/cal/home/", "abc-123")
            == "https://caldav.example.com/cal/home/abc-123.ics"
        )
