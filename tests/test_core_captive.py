"""Tests for captive portal detection."""

import urllib.error
from email.message import Message
from unittest.mock import MagicMock, patch

import pytest

from wlcontrol.core import captive
from wlcontrol.core.captive import DEFAULT_CHECK_URL, detect_captive_portal


def opener_returning(status: int) -> MagicMock:
    response = MagicMock(status=status)
    response.__enter__.return_value = response
    opener = MagicMock()
    opener.open.return_value = response
    return opener


def opener_raising(exc: Exception) -> MagicMock:
    opener = MagicMock()
    opener.open.side_effect = exc
    return opener


def http_error(code: int, location: str | None = None) -> urllib.error.HTTPError:
    headers = Message()
    if location:
        headers["Location"] = location
    return urllib.error.HTTPError(DEFAULT_CHECK_URL, code, "x", headers, None)


class TestProbe:
    """Test the blocking probe."""

    def test_no_content_means_open_internet(self) -> None:
        """Test HTTP 204 reports no portal."""
        with patch.object(captive.urllib.request, "build_opener", return_value=opener_returning(204)):
            assert captive._probe(DEFAULT_CHECK_URL) is None

    def test_content_means_portal(self) -> None:
        """Test a page with content is treated as interception."""
        with patch.object(captive.urllib.request, "build_opener", return_value=opener_returning(200)):
            assert captive._probe(DEFAULT_CHECK_URL) == DEFAULT_CHECK_URL

    def test_redirect_reports_location(self) -> None:
        """Test a redirect points at the portal page."""
        error = http_error(302, "http://portal.example/login")
        with patch.object(captive.urllib.request, "build_opener", return_value=opener_raising(error)):
            assert captive._probe(DEFAULT_CHECK_URL) == "http://portal.example/login"

    def test_server_error_is_not_a_portal(self) -> None:
        """Test 5xx answers are ignored."""
        with patch.object(captive.urllib.request, "build_opener", return_value=opener_raising(http_error(503))):
            assert captive._probe(DEFAULT_CHECK_URL) is None


class TestDetect:
    """Test the async wrapper."""

    @pytest.mark.asyncio
    async def test_network_failure_returns_none(self) -> None:
        """Test an unreachable check URL is not reported as a portal."""
        with patch.object(captive, "_probe", side_effect=urllib.error.URLError("no route")):
            assert await detect_captive_portal() is None

    @pytest.mark.asyncio
    async def test_portal_url_is_returned(self) -> None:
        """Test the probe result passes through."""
        with patch.object(captive, "_probe", return_value="http://portal.example/"):
            assert await detect_captive_portal("http://check.example/") == "http://portal.example/"
