"""Captive portal detection after joining a network.

Fetches a connectivity-check URL that normally answers 204 No Content.
A redirect or a page with content means something intercepts traffic.
"""

import asyncio
import logging
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

DEFAULT_CHECK_URL = "http://connectivitycheck.gstatic.com/generate_204"

# Request timeout in seconds
REQUEST_TIMEOUT = 5

USER_AGENT = "wlcontrol/0.1"

_HTTP_NO_CONTENT = 204


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Surface redirects as HTTPError instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001, ANN201
        return None


def _probe(url: str) -> str | None:
    """Fetch url once (blocking).

    Returns:
        Portal URL if the response is intercepted, else None.
    """
    opener = urllib.request.build_opener(_NoRedirect)
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with opener.open(req, timeout=REQUEST_TIMEOUT) as response:
            if response.status == _HTTP_NO_CONTENT:
                return None
            return url
    except urllib.error.HTTPError as e:
        if 300 <= e.code < 400:  # noqa: PLR2004
            return e.headers.get("Location") or url
        logger.debug("Connectivity check got HTTP %d", e.code)
        return None


async def detect_captive_portal(url: str = DEFAULT_CHECK_URL) -> str | None:
    """Check for a captive portal without blocking the event loop.

    Args:
        url: Connectivity-check URL expected to answer 204.

    Returns:
        URL to open in a browser, or None if no portal was detected or the
        check itself failed.
    """
    try:
        loop = asyncio.get_running_loop()
        portal = await loop.run_in_executor(None, _probe, url)
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        logger.debug("Connectivity check against %s failed: %s", url, e)
        return None
    if portal:
        logger.info("Captive portal detected: %s", portal)
    return portal
